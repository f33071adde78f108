from sqlalchemy.pool import NullPool

from config import settings
from models import database


def test_plain_postgres_url_uses_asyncpg() -> None:
    assert database._async_url("postgresql://u:p@db:5432/tasks") == "postgresql+asyncpg://u:p@db:5432/tasks"
    assert database._async_url("postgresql+asyncpg://db/tasks") == "postgresql+asyncpg://db/tasks"


def test_pooled_engine_options_follow_settings(monkeypatch) -> None:
    monkeypatch.setattr(settings, "DATABASE_NULL_POOL", False)
    monkeypatch.setattr(settings, "DATABASE_POOL_SIZE", 3)

    options = database._engine_options()

    assert options["pool_size"] == 3
    assert "poolclass" not in options


def test_null_pool_disables_statement_cache(monkeypatch) -> None:
    monkeypatch.setattr(settings, "DATABASE_NULL_POOL", True)

    options = database._engine_options()

    assert options["poolclass"] is NullPool
    assert options["connect_args"]["statement_cache_size"] == 0


def test_pool_status_before_first_use(monkeypatch) -> None:
    monkeypatch.setattr(database, "_engine", None)

    assert database.get_pool_status()["pool_type"] == "not_initialized"
