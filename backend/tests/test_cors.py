from fastapi.testclient import TestClient

from api.main import app
from api.routes import sync as sync_routes


client = TestClient(app)


def test_preflight_allows_known_origin() -> None:
    response = client.options(
        "/api/tasks/sync",
        headers={
            "Origin": "http://localhost:5173",
            "Access-Control-Request-Method": "POST",
        },
    )

    assert response.status_code == 200
    assert response.headers["access-control-allow-origin"] == "http://localhost:5173"


def test_preflight_rejects_unknown_origin() -> None:
    response = client.options(
        "/api/tasks/sync",
        headers={
            "Origin": "https://evil.example",
            "Access-Control-Request-Method": "POST",
        },
    )

    assert response.status_code == 400
    assert "access-control-allow-origin" not in response.headers


def test_unhandled_error_keeps_cors_headers(monkeypatch) -> None:
    def broken_store():
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(sync_routes, "get_store", broken_store)
    unsafe_client = TestClient(app, raise_server_exceptions=False)

    response = unsafe_client.get(
        "/api/tasks/stats",
        params={"workspace_id": "11111111-1111-1111-1111-111111111111"},
        headers={"Origin": "http://localhost:5173"},
    )

    assert response.status_code == 500
    assert response.json() == {"detail": "Internal server error"}
    assert response.headers["access-control-allow-origin"] == "http://localhost:5173"
