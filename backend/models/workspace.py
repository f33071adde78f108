"""
Workspace model - one customer installation connected to ClickUp.

The ClickUp API key is never stored in clear text: ``encrypted_api_key`` and
``api_key_iv`` are produced by ``services.credentials.encrypt_secret``.
Workspaces are soft-deactivated (``is_active = False``), never hard-deleted
while sync history references them.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import Boolean, DateTime, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from models.database import Base


class Workspace(Base):
    """A tenant and its ClickUp credential."""

    __tablename__ = "workspaces"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    # ClickUp "team" id (ClickUp calls the top-level organisation a team)
    clickup_team_id: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    # AES-GCM ciphertext (base64) and nonce (hex)
    encrypted_api_key: Mapped[str] = mapped_column(Text, nullable=False)
    api_key_iv: Mapped[str] = mapped_column(String(32), nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=True
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=True
    )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses (never exposes the key)."""
        from config import to_iso8601

        return {
            "id": str(self.id),
            "name": self.name,
            "clickup_team_id": self.clickup_team_id,
            "is_active": self.is_active,
            "last_sync_at": to_iso8601(self.last_sync_at),
            "created_at": to_iso8601(self.created_at),
        }
