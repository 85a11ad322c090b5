"""
Integration model for tracking connected source systems.

With Nango, we don't store OAuth tokens ourselves - Nango handles that.
This model tracks which source system is connected, its per-instance config
(webhook secrets, handshake state) and its sync status.

Every mapping, enrichment record, webhook subscription and sync process is
keyed by the integration id, so one row is one source-system instance.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import DateTime, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from config import to_iso8601
from models.database import Base, JSONType


class Integration(Base):
    """A connected source system (Pipedrive, AxisCare, Attio, Clio, ...)."""

    __tablename__ = "integrations"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )

    # Source system slug: 'pipedrive', 'axiscare', 'attio', 'clio'
    provider: Mapped[str] = mapped_column(String(50), nullable=False, index=True)

    # Nango connection ID used to fetch source-system credentials
    nango_connection_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )

    # Status
    is_active: Mapped[bool] = mapped_column(default=True, nullable=False)
    last_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Provider-specific config: source webhook secret, handshake status, ...
    config: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)

    # Sync statistics - counts of objects synced (e.g., {"Client": 5, "Lead": 10})
    sync_stats: Mapped[Optional[dict[str, int]]] = mapped_column(JSONType, nullable=True)

    # Timestamps
    created_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=True
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=True
    )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "id": str(self.id),
            "provider": self.provider,
            "is_active": self.is_active,
            "last_sync_at": to_iso8601(self.last_sync_at),
            "last_error": self.last_error,
            "created_at": to_iso8601(self.created_at),
            "sync_stats": self.sync_stats,
        }
