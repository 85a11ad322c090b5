"""
SyncProcess model.

Tracks one run of the sync orchestrator: which object type, which kind of
sync, where it is in its state machine, the resume cursor, and counters.
A run that stops early can be resumed from ``cursor``.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Literal, Optional

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from config import to_iso8601
from models.database import Base, JSONType

# State values
SyncState = Literal[
    "INITIALIZING",        # Row created, nothing fetched yet
    "FETCHING_PAGE",       # Waiting on the source system
    "PROCESSING_BATCHES",  # Transforming / upserting a fetched page
    "COMPLETED",           # Last page processed
    "ERROR",               # Upstream failure, cursor holds the resume point
    "CANCELLED",           # Integration disconnected between pages
]

SyncType = Literal["INITIAL", "ONGOING", "WEBHOOK"]


class SyncProcess(Base):
    __tablename__ = "sync_processes"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4,
    )
    integration_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("integrations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    sync_type: Mapped[str] = mapped_column(String(20), nullable=False)
    object_type: Mapped[str] = mapped_column(String(50), nullable=False)
    state: Mapped[str] = mapped_column(String(30), nullable=False, default="INITIALIZING")

    # Opaque continuation token of the last fully processed page
    cursor: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    modified_since: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # --- Progress ---
    page_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_fetched: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    success_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    errors: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, nullable=False, default=list)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # --- Timestamps ---
    started_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "integration_id": str(self.integration_id),
            "sync_type": self.sync_type,
            "object_type": self.object_type,
            "state": self.state,
            "cursor": self.cursor,
            "page_count": self.page_count,
            "total_fetched": self.total_fetched,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "errors": self.errors,
            "last_error": self.last_error,
            "started_at": to_iso8601(self.started_at),
            "completed_at": to_iso8601(self.completed_at),
        }
