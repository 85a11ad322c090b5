"""
EnrichmentRecord model: directory activity id → source-system log entry.

Created when a call or message is first logged and overwritten when the log
entry is replaced by its enriched version. ``log_id`` always names an entry
that exists in the source system.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import DateTime, ForeignKey, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from config import to_iso8601
from models.database import Base


class EnrichmentRecord(Base):
    """Tracks the source-system log entry written for one call or message."""

    __tablename__ = "enrichment_records"
    __table_args__ = (
        UniqueConstraint(
            "integration_id", "activity_id",
            name="uq_enrichment_record_integration_activity",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    integration_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("integrations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # Directory call / message id
    activity_id: Mapped[str] = mapped_column(String(255), nullable=False)
    # 'call' or 'message'
    activity_type: Mapped[str] = mapped_column(String(20), nullable=False, default="call")

    # Source-system note / activity id currently holding the log
    log_id: Mapped[str] = mapped_column(String(255), nullable=False)
    contact_id: Mapped[str] = mapped_column(String(255), nullable=False)
    contact_type: Mapped[str] = mapped_column(String(50), nullable=False, default="person")

    logged_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    enriched_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    def to_dict(self) -> dict[str, Any]:
        return {
            "activity_id": self.activity_id,
            "activity_type": self.activity_type,
            "log_id": self.log_id,
            "contact_id": self.contact_id,
            "contact_type": self.contact_type,
            "logged_at": to_iso8601(self.logged_at),
            "enriched_at": to_iso8601(self.enriched_at),
        }
