"""
EntityMapping model: source-system record id → directory contact id.

One row per (integration, external_id). Rows are overwritten on every sync of
the same record and removed only when the source record itself is deleted.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Literal, Optional

from sqlalchemy import DateTime, ForeignKey, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from config import to_iso8601
from models.database import Base

SyncMethod = Literal["bulk", "incremental", "webhook"]
MappingAction = Literal["created", "updated"]


class EntityMapping(Base):
    """Durable association between a source record and a directory contact."""

    __tablename__ = "entity_mappings"
    __table_args__ = (
        UniqueConstraint(
            "integration_id", "external_id",
            name="uq_entity_mapping_integration_external",
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

    external_id: Mapped[str] = mapped_column(String(255), nullable=False)
    internal_id: Mapped[str] = mapped_column(String(255), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False, default="person")

    sync_method: Mapped[str] = mapped_column(String(20), nullable=False)
    action: Mapped[str] = mapped_column(String(20), nullable=False)

    # First phone number of the contact, normalized, for call/message lookups
    phone_number: Mapped[Optional[str]] = mapped_column(String(50), nullable=True, index=True)

    last_synced_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "external_id": self.external_id,
            "internal_id": self.internal_id,
            "entity_type": self.entity_type,
            "sync_method": self.sync_method,
            "action": self.action,
            "phone_number": self.phone_number,
            "last_synced_at": to_iso8601(self.last_synced_at),
        }
