"""
WebhookSubscription model: one registered directory webhook per chunk slot.

The directory caps how many phone-number ids one webhook may watch, so the
required id set is split into chunks. ``chunk_index`` is a stable slot: when
the set shrinks, trailing slots are deleted rather than renumbered.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Literal, Optional

from sqlalchemy import DateTime, ForeignKey, Integer, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from models.database import Base, JSONType

EventKind = Literal["call", "call_summary", "message"]


class WebhookSubscription(Base):
    __tablename__ = "webhook_subscriptions"
    __table_args__ = (
        UniqueConstraint(
            "integration_id", "event_kind", "chunk_index",
            name="uq_webhook_subscription_slot",
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

    event_kind: Mapped[str] = mapped_column(String(20), nullable=False)
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)

    webhook_id: Mapped[str] = mapped_column(String(255), nullable=False)
    # Signing key returned by the directory when the webhook was created
    webhook_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    phone_ids: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)

    created_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=True
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=True
    )
