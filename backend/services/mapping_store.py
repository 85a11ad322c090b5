"""
Persistence for everything keyed by one source-system instance.

- ``MappingStore``: external record id → directory contact id
- ``EnrichmentStore``: directory call/message id → source log entry
- ``SubscriptionStore``: registered directory webhooks per chunk slot

Writes are single-row upserts (``INSERT ... ON CONFLICT DO UPDATE``) so a
failure on one row never touches another, and concurrent sync runs for
different integrations never contend on the same key.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from models.database import get_session
from models.enrichment_record import EnrichmentRecord
from models.entity_mapping import EntityMapping
from models.webhook_subscription import WebhookSubscription
from services.participants import normalize_phone_number

logger = logging.getLogger(__name__)


def _insert_for(session: AsyncSession, model: type) -> Any:
    """Dialect-specific INSERT supporting ``on_conflict_do_update``."""
    if session.get_bind().dialect.name == "sqlite":
        return sqlite_insert(model)
    return pg_insert(model)


def _as_uuid(value: str | UUID) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))


class MappingStore:
    """Mapping Records for one integration."""

    def __init__(self, integration_id: str | UUID) -> None:
        self.integration_id = _as_uuid(integration_id)

    async def get(self, external_id: str) -> Optional[EntityMapping]:
        async with get_session() as session:
            result = await session.execute(
                select(EntityMapping).where(
                    EntityMapping.integration_id == self.integration_id,
                    EntityMapping.external_id == external_id,
                )
            )
            return result.scalar_one_or_none()

    async def upsert(
        self,
        external_id: str,
        internal_id: str,
        sync_method: str,
        action: str,
        entity_type: str = "person",
        phone_number: Optional[str] = None,
        synced_at: Optional[datetime] = None,
    ) -> None:
        """Create or overwrite the mapping for ``external_id``."""
        values: dict[str, Any] = {
            "integration_id": self.integration_id,
            "external_id": external_id,
            "internal_id": internal_id,
            "entity_type": entity_type,
            "sync_method": sync_method,
            "action": action,
            "phone_number": normalize_phone_number(phone_number),
            "last_synced_at": synced_at or datetime.utcnow(),
        }
        async with get_session() as session:
            stmt = _insert_for(session, EntityMapping).values(**values)
            update_cols: dict[str, Any] = {
                "internal_id": stmt.excluded.internal_id,
                "entity_type": stmt.excluded.entity_type,
                "sync_method": stmt.excluded.sync_method,
                "action": stmt.excluded.action,
                "last_synced_at": stmt.excluded.last_synced_at,
            }
            # Keep the known phone when this sync did not carry one
            if phone_number:
                update_cols["phone_number"] = stmt.excluded.phone_number
            stmt = stmt.on_conflict_do_update(
                index_elements=["integration_id", "external_id"],
                set_=update_cols,
            )
            await session.execute(stmt)
            await session.commit()

    async def find_by_phone(self, phone: str) -> Optional[EntityMapping]:
        """Most recently synced mapping whose contact carries ``phone``."""
        normalized = normalize_phone_number(phone)
        if not normalized:
            return None
        async with get_session() as session:
            result = await session.execute(
                select(EntityMapping)
                .where(
                    EntityMapping.integration_id == self.integration_id,
                    EntityMapping.phone_number == normalized,
                )
                .order_by(EntityMapping.last_synced_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def delete(self, external_id: str) -> bool:
        async with get_session() as session:
            result = await session.execute(
                delete(EntityMapping).where(
                    EntityMapping.integration_id == self.integration_id,
                    EntityMapping.external_id == external_id,
                )
            )
            await session.commit()
            return (result.rowcount or 0) > 0


class EnrichmentStore:
    """Enrichment Records for one integration."""

    def __init__(self, integration_id: str | UUID) -> None:
        self.integration_id = _as_uuid(integration_id)

    async def get(self, activity_id: str) -> Optional[EnrichmentRecord]:
        async with get_session() as session:
            result = await session.execute(
                select(EnrichmentRecord).where(
                    EnrichmentRecord.integration_id == self.integration_id,
                    EnrichmentRecord.activity_id == activity_id,
                )
            )
            return result.scalar_one_or_none()

    async def upsert(
        self,
        activity_id: str,
        log_id: str,
        contact_id: str,
        contact_type: str = "person",
        activity_type: str = "call",
        enriched_at: Optional[datetime] = None,
    ) -> None:
        values: dict[str, Any] = {
            "integration_id": self.integration_id,
            "activity_id": activity_id,
            "activity_type": activity_type,
            "log_id": log_id,
            "contact_id": contact_id,
            "contact_type": contact_type,
            "logged_at": datetime.utcnow(),
            "enriched_at": enriched_at,
        }
        async with get_session() as session:
            stmt = _insert_for(session, EnrichmentRecord).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=["integration_id", "activity_id"],
                set_={
                    "log_id": stmt.excluded.log_id,
                    "contact_id": stmt.excluded.contact_id,
                    "contact_type": stmt.excluded.contact_type,
                    "enriched_at": stmt.excluded.enriched_at,
                },
            )
            await session.execute(stmt)
            await session.commit()


class SubscriptionStore:
    """Registered directory webhooks for one integration."""

    def __init__(self, integration_id: str | UUID) -> None:
        self.integration_id = _as_uuid(integration_id)

    async def get_all(self, event_kind: Optional[str] = None) -> list[WebhookSubscription]:
        conditions = [WebhookSubscription.integration_id == self.integration_id]
        if event_kind:
            conditions.append(WebhookSubscription.event_kind == event_kind)
        async with get_session() as session:
            result = await session.execute(
                select(WebhookSubscription)
                .where(*conditions)
                .order_by(WebhookSubscription.event_kind, WebhookSubscription.chunk_index)
            )
            return list(result.scalars().all())

    async def save(
        self,
        event_kind: str,
        chunk_index: int,
        webhook_id: str,
        webhook_key: Optional[str],
        phone_ids: list[str],
    ) -> None:
        values: dict[str, Any] = {
            "integration_id": self.integration_id,
            "event_kind": event_kind,
            "chunk_index": chunk_index,
            "webhook_id": webhook_id,
            "webhook_key": webhook_key,
            "phone_ids": list(phone_ids),
            "updated_at": datetime.utcnow(),
        }
        async with get_session() as session:
            stmt = _insert_for(session, WebhookSubscription).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=["integration_id", "event_kind", "chunk_index"],
                set_={
                    "webhook_id": stmt.excluded.webhook_id,
                    "webhook_key": stmt.excluded.webhook_key,
                    "phone_ids": stmt.excluded.phone_ids,
                    "updated_at": stmt.excluded.updated_at,
                },
            )
            await session.execute(stmt)
            await session.commit()

    async def remove(self, event_kind: str, chunk_index: int) -> None:
        async with get_session() as session:
            await session.execute(
                delete(WebhookSubscription).where(
                    WebhookSubscription.integration_id == self.integration_id,
                    WebhookSubscription.event_kind == event_kind,
                    WebhookSubscription.chunk_index == chunk_index,
                )
            )
            await session.commit()

    async def keys_for(self, event_kind: str) -> list[str]:
        """Every signing key currently registered for ``event_kind``."""
        return [s.webhook_key for s in await self.get_all(event_kind) if s.webhook_key]
