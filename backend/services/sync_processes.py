"""
Sync process bookkeeping.

Each orchestrator run owns one ``SyncProcess`` row. The row is updated after
every page so that a crashed or cancelled run can resume from the last
persisted cursor, and so the API can report progress.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import select

from config import settings
from models.database import get_session
from models.integration import Integration
from models.sync_process import SyncProcess

logger = logging.getLogger(__name__)


class SyncProcessRepository:
    """CRUD over ``sync_processes`` for one integration."""

    def __init__(self, integration_id: str | UUID) -> None:
        self.integration_id = integration_id if isinstance(integration_id, UUID) else UUID(str(integration_id))

    async def create(
        self,
        sync_type: str,
        object_type: str,
        modified_since: Optional[datetime] = None,
    ) -> SyncProcess:
        async with get_session() as session:
            process = SyncProcess(
                integration_id=self.integration_id,
                sync_type=sync_type,
                object_type=object_type,
                state="INITIALIZING",
                modified_since=modified_since,
                errors=[],
            )
            session.add(process)
            await session.commit()
            await session.refresh(process)
            return process

    async def get(self, process_id: UUID) -> Optional[SyncProcess]:
        async with get_session() as session:
            return await session.get(SyncProcess, process_id)

    async def latest(self, object_type: Optional[str] = None) -> Optional[SyncProcess]:
        conditions = [SyncProcess.integration_id == self.integration_id]
        if object_type:
            conditions.append(SyncProcess.object_type == object_type)
        async with get_session() as session:
            result = await session.execute(
                select(SyncProcess)
                .where(*conditions)
                .order_by(SyncProcess.started_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def set_state(self, process_id: UUID, state: str, **changes: Any) -> None:
        async with get_session() as session:
            process = await session.get(SyncProcess, process_id)
            if process is None:
                raise ValueError(f"Sync process {process_id} not found")
            process.state = state
            for key, value in changes.items():
                setattr(process, key, value)
            if state in ("COMPLETED", "ERROR", "CANCELLED"):
                process.completed_at = datetime.utcnow()
            await session.commit()

    async def record_page(
        self,
        process_id: UUID,
        cursor: Optional[str],
        fetched: int,
        success_count: int,
        error_count: int,
        errors: list[dict[str, Any]],
    ) -> None:
        """Persist one processed page: counters, capped error list and the resume cursor."""
        async with get_session() as session:
            process = await session.get(SyncProcess, process_id)
            if process is None:
                raise ValueError(f"Sync process {process_id} not found")
            process.cursor = cursor
            process.page_count += 1
            process.total_fetched += fetched
            process.success_count += success_count
            process.error_count += error_count
            room = settings.MAX_STORED_SYNC_ERRORS - len(process.errors or [])
            if errors and room > 0:
                # Reassign so the JSON column is flagged dirty
                process.errors = [*(process.errors or []), *errors[:room]]
            await session.commit()


async def mark_integration_synced(integration_id: str, object_type: str, count: int) -> None:
    """Stamp the integration with its last successful sync."""
    async with get_session() as session:
        integration = await session.get(Integration, UUID(integration_id))
        if integration is None:
            logger.warning("[sync] Integration %s vanished before completion was recorded", integration_id)
            return
        integration.last_sync_at = datetime.utcnow()
        integration.last_error = None
        integration.sync_stats = {**(integration.sync_stats or {}), object_type: count}
        await session.commit()


async def mark_integration_failed(integration_id: str, error: str) -> None:
    async with get_session() as session:
        integration = await session.get(Integration, UUID(integration_id))
        if integration is None:
            return
        integration.last_error = error[:2000]
        await session.commit()
