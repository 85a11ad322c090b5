"""
Sync tasks for Celery workers.

These tasks pull person records from a source system into the contact
directory, either on demand (initial sync after connecting) or on the
beat schedule (ongoing sync of records modified since the last run), and
keep the directory webhook subscriptions in line with the phone numbers
an integration watches.
"""
from __future__ import annotations

import sys
from pathlib import Path

# Ensure backend directory is in Python path for Celery forked workers
_backend_dir = Path(__file__).resolve().parent.parent.parent
if str(_backend_dir) not in sys.path:
    sys.path.insert(0, str(_backend_dir))

import asyncio
import logging
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from services.sync_engine import TRANSIENT_ERRORS
from workers.celery_app import celery_app

logger = logging.getLogger(__name__)


def run_async(coro: Any) -> Any:
    """Run an async function in a sync context (for Celery tasks).

    Creates a fresh event loop and disposes any existing database connections
    to avoid 'Future attached to different loop' errors with asyncpg.
    """
    from models.database import dispose_engine

    # Pooled connections are tied to the previous (closed) event loop
    dispose_engine()

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


async def _load_integration(integration_id: str) -> Any:
    from models.database import get_session
    from models.integration import Integration

    async with get_session() as session:
        return await session.get(Integration, UUID(integration_id))


async def _resume_point(integration_id: str, object_type: str, sync_type: str) -> Any:
    """The last run of this kind if it failed part-way and can be continued."""
    from services.sync_processes import SyncProcessRepository

    latest = await SyncProcessRepository(integration_id).latest(object_type)
    if latest is None or latest.sync_type != sync_type:
        return None
    if latest.state == "ERROR" and latest.cursor:
        return latest
    return None


async def _sync_integration(
    integration_id: str,
    sync_type: str = "ONGOING",
    object_types: Optional[list[str]] = None,
) -> dict[str, Any]:
    """
    Internal async function to sync a single integration.

    Returns sync results including counts and any errors. Transient upstream
    failures propagate so the Celery task can retry; the retried run resumes
    from the last persisted cursor.
    """
    from connectors.base import SyncCancelledError
    from connectors.registry import get_connector_class
    from services.directory_api import get_directory_client
    from services.sync_engine import SyncOrchestrator
    from services.sync_processes import mark_integration_failed, mark_integration_synced
    from workers.events import emit_event

    integration = await _load_integration(integration_id)
    if integration is None or not integration.is_active:
        return {"status": "skipped", "integration_id": integration_id, "error": "Integration inactive or missing"}

    provider = integration.provider
    try:
        connector_class = get_connector_class(provider)
    except ValueError as e:
        return {"status": "failed", "integration_id": integration_id, "provider": provider, "error": str(e)}

    source = connector_class(integration_id)
    orchestrator = SyncOrchestrator(integration_id, source, get_directory_client())
    modified_since = integration.last_sync_at if sync_type == "ONGOING" else None
    counts: dict[str, dict[str, int]] = {}

    try:
        logger.info(f"Starting {sync_type} sync for {provider} integration {integration_id}")
        for object_type in object_types or source.meta.object_types:
            resume = await _resume_point(integration_id, object_type, sync_type)
            process = await orchestrator.run_sync(
                object_type,
                sync_type=sync_type,
                modified_since=modified_since,
                resume_from=resume,
            )
            counts[object_type] = {
                "fetched": process.total_fetched,
                "success": process.success_count,
                "errors": process.error_count,
            }
            await mark_integration_synced(integration_id, object_type, process.success_count)

    except SyncCancelledError as e:
        cancel_msg = str(e)
        logger.info(f"Sync cancelled for {provider} integration {integration_id}: {cancel_msg}")
        await emit_event(
            event_type="sync.cancelled",
            integration_id=integration_id,
            data={"provider": provider, "reason": cancel_msg},
        )
        return {
            "status": "cancelled",
            "integration_id": integration_id,
            "provider": provider,
            "error": cancel_msg,
        }

    except TRANSIENT_ERRORS:
        raise

    except Exception as e:
        error_msg = str(e)
        logger.error(f"Sync failed for {provider} integration {integration_id}: {error_msg}")
        await mark_integration_failed(integration_id, error_msg)
        await emit_event(
            event_type="sync.failed",
            integration_id=integration_id,
            data={
                "provider": provider,
                "sync_type": sync_type,
                "error": error_msg,
                "failed_at": datetime.utcnow().isoformat(),
            },
        )
        return {
            "status": "failed",
            "integration_id": integration_id,
            "provider": provider,
            "error": error_msg,
        }

    await emit_event(
        event_type="sync.completed",
        integration_id=integration_id,
        data={
            "provider": provider,
            "sync_type": sync_type,
            "counts": counts,
            "completed_at": datetime.utcnow().isoformat(),
        },
    )
    logger.info(f"Completed sync for {provider} integration {integration_id}: {counts}")
    return {
        "status": "completed",
        "integration_id": integration_id,
        "provider": provider,
        "counts": counts,
    }


async def _get_all_active_integrations() -> list[str]:
    from sqlalchemy import select
    from models.database import get_session
    from models.integration import Integration

    async with get_session() as session:
        result = await session.execute(
            select(Integration.id).where(Integration.is_active == True)  # noqa: E712
        )
        return [str(integration_id) for integration_id in result.scalars().all()]


async def _reconcile_phone_webhooks(integration_id: str, phone_ids: Optional[list[str]]) -> dict[str, Any]:
    from models.database import get_session
    from models.integration import Integration
    from services.directory_api import get_directory_client
    from services.webhook_planner import WebhookReconciler
    from workers.events import emit_event

    if phone_ids is None:
        integration = await _load_integration(integration_id)
        if integration is None:
            return {"status": "skipped", "integration_id": integration_id, "error": "Integration not found"}
        phone_ids = list((integration.config or {}).get("phone_number_ids") or [])
    else:
        async with get_session() as session:
            integration = await session.get(Integration, UUID(integration_id))
            if integration is None:
                return {"status": "skipped", "integration_id": integration_id, "error": "Integration not found"}
            integration.config = {**(integration.config or {}), "phone_number_ids": list(phone_ids)}
            await session.commit()

    reconciler = WebhookReconciler(integration_id, get_directory_client())
    result = await reconciler.sync_phone_webhooks(phone_ids)

    await emit_event(
        event_type="webhooks.reconciled",
        integration_id=integration_id,
        data=result.to_dict(),
    )
    return {"status": "completed", "integration_id": integration_id, **result.to_dict()}


@celery_app.task(
    bind=True,
    name="workers.tasks.sync.sync_integration",
    autoretry_for=TRANSIENT_ERRORS,
    retry_backoff=True,
    retry_backoff_max=600,
    max_retries=5,
)
def sync_integration(
    self: Any,
    integration_id: str,
    sync_type: str = "ONGOING",
    object_types: Optional[list[str]] = None,
) -> dict[str, Any]:
    """
    Celery task to sync a single integration.

    Args:
        integration_id: UUID of the integration
        sync_type: 'INITIAL' for a full pull, 'ONGOING' for changes since the last sync
        object_types: Restrict to these object types (default: all the plugin declares)

    Returns:
        Dict with sync status, counts, and any errors
    """
    logger.info(f"Task {self.request.id}: {sync_type} sync for integration {integration_id}")
    return run_async(_sync_integration(integration_id, sync_type, object_types))


@celery_app.task(bind=True, name="workers.tasks.sync.sync_all_integrations")
def sync_all_integrations(self: Any) -> dict[str, Any]:
    """
    Queue an ongoing sync for every active integration.

    This is the periodic task that runs via Beat schedule. Each integration
    gets its own task so one slow source never delays the others.
    """
    logger.info(f"Task {self.request.id}: Queueing ongoing sync for all integrations")
    integration_ids = run_async(_get_all_active_integrations())

    for integration_id in integration_ids:
        sync_integration.delay(integration_id, "ONGOING")

    return {
        "queued": len(integration_ids),
        "queued_at": datetime.utcnow().isoformat(),
    }


@celery_app.task(
    bind=True,
    name="workers.tasks.sync.reconcile_phone_webhooks",
    autoretry_for=TRANSIENT_ERRORS,
    retry_backoff=True,
    max_retries=5,
)
def reconcile_phone_webhooks(
    self: Any, integration_id: str, phone_ids: Optional[list[str]] = None
) -> dict[str, Any]:
    """
    Bring the directory webhooks for an integration in line with its phone numbers.

    Args:
        integration_id: UUID of the integration
        phone_ids: Phone-number ids to watch; stored on the integration when given,
            read from it otherwise
    """
    logger.info(f"Task {self.request.id}: Reconciling phone webhooks for integration {integration_id}")
    return run_async(_reconcile_phone_webhooks(integration_id, phone_ids))
