"""
Sync trigger endpoints.

Endpoints:
- POST /api/sync/{integration_id} - Queue an initial or ongoing sync
- GET /api/sync/{integration_id}/status - Latest sync run for an integration
- GET /api/sync/{integration_id}/events - Recent sync lifecycle events
- POST /api/sync/{integration_id}/phone-webhooks - Queue webhook reconciliation
"""
from __future__ import annotations

import logging
from typing import Any, Literal, Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from config import to_iso8601
from connectors.registry import discover_connectors
from models.database import get_session
from models.integration import Integration
from services.sync_processes import SyncProcessRepository

router = APIRouter()
logger = logging.getLogger(__name__)

# Connector registry – auto-discovered from backend/connectors/ + entry_points
CONNECTORS = discover_connectors()


class SyncTriggerRequest(BaseModel):
    sync_type: Literal["INITIAL", "ONGOING"] = "INITIAL"
    object_types: Optional[list[str]] = None


class SyncTriggerResponse(BaseModel):
    """Response model for sync trigger."""

    status: str
    integration_id: str
    provider: str
    sync_type: str
    task_id: Optional[str] = None


class SyncStatusResponse(BaseModel):
    """Response model for sync status."""

    integration_id: str
    provider: str
    status: str
    sync_type: Optional[str] = None
    object_type: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    last_sync_at: Optional[str] = None
    error: Optional[str] = None
    counts: Optional[dict[str, int]] = None


class PhoneWebhooksRequest(BaseModel):
    phone_ids: list[str] = Field(default_factory=list)


class PhoneWebhooksResponse(BaseModel):
    status: str
    integration_id: str
    phone_count: int
    task_id: Optional[str] = None


def _parse_integration_id(integration_id: str) -> UUID:
    try:
        return UUID(integration_id)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid integration ID")


async def _get_integration(integration_id: str) -> Integration:
    integration_uuid = _parse_integration_id(integration_id)
    async with get_session() as session:
        integration = await session.get(Integration, integration_uuid)
    if integration is None:
        raise HTTPException(status_code=404, detail="Integration not found")
    return integration


def _enqueue_sync(integration_id: str, sync_type: str, object_types: Optional[list[str]]) -> Any:
    from workers.tasks.sync import sync_integration

    return sync_integration.delay(integration_id, sync_type, object_types)


def _enqueue_reconcile(integration_id: str, phone_ids: list[str]) -> Any:
    from workers.tasks.sync import reconcile_phone_webhooks

    return reconcile_phone_webhooks.delay(integration_id, phone_ids)


@router.post("/{integration_id}", response_model=SyncTriggerResponse)
async def trigger_sync(
    integration_id: str, request: Optional[SyncTriggerRequest] = None
) -> SyncTriggerResponse:
    """Queue a sync for one integration."""
    request = request or SyncTriggerRequest()
    integration = await _get_integration(integration_id)

    if not integration.is_active:
        raise HTTPException(status_code=409, detail="Integration is not active")

    if integration.provider not in CONNECTORS:
        raise HTTPException(
            status_code=400,
            detail=f"Unknown provider: {integration.provider}. Available: {list(CONNECTORS.keys())}",
        )

    if request.object_types:
        supported = CONNECTORS[integration.provider].meta.object_types
        unknown = [t for t in request.object_types if t not in supported]
        if unknown:
            raise HTTPException(
                status_code=400,
                detail=f"Unsupported object types for {integration.provider}: {unknown}",
            )

    task = _enqueue_sync(integration_id, request.sync_type, request.object_types)
    logger.info(
        "[sync] Queued %s sync for %s integration %s",
        request.sync_type, integration.provider, integration_id,
    )
    return SyncTriggerResponse(
        status="queued",
        integration_id=integration_id,
        provider=integration.provider,
        sync_type=request.sync_type,
        task_id=getattr(task, "id", None),
    )


@router.get("/{integration_id}/status", response_model=SyncStatusResponse)
async def get_sync_status(integration_id: str) -> SyncStatusResponse:
    """Latest sync run for an integration, falling back to its last sync time."""
    integration = await _get_integration(integration_id)
    process = await SyncProcessRepository(integration.id).latest()

    if process is None:
        return SyncStatusResponse(
            integration_id=integration_id,
            provider=integration.provider,
            status="completed" if integration.last_sync_at else "never_synced",
            last_sync_at=to_iso8601(integration.last_sync_at),
            error=integration.last_error,
        )

    return SyncStatusResponse(
        integration_id=integration_id,
        provider=integration.provider,
        status=process.state.lower(),
        sync_type=process.sync_type,
        object_type=process.object_type,
        started_at=to_iso8601(process.started_at),
        completed_at=to_iso8601(process.completed_at),
        last_sync_at=to_iso8601(integration.last_sync_at),
        error=process.last_error or integration.last_error,
        counts={
            "pages": process.page_count,
            "fetched": process.total_fetched,
            "success": process.success_count,
            "errors": process.error_count,
        },
    )


@router.post("/{integration_id}/phone-webhooks", response_model=PhoneWebhooksResponse)
async def sync_phone_webhooks(integration_id: str, request: PhoneWebhooksRequest) -> PhoneWebhooksResponse:
    """Queue reconciliation of directory webhooks against a new phone-number list."""
    integration = await _get_integration(integration_id)
    if not integration.is_active:
        raise HTTPException(status_code=409, detail="Integration is not active")

    task = _enqueue_reconcile(integration_id, request.phone_ids)
    return PhoneWebhooksResponse(
        status="queued",
        integration_id=integration_id,
        phone_count=len(set(request.phone_ids)),
        task_id=getattr(task, "id", None),
    )


@router.get("/{integration_id}/events")
async def get_sync_events(integration_id: str, limit: int = 50) -> dict[str, Any]:
    """Recent sync lifecycle events for an integration, newest first."""
    from workers.events import get_event_history

    _parse_integration_id(integration_id)
    events = await get_event_history(integration_id, limit=min(max(limit, 1), 200))
    return {"integration_id": integration_id, "events": events}
