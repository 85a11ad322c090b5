"""
Webhook processing tasks for Celery workers.

The HTTP endpoints only verify and acknowledge deliveries; everything that
talks to the directory or a source system happens here, off the request
path. Directory events drive call/message logging and enrichment; source
events push individual record changes through the sync orchestrator.

Delivery is at-least-once: a task may run twice for one event. Logging is
deduplicated by activity id and enrichment re-reads the stored record, so a
repeat replaces rather than duplicates.
"""
from __future__ import annotations

import sys
from pathlib import Path

# Ensure backend directory is in Python path for Celery forked workers
_backend_dir = Path(__file__).resolve().parent.parent.parent
if str(_backend_dir) not in sys.path:
    sys.path.insert(0, str(_backend_dir))

import logging
from typing import Any, Optional

from services.sync_engine import TRANSIENT_ERRORS
from workers.celery_app import celery_app
from workers.tasks.sync import _load_integration, run_async

logger = logging.getLogger(__name__)

CALL_LOG_EVENTS = frozenset({"call.completed"})
CALL_ENRICH_EVENTS = frozenset({"call.summary.completed", "call.recording.completed"})
MESSAGE_EVENTS = frozenset({"message.received", "message.delivered"})


async def _load_source(integration_id: str) -> tuple[Any, Any]:
    """Integration row and its plugin, or (None, None) when it is gone or inactive."""
    from connectors.registry import get_connector_class

    integration = await _load_integration(integration_id)
    if integration is None or not integration.is_active:
        return None, None
    connector_class = get_connector_class(integration.provider)
    return integration, connector_class(integration_id)


async def _process_directory_event(integration_id: str, payload: dict[str, Any]) -> dict[str, Any]:
    """Route one directory webhook event into the enrichment pipeline."""
    from connectors.registry import Capability
    from services.directory_api import get_directory_client
    from services.enrichment import ActivityEnrichmentPipeline

    event_type: str = payload.get("type") or ""
    data: dict[str, Any] = payload.get("data") or {}
    obj: dict[str, Any] = data.get("object") or {}
    deep_link: str = data.get("deepLink") or "#"

    base = {"integration_id": integration_id, "event_type": event_type}

    integration, source = await _load_source(integration_id)
    if source is None:
        return {**base, "status": "skipped", "reason": "integration_inactive"}
    if Capability.LOG_ACTIVITY not in source.meta.capabilities:
        return {**base, "status": "skipped", "reason": "logging_not_supported"}

    pipeline = ActivityEnrichmentPipeline(
        integration_id,
        source,
        get_directory_client(),
        format_method=(integration.config or {}).get("format_method", "markdown"),
    )

    if event_type in CALL_LOG_EVENTS:
        result = await pipeline.log_call(obj, deep_link)
        return {**base, **result.to_dict()}

    if event_type in MESSAGE_EVENTS:
        result = await pipeline.log_message(obj, deep_link)
        return {**base, **result.to_dict()}

    if event_type in CALL_ENRICH_EVENTS:
        if event_type == "call.summary.completed":
            if obj.get("status") not in (None, "completed"):
                return {**base, "status": "skipped", "reason": f"summary_{obj.get('status')}"}
            call_id = obj.get("callId")
            summary = obj
        else:
            # Recording landed before the summary: enrich with what exists so far
            call_id = obj.get("id")
            summary = {}
        if not call_id:
            return {**base, "status": "skipped", "reason": "missing_call_id"}

        enriched = await pipeline.enrich_call(call_id, summary, deep_link)
        if enriched is None:
            return {**base, "status": "skipped", "reason": "contact_not_found", "activity_id": call_id}
        return {**base, "status": "enriched", "activity_id": call_id, **enriched.to_dict()}

    logger.info(f"Ignoring directory event {event_type} for integration {integration_id}")
    return {**base, "status": "ignored"}


async def _process_source_event(
    integration_id: str,
    payload: dict[str, Any],
    handshake_secret: Optional[str] = None,
) -> dict[str, Any]:
    """Apply record changes pushed by the source system, or finish its handshake."""
    from services.directory_api import get_directory_client
    from services.sync_engine import SyncOrchestrator

    integration, source = await _load_source(integration_id)
    if source is None:
        return {"integration_id": integration_id, "status": "skipped", "reason": "integration_inactive"}

    if handshake_secret:
        if not source.meta.handshake:
            logger.warning(
                f"Refusing webhook handshake for {integration.provider} integration {integration_id}"
            )
            return {"integration_id": integration_id, "status": "skipped", "reason": "handshake_not_supported"}
        await source.handle_handshake(handshake_secret, payload)
        logger.info(f"Completed {integration.provider} webhook handshake for integration {integration_id}")
        return {"integration_id": integration_id, "status": "handshake_completed"}

    events = source.parse_webhook_events(payload)
    orchestrator = SyncOrchestrator(integration_id, source, get_directory_client())

    deleted = 0
    missing = 0
    records_by_type: dict[str, list[dict[str, Any]]] = {}
    for event in events:
        if event.action == "delete":
            if await orchestrator.delete_record(event.record_id):
                deleted += 1
            continue

        record = await source.fetch_person(event.record_id, event.object_type)
        if record is None:
            missing += 1
            continue
        object_type = event.object_type or source.meta.object_types[0]
        records_by_type.setdefault(object_type, []).append(record)

    upserted = 0
    errors: list[dict[str, Any]] = []
    for object_type, records in records_by_type.items():
        process = await orchestrator.process_webhook_records(records, object_type=object_type)
        upserted += process.success_count
        errors.extend(process.errors or [])

    return {
        "integration_id": integration_id,
        "status": "completed",
        "events": len(events),
        "upserted": upserted,
        "deleted": deleted,
        "missing": missing,
        "errors": errors,
    }


@celery_app.task(
    bind=True,
    name="workers.tasks.webhooks.process_directory_event",
    autoretry_for=TRANSIENT_ERRORS,
    retry_backoff=True,
    retry_backoff_max=300,
    max_retries=8,
)
def process_directory_event(self: Any, integration_id: str, payload: dict[str, Any]) -> dict[str, Any]:
    """
    Celery task for one verified directory webhook delivery.

    Args:
        integration_id: UUID of the integration the webhook was registered for
        payload: Parsed webhook body
    """
    logger.info(
        f"Task {self.request.id}: Directory event {payload.get('type')} "
        f"({payload.get('id')}) for integration {integration_id}"
    )
    return run_async(_process_directory_event(integration_id, payload))


@celery_app.task(
    bind=True,
    name="workers.tasks.webhooks.process_source_event",
    autoretry_for=TRANSIENT_ERRORS,
    retry_backoff=True,
    retry_backoff_max=300,
    max_retries=8,
)
def process_source_event(
    self: Any,
    integration_id: str,
    payload: dict[str, Any],
    handshake_secret: Optional[str] = None,
) -> dict[str, Any]:
    """
    Celery task for one source-system webhook delivery.

    Args:
        integration_id: UUID of the integration
        payload: Parsed webhook body
        handshake_secret: Set when the delivery was a webhook handshake
    """
    logger.info(f"Task {self.request.id}: Source event for integration {integration_id}")
    return run_async(_process_source_event(integration_id, payload, handshake_secret))
