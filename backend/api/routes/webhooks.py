"""
Inbound webhook endpoints.

- POST /api/webhooks/directory/{integration_id}: call and message events from
  the contact directory, signed with the per-webhook key we stored when the
  subscription was created.
- POST /api/webhooks/source/{integration_id}: record changes pushed by the
  CRM, signed with the integration's webhook secret.

Both endpoints only verify and acknowledge. Processing happens on the
``webhooks`` Celery queue so the provider gets its 2xx before any upstream
API call is made.
"""
from __future__ import annotations

import hmac
import json
import logging
from typing import Any, Optional
from uuid import UUID

import redis.asyncio as redis
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from config import get_redis_connection_kwargs, settings
from models.database import get_session
from models.integration import Integration
from services.mapping_store import SubscriptionStore
from services.signatures import verify_hmac_hex, verify_structured_signature, webhook_kind_for_event

logger = logging.getLogger(__name__)

router = APIRouter()

DIRECTORY_SIGNATURE_HEADER = "openphone-signature"
HANDSHAKE_HEADER = "X-Hook-Secret"

# Redis client for deduplication (lazy-initialised)
_redis_client: redis.Redis | None = None


async def _get_redis() -> redis.Redis:
    """Get or create Redis client for webhook deduplication."""
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(
            settings.REDIS_URL, **get_redis_connection_kwargs()
        )
    return _redis_client


def _unauthorized() -> JSONResponse:
    return JSONResponse(status_code=401, content={"error": "Signature required"})


def _parse_json(body: bytes) -> Optional[dict[str, Any]]:
    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        return None
    return payload if isinstance(payload, dict) else None


async def _load_integration(integration_id: str) -> Optional[Integration]:
    try:
        integration_uuid = UUID(integration_id)
    except ValueError:
        return None
    async with get_session() as session:
        return await session.get(Integration, integration_uuid)


# ---------------------------------------------------------------------------
# Deduplication
# ---------------------------------------------------------------------------

async def _is_duplicate_event(integration_id: str, event_id: str) -> bool:
    """
    Check if we've already queued this directory event.

    The directory retries deliveries that time out, so the same event id can
    arrive more than once. Uses Redis NX with a 1-hour TTL.
    """
    if not event_id:
        return False
    try:
        client: redis.Redis = await _get_redis()
        key: str = f"directory_sync:webhooks:{integration_id}:{event_id}"
        was_set: bool | None = await client.set(key, "1", nx=True, ex=3600)
        return not was_set
    except Exception as e:
        logger.error("[webhooks] Redis error during dedup: %s", e)
        # Workers dedupe by activity id as well, so a repeat here is harmless
        return False


# ---------------------------------------------------------------------------
# Queueing
# ---------------------------------------------------------------------------

def _enqueue_directory_event(integration_id: str, payload: dict[str, Any]) -> None:
    from workers.tasks.webhooks import process_directory_event

    process_directory_event.delay(integration_id, payload)


def _enqueue_source_event(
    integration_id: str, payload: dict[str, Any], handshake_secret: Optional[str] = None
) -> None:
    from workers.tasks.webhooks import process_source_event

    process_source_event.delay(integration_id, payload, handshake_secret)


# ---------------------------------------------------------------------------
# Directory webhooks
# ---------------------------------------------------------------------------

async def verify_directory_signature(integration_id: str, event_type: str, header: str, body: bytes) -> bool:
    """Any stored key for the event's webhook kind may have signed the delivery."""
    try:
        kind = webhook_kind_for_event(event_type)
    except ValueError:
        logger.warning("[webhooks] No webhook kind for event type %r", event_type)
        return False

    keys = await SubscriptionStore(integration_id).keys_for(kind)
    return any(verify_structured_signature(header, body, key) for key in keys)


@router.post("/directory/{integration_id}", response_model=None)
async def handle_directory_webhook(integration_id: str, request: Request) -> JSONResponse | dict[str, Any]:
    try:
        UUID(integration_id)
    except ValueError:
        logger.warning("[webhooks] Directory webhook for invalid integration id %r", integration_id)
        return _unauthorized()

    body: bytes = await request.body()
    signature: str = request.headers.get(DIRECTORY_SIGNATURE_HEADER, "")
    if not signature:
        logger.warning("[webhooks] Directory webhook without signature for %s", integration_id)
        return _unauthorized()

    payload = _parse_json(body)
    if payload is None:
        return _unauthorized()

    event_type: str = payload.get("type") or ""
    if not await verify_directory_signature(integration_id, event_type, signature, body):
        logger.warning(
            "[webhooks] Invalid directory signature for %s (event %s)", integration_id, event_type
        )
        return _unauthorized()

    event_id: str = payload.get("id") or ""
    if await _is_duplicate_event(integration_id, event_id):
        logger.info("[webhooks] Skipping duplicate directory event: %s", event_id)
        return {"received": True}

    logger.info(
        "[webhooks] Directory event %s (%s) for integration %s", event_type, event_id, integration_id
    )
    _enqueue_directory_event(integration_id, payload)
    return {"received": True}


# ---------------------------------------------------------------------------
# Source webhooks
# ---------------------------------------------------------------------------

def verify_source_signature(
    signature_header: Optional[str],
    request: Request,
    body: bytes,
    secret: Optional[str],
) -> bool:
    """
    Verify a source-system delivery.

    Sources that sign requests name their header on the connector metadata
    and send a hex HMAC of the raw body. Sources that cannot sign (Pipedrive)
    are registered with the secret as a ``token`` query parameter instead.
    """
    if not secret:
        return False
    if signature_header:
        return verify_hmac_hex(body, request.headers.get(signature_header), secret)

    token: str = request.query_params.get("token", "")
    if not token or len(token) != len(secret):
        return False
    return hmac.compare_digest(token.encode("utf-8"), secret.encode("utf-8"))


@router.post("/source/{integration_id}", response_model=None)
async def handle_source_webhook(integration_id: str, request: Request) -> JSONResponse | dict[str, Any]:
    from connectors.registry import get_connector_class

    body: bytes = await request.body()
    payload = _parse_json(body)
    if payload is None:
        return JSONResponse(status_code=400, content={"error": "Invalid JSON body"})

    integration = await _load_integration(integration_id)
    if integration is None:
        return _unauthorized()

    try:
        connector_class = get_connector_class(integration.provider)
    except ValueError:
        logger.warning("[webhooks] Unknown provider %s for %s", integration.provider, integration_id)
        return _unauthorized()

    handshake_secret: str = request.headers.get(HANDSHAKE_HEADER, "")
    if handshake_secret and connector_class.meta.handshake:
        # The worker confirms the secret against the source API before storing it
        logger.info("[webhooks] Source handshake for integration %s", integration_id)
        _enqueue_source_event(integration_id, payload, handshake_secret)
        return {"received": True, "handshake": True}

    secret: Optional[str] = (integration.config or {}).get("webhook_secret")
    if not verify_source_signature(connector_class.meta.signature_header, request, body, secret):
        logger.warning("[webhooks] Invalid %s signature for %s", integration.provider, integration_id)
        return _unauthorized()

    _enqueue_source_event(integration_id, payload)
    return {"received": True}
