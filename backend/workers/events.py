"""
Sync lifecycle events.

Events are pushed onto a Redis list for whatever consumes them (dashboards,
alerting). Emitted types:
- sync.completed
- sync.failed
- sync.cancelled
- webhooks.reconciled
"""
from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any
from uuid import uuid4

import redis.asyncio as redis

from config import get_redis_connection_kwargs, settings

logger = logging.getLogger(__name__)

EVENT_QUEUE_KEY = "directory_sync:events:queue"
EVENT_HISTORY_KEY = "directory_sync:events:history:{integration_id}"


async def get_redis_client() -> redis.Redis:
    """Get an async Redis client."""
    return redis.from_url(
        settings.REDIS_URL, **get_redis_connection_kwargs(decode_responses=True)
    )


async def emit_event(
    event_type: str,
    integration_id: str,
    data: dict[str, Any],
) -> str:
    """
    Publish a sync lifecycle event.

    Args:
        event_type: Type of event (e.g., 'sync.completed')
        integration_id: UUID of the integration the event is about
        data: Event payload data

    Returns:
        Event ID
    """
    event_id = str(uuid4())
    event = {
        "id": event_id,
        "type": event_type,
        "integration_id": integration_id,
        "data": data,
        "timestamp": datetime.utcnow().isoformat(),
    }

    try:
        client = await get_redis_client()

        await client.rpush(EVENT_QUEUE_KEY, json.dumps(event, default=str))

        history_key = EVENT_HISTORY_KEY.format(integration_id=integration_id)
        await client.rpush(history_key, json.dumps(event, default=str))
        await client.expire(history_key, 60 * 60 * 24 * 7)  # 7 days

        logger.info(f"Emitted event {event_type} for integration {integration_id}: {event_id}")
        await client.aclose()

    except Exception as e:
        logger.error(f"Failed to emit event: {e}")
        # Don't fail the calling operation if event emission fails

    return event_id


async def get_event_history(
    integration_id: str, limit: int = 50
) -> list[dict[str, Any]]:
    """Recent events for one integration, most recent first."""
    try:
        client = await get_redis_client()
        history_key = EVENT_HISTORY_KEY.format(integration_id=integration_id)

        events_json = await client.lrange(history_key, -limit, -1)
        events = [json.loads(e) for e in events_json]

        await client.aclose()
        return list(reversed(events))

    except Exception as e:
        logger.error(f"Failed to get event history: {e}")
        return []
