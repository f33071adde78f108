"""
Sync lifecycle events.

Events are pushed to a Redis list for downstream consumers (dashboards
refreshing caches, notifications) and kept per workspace for a week:
- sync.completed
- sync.failed

Publishing never fails the sync that emits it.
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

# Redis key prefixes
EVENT_QUEUE_KEY = "taskboard:events:queue"
EVENT_HISTORY_KEY = "taskboard:events:history:{workspace_id}"
EVENT_HISTORY_TTL_SECONDS = 60 * 60 * 24 * 7


async def get_redis_client() -> redis.Redis:
    """Get an async Redis client."""
    return redis.from_url(
        settings.REDIS_URL, **get_redis_connection_kwargs(decode_responses=True)
    )


async def emit_event(
    event_type: str,
    workspace_id: str,
    data: dict[str, Any],
) -> str:
    """
    Publish a sync lifecycle event.

    Args:
        event_type: Type of event (e.g., 'sync.completed')
        workspace_id: UUID of the workspace
        data: Event payload data

    Returns:
        Event ID
    """
    event_id = str(uuid4())
    event = {
        "id": event_id,
        "type": event_type,
        "workspace_id": workspace_id,
        "data": data,
        "timestamp": datetime.utcnow().isoformat(),
    }

    try:
        client = await get_redis_client()
        try:
            payload = json.dumps(event, default=str)
            await client.rpush(EVENT_QUEUE_KEY, payload)

            history_key = EVENT_HISTORY_KEY.format(workspace_id=workspace_id)
            await client.rpush(history_key, payload)
            await client.expire(history_key, EVENT_HISTORY_TTL_SECONDS)
        finally:
            await client.aclose()

        logger.info("Emitted event %s for workspace %s: %s", event_type, workspace_id, event_id)

    except Exception as e:
        # Don't fail the calling operation if event emission fails
        logger.error("Failed to emit event %s: %s", event_type, e)

    return event_id
