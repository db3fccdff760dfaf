"""Bonus notifications: persisted for the inbox, pushed live over Redis.

The WebSocket bridge subscribes to ``ws:user:{user_id}``; a failed push is
logged and the stored notification still stands.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bonus_ledger.db.models import Notification
from bonus_ledger.time_utils import utcnow

logger = logging.getLogger(__name__)

VALID_TYPES = {"bonus", "system"}


def user_channel(user_id: int) -> str:
    return f"ws:user:{user_id}"


def notification_payload(notification: Notification) -> dict[str, Any]:
    """WebSocket frame for a stored notification; metadata carries amounts and lead times."""
    return {
        "event": "notification",
        "data": {
            "id": str(notification.id),
            "type": notification.type,
            "subtype": notification.subtype,
            "title": notification.title,
            "description": notification.description,
            "timestamp": notification.created_at.isoformat(),
            "read": notification.read,
            "metadata": notification.notification_metadata,
        },
    }


async def push_to_user(redis: Any, user_id: int, payload: dict[str, Any]) -> bool:
    try:
        await redis.publish(user_channel(user_id), json.dumps(payload))
    except Exception:
        logger.warning("Failed to push notification on %s", user_channel(user_id), exc_info=True)
        return False
    return True


async def create_notification(
    db: AsyncSession,
    user_id: int,
    type_: str,
    subtype: str,
    title: str,
    description: str | None = None,
    metadata: dict[str, Any] | None = None,
    redis: Any | None = None,
) -> Notification:
    """Store a notification in the caller's session and push it when Redis is available."""
    if type_ not in VALID_TYPES:
        msg = f"Invalid notification type: {type_}. Must be one of {sorted(VALID_TYPES)}"
        raise ValueError(msg)

    notification = Notification(
        user_id=user_id,
        type=type_,
        subtype=subtype,
        title=title,
        description=description,
        read=False,
        notification_metadata=metadata or {},
        created_at=utcnow(),
    )
    db.add(notification)
    await db.flush()

    if redis is not None:
        await push_to_user(redis, user_id, notification_payload(notification))
    return notification


async def has_recent_notification(db: AsyncSession, user_id: int, title: str, since: datetime) -> bool:
    """Whether the user already got a notification with this title since ``since``."""
    found = await db.scalar(
        select(Notification.id)
        .where(
            Notification.user_id == user_id,
            Notification.title == title,
            Notification.created_at >= since,
        )
        .limit(1)
    )
    return found is not None
