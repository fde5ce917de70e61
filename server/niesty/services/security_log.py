"""Security event recording for denied or malformed deal requests."""
import logging
from typing import Optional
from uuid import UUID

import asyncpg

logger = logging.getLogger(__name__)


async def sec_log(
    conn: asyncpg.Connection,
    route: str,
    reason: str,
    user_id: Optional[UUID] = None,
) -> None:
    """Record a security event on the caller's connection. Never raises."""
    try:
        await conn.execute(
            "INSERT INTO security_events (route, reason, user_id) VALUES ($1, $2, $3)",
            route,
            reason[:255],
            user_id,
        )
    except Exception as e:
        logger.warning("[SecLog] Failed to record %s on %s: %s", reason, route, e)
