"""Cached account + positions snapshot for read-only consumers.

Written by the account refresh task, read by the dashboard and the AI
strategist. Never feeds back into the ledger or the risk policy.
"""

import json
import logging
from datetime import datetime, timezone

import redis.asyncio as aioredis

from app.services.execution.alpaca_gateway import Account, BrokerPosition

logger = logging.getLogger(__name__)

REDIS_KEY_SNAPSHOT_PREFIX = "paperdesk:snapshot:"


async def save_snapshot(
    r: aioredis.Redis,
    user_id: str,
    account: Account,
    positions: list[BrokerPosition],
    ttl_seconds: int,
) -> dict:
    snapshot = {
        "account": account.to_dict(),
        "positions": [p.to_dict() for p in positions],
        "refreshed_at": datetime.now(timezone.utc).isoformat(),
    }
    await r.set(f"{REDIS_KEY_SNAPSHOT_PREFIX}{user_id}", json.dumps(snapshot), ex=ttl_seconds)
    return snapshot


async def load_snapshot(r: aioredis.Redis, user_id: str) -> dict | None:
    raw = await r.get(f"{REDIS_KEY_SNAPSHOT_PREFIX}{user_id}")
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        logger.warning("Discarding corrupt snapshot for %s", user_id)
        return None
