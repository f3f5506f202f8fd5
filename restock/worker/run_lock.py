"""Redis-based lock that keeps prediction runs from overlapping."""

import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import uuid4

import redis.asyncio as redis

from restock.config import settings

logger = logging.getLogger(__name__)

LOCK_KEY = "restock:prediction:lock"

# Returns: 0 = not found/already released, 1 = deleted, 2 = mismatch
_SAFE_UNLOCK_SCRIPT = """
local lock_value = redis.call('GET', KEYS[1])
if not lock_value then
    return 0
end

local cjson = require('cjson')
local success, data = pcall(cjson.decode, lock_value)
if not success then
    return 2
end

if data.run_id == ARGV[1] and data.token == ARGV[2] then
    redis.call('DEL', KEYS[1])
    return 1
else
    return 2
end
"""


class RunLockManager:
    """
    Manages the distributed prediction-run lock.

    - TTL-based expiration so a crashed run cannot block the next night
    - Token-based ownership verification on release
    """

    def __init__(self, redis_url: Optional[str] = None):
        self.redis_url = redis_url or settings.redis_url
        self._redis: Optional[redis.Redis] = None

    async def _get_redis(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._redis

    async def close(self):
        """Close Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def acquire_lock(
        self,
        run_id: str,
        ttl_seconds: Optional[int] = None,
    ) -> Optional[str]:
        """
        Acquire the run lock.

        Args:
            run_id: Unique run identifier (UUID hex)
            ttl_seconds: Time-to-live in seconds (defaults to settings)

        Returns:
            Token string if lock acquired, None if already held
        """
        redis_client = await self._get_redis()
        ttl = ttl_seconds or settings.run_lock_ttl_seconds

        token = uuid4().hex
        lock_value = json.dumps({
            "run_id": run_id,
            "token": token,
            "started_at": datetime.utcnow().isoformat(),
        })

        acquired = await redis_client.set(LOCK_KEY, lock_value, nx=True, ex=ttl)
        if acquired:
            logger.info(f"Acquired prediction lock for run_id: {run_id[:16]}...")
            return token

        existing_value = await redis_client.get(LOCK_KEY)
        if existing_value:
            try:
                existing_run_id = json.loads(existing_value).get("run_id", "unknown")
                logger.info(f"Prediction lock already held by run_id: {existing_run_id[:16]}...")
            except (json.JSONDecodeError, AttributeError):
                logger.warning(f"Lock exists but value is invalid: {existing_value}")
        return None

    async def safe_unlock(self, run_id: str, token: Optional[str] = None) -> bool:
        """
        Release the lock only if it is still owned by this run.

        Returns:
            True if released (or already gone), False on ownership mismatch
        """
        if not token:
            logger.warning("Unlock requested without token; refusing (use force_unlock for recovery).")
            return False

        redis_client = await self._get_redis()
        result = await redis_client.eval(_SAFE_UNLOCK_SCRIPT, 1, LOCK_KEY, run_id, token)

        if result == 0:
            logger.debug("Lock already released")
            return True
        if result == 1:
            logger.info(f"Released prediction lock for run_id: {run_id[:16]}...")
            return True

        logger.warning(
            f"Attempted to release lock with mismatched token/run_id: requested={run_id[:16]}..."
        )
        return False

    async def force_unlock(self) -> bool:
        """Force unlock without token verification (admin recovery)."""
        redis_client = await self._get_redis()
        await redis_client.delete(LOCK_KEY)
        logger.warning("Force-cleared prediction lock")
        return True

    async def get_lock_info(self) -> Optional[Dict[str, Any]]:
        """
        Get current lock information.

        Returns:
            Dict with run_id, started_at, ttl, or None if no lock
        """
        redis_client = await self._get_redis()
        value = await redis_client.get(LOCK_KEY)
        if not value:
            return None
        ttl = await redis_client.ttl(LOCK_KEY)

        try:
            data = json.loads(value)
        except json.JSONDecodeError as e:
            logger.error(f"Invalid lock value format: {e}")
            return {"raw_value": value, "ttl_seconds": ttl if ttl > 0 else None}

        return {
            "run_id": data.get("run_id"),
            "token": data.get("token"),
            "started_at": data.get("started_at"),
            "ttl_seconds": ttl if ttl > 0 else None,
        }


# Global lock manager instance
run_lock_manager = RunLockManager()
