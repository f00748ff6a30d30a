# followup_engine/web/idempotency_cache.py
import asyncio
from cachetools import TTLCache


class IdempotencyCache:
    """
    In-memory front cache for webhook redeliveries, keyed by provider:external_id.
    The durable guarantee is the ledger's unique external_id; this only saves
    the round trip for bursts of retries.
    """

    def __init__(self, ttl_seconds: int = 300, maxsize: int = 10000):
        self._cache = TTLCache(maxsize=maxsize, ttl=ttl_seconds)
        self._lock = asyncio.Lock()

    async def reserve(self, key: str) -> bool:
        """Return True if key is new and reserved; False if duplicate."""
        async with self._lock:
            if key in self._cache:
                return False
            self._cache[key] = True
            return True

    async def release(self, key: str) -> None:
        """Forget a reservation whose processing failed, so a redelivery is handled."""
        async with self._lock:
            self._cache.pop(key, None)

    def clear(self):
        self._cache.clear()

    def __len__(self):
        return len(self._cache)
