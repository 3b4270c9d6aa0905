"""
Wallet Identity Cache

Short-lived (24h) Redis mirror of resolved identities, so a wallet that shows
up in several jobs within a day doesn't cost another round of provider calls.
Separate from the permanent social graph and purely an optimization:
- Redis not configured / down -> reads return {}, writes return 0
- a payload whose cached_at is older than the TTL is treated as absent
  (covers TTL changes and clock skew, not just key expiry)

Usage:
    cache = WalletCache()
    hits = await cache.get_many(wallets)          # {wallet: PartialIdentity}
    written = await cache.set_many(identities)    # WalletIdentity list
"""
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from walletgraph.core.config import settings
from walletgraph.core.redis_client import get_redis
from walletgraph.core.utils import ensure_aware, normalize_wallet, utcnow
from walletgraph.schemas.identity import PartialIdentity, WalletIdentity

logger = logging.getLogger(__name__)

WALLET_CACHE_PREFIX = "wallet:identity:"


def cache_key(wallet: str) -> str:
    return f"{WALLET_CACHE_PREFIX}{normalize_wallet(wallet)}"


class WalletCache:
    def __init__(
        self,
        redis_factory: Callable = get_redis,
        ttl_hours: Optional[int] = None,
    ):
        self._redis_factory = redis_factory
        self.ttl_hours = ttl_hours or settings.WALLET_CACHE_TTL_HOURS

        self._hits = 0
        self._misses = 0
        self._writes = 0
        self._errors = 0

    @property
    def ttl_seconds(self) -> int:
        return self.ttl_hours * 3600

    def _decode(self, raw: Optional[str], now: datetime) -> Optional[PartialIdentity]:
        if not raw:
            return None
        try:
            payload = json.loads(raw)
            cached_at = ensure_aware(datetime.fromisoformat(payload.pop("cached_at")))
        except (ValueError, KeyError, TypeError) as e:
            logger.debug(f"[CACHE] Dropping unreadable cache entry: {e}")
            return None
        if cached_at < now - timedelta(hours=self.ttl_hours):
            return None
        return PartialIdentity.model_validate(payload)

    def _encode(self, identity: WalletIdentity, now: datetime) -> str:
        payload: Dict[str, Any] = identity.identity_fields()
        payload["sources"] = identity.provider_sources()
        payload["cached_at"] = now.isoformat()
        return json.dumps(payload)

    async def get_many(self, wallets: Iterable[str]) -> Dict[str, PartialIdentity]:
        wallets = [normalize_wallet(w) for w in wallets if w]
        if not wallets:
            return {}

        client = await self._redis_factory()
        if not client:
            return {}

        try:
            raw_values = await client.mget([cache_key(w) for w in wallets])
        except Exception as e:
            self._errors += 1
            logger.warning(f"[CACHE] Read failed for {len(wallets)} wallets, continuing without cache: {e}")
            return {}

        now = utcnow()
        hits: Dict[str, PartialIdentity] = {}
        for wallet, raw in zip(wallets, raw_values):
            partial = self._decode(raw, now)
            if partial is not None and not partial.is_empty():
                hits[wallet] = partial

        self._hits += len(hits)
        self._misses += len(wallets) - len(hits)
        return hits

    async def set_many(self, identities: Iterable[WalletIdentity]) -> int:
        """Write-through of freshly resolved wallets. Returns count written."""
        entries = [i for i in identities if not i.is_empty()]
        if not entries:
            return 0

        client = await self._redis_factory()
        if not client:
            return 0

        now = utcnow()
        try:
            pipe = client.pipeline(transaction=False)
            for identity in entries:
                pipe.setex(cache_key(identity.wallet), self.ttl_seconds, self._encode(identity, now))
            await pipe.execute()
        except Exception as e:
            self._errors += 1
            logger.warning(f"[CACHE] Write failed for {len(entries)} wallets: {e}")
            return 0

        self._writes += len(entries)
        return len(entries)

    async def invalidate(self, wallets: List[str]) -> int:
        client = await self._redis_factory()
        if not client or not wallets:
            return 0
        try:
            return await client.delete(*[cache_key(w) for w in wallets])
        except Exception as e:
            self._errors += 1
            logger.warning(f"[CACHE] Invalidate failed: {e}")
            return 0

    def get_stats(self) -> Dict[str, Any]:
        total = self._hits + self._misses
        return {
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / total, 4) if total > 0 else 0.0,
            "writes": self._writes,
            "errors": self._errors,
            "ttl_seconds": self.ttl_seconds,
        }
