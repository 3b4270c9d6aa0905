"""
Neynar (Farcaster) Adapter

Fast batch social tier. One bulk-by-address call resolves up to 200 wallets
to Farcaster accounts, including follower counts and any verified X/Twitter
account linked to the Farcaster profile.

API: GET /v2/farcaster/user/bulk-by-address?addresses=0x..,0x..
Auth: x-api-key header. Without a key the provider is skipped.

Batches run CONCURRENT_BATCHES at a time with a short pause between rounds.
A single failed batch only loses those wallets; if every batch fails the
whole call raises so the circuit breaker sees it.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx

from walletgraph.adapters.base import IdentityProvider
from walletgraph.adapters.twitter import clean_twitter_handle, twitter_url
from walletgraph.core.config import settings
from walletgraph.core.exceptions import ProviderError, ProviderRateLimitedError, ProviderUnavailableError
from walletgraph.core.http_client import RateLimitExceeded, ResilientHTTPClient, get_neynar_client
from walletgraph.core.utils import chunked, normalize_wallet
from walletgraph.schemas.identity import PartialIdentity

logger = logging.getLogger(__name__)

TWITTER_PLATFORMS = ("x", "twitter")


def parse_neynar_users(users: Optional[List[Dict[str, Any]]]) -> Optional[PartialIdentity]:
    """The first user returned for an address is the primary account."""
    if not users:
        return None

    user = users[0]
    username = user.get("username")
    if not username:
        return None

    partial = PartialIdentity(
        farcaster=username,
        farcaster_url=f"https://warpcast.com/{username}",
        fc_followers=user.get("follower_count"),
        fc_fid=user.get("fid"),
    )

    for account in user.get("verified_accounts") or []:
        if (account.get("platform") or "").lower() in TWITTER_PLATFORMS:
            handle = clean_twitter_handle(account.get("username"))
            if handle:
                partial.twitter_handle = handle
                partial.twitter_url = twitter_url(handle)
                break

    return partial


class NeynarProvider(IdentityProvider):
    name = "neynar"
    source_tag = "neynar"

    def __init__(
        self,
        client: Optional[ResilientHTTPClient] = None,
        api_key: Optional[str] = None,
        batch_size: Optional[int] = None,
        concurrent_batches: Optional[int] = None,
        round_delay_ms: Optional[int] = None,
    ):
        super().__init__(client or get_neynar_client())
        self.api_key = settings.NEYNAR_API_KEY if api_key is None else api_key
        self.base_url = settings.NEYNAR_API_BASE.rstrip("/")
        self.batch_size = batch_size or settings.NEYNAR_BATCH_SIZE
        self.concurrent_batches = concurrent_batches or settings.NEYNAR_CONCURRENT_BATCHES
        self.round_delay = (settings.NEYNAR_ROUND_DELAY_MS if round_delay_ms is None else round_delay_ms) / 1000

    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def fetch_batch(self, addresses: List[str]) -> Dict[str, Any]:
        """One bulk-by-address call. Response maps lowercase address -> [user, ...]."""
        try:
            response = await self.client.get(
                f"{self.base_url}/farcaster/user/bulk-by-address",
                params={"addresses": ",".join(addresses)},
                headers={"x-api-key": self.api_key},
            )
        except RateLimitExceeded as e:
            raise ProviderRateLimitedError(str(e), provider=self.name, retry_after_seconds=e.wait_time)
        except httpx.HTTPStatusError as e:
            status = e.response.status_code if e.response is not None else None
            if status in (401, 403):
                raise ProviderError("Invalid Neynar API key", provider=self.name, code="PROVIDER_AUTH_FAILED")
            if status == 429:
                raise ProviderRateLimitedError("Neynar rate limited", provider=self.name)
            raise ProviderUnavailableError(f"Neynar API error: {status}", provider=self.name)

        # Neynar answers 404 when none of the addresses has a Farcaster account
        if response.status_code == 404:
            return {}
        if response.status_code != 200:
            raise ProviderUnavailableError(f"Neynar API error: {response.status_code}", provider=self.name)
        return response.json() or {}

    async def resolve_batch(self, wallets: List[str]) -> Dict[str, PartialIdentity]:
        results: Dict[str, PartialIdentity] = {}
        batches = list(chunked([normalize_wallet(w) for w in wallets], self.batch_size))
        failed_batches = 0
        last_error: Optional[BaseException] = None

        for round_start in range(0, len(batches), self.concurrent_batches):
            round_batches = batches[round_start:round_start + self.concurrent_batches]
            responses = await asyncio.gather(
                *(self.fetch_batch(batch) for batch in round_batches),
                return_exceptions=True,
            )

            for batch, response in zip(round_batches, responses):
                if isinstance(response, BaseException):
                    # Auth failures won't fix themselves on the next batch
                    if isinstance(response, ProviderError) and response.code == "PROVIDER_AUTH_FAILED":
                        raise response
                    failed_batches += 1
                    last_error = response
                    logger.warning(f"[NEYNAR] Batch of {len(batch)} failed: {response}")
                    continue

                lowered = {k.lower(): v for k, v in response.items()}
                for wallet in batch:
                    parsed = parse_neynar_users(lowered.get(wallet))
                    if parsed:
                        results[wallet] = parsed

            if round_start + self.concurrent_batches < len(batches) and self.round_delay > 0:
                await asyncio.sleep(self.round_delay)

        if batches and failed_batches == len(batches):
            raise ProviderUnavailableError(
                f"All {failed_batches} Neynar batches failed: {last_error}",
                provider=self.name,
            )

        return results


def create_neynar_provider() -> NeynarProvider:
    """Factory for the production provider."""
    return NeynarProvider()
