"""
Web3.bio Adapter

Per-wallet fallback tier. web3.bio aggregates ENS, Farcaster, Lens and the
social links people attach to them, but it is one request per wallet, so the
pipeline only sends it wallets that still have no Twitter handle after the
batch tiers.

API: GET /profile/{wallet}  -> list of platform profiles (404 = nothing)
Auth: optional X-API-Key header (raises the rate limit)
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx

from walletgraph.adapters.base import IdentityProvider
from walletgraph.adapters.twitter import clean_twitter_handle, twitter_url
from walletgraph.core.config import settings
from walletgraph.core.exceptions import ProviderUnavailableError
from walletgraph.core.http_client import ResilientHTTPClient, get_web3bio_client
from walletgraph.core.utils import chunked, normalize_wallet
from walletgraph.schemas.identity import PartialIdentity

logger = logging.getLogger(__name__)


def _link_handle(links: Dict[str, Any], platform: str) -> Optional[str]:
    link = links.get(platform)
    if isinstance(link, dict):
        return link.get("handle") or None
    return None


def _link_url(links: Dict[str, Any], platform: str) -> Optional[str]:
    link = links.get(platform)
    if isinstance(link, dict):
        return link.get("link") or None
    return None


def parse_web3bio_profiles(profiles: Optional[List[Dict[str, Any]]]) -> Optional[PartialIdentity]:
    """Flatten web3.bio's per-platform profiles into one partial identity."""
    if not profiles:
        return None

    partial = PartialIdentity()

    for profile in profiles:
        platform = (profile.get("platform") or "").lower()
        identity = profile.get("identity")
        if platform == "ens" and identity and not partial.ens_name:
            partial.ens_name = identity

        links = profile.get("links") or {}
        if not isinstance(links, dict):
            continue

        handle = clean_twitter_handle(_link_handle(links, "twitter"))
        if handle and not partial.twitter_handle:
            partial.twitter_handle = handle
            partial.twitter_url = _link_url(links, "twitter") or twitter_url(handle)

        farcaster = _link_handle(links, "farcaster")
        if farcaster and not partial.farcaster:
            farcaster = farcaster.lstrip("@")
            partial.farcaster = farcaster
            partial.farcaster_url = _link_url(links, "farcaster") or f"https://warpcast.com/{farcaster}"

        lens = _link_handle(links, "lens")
        if lens and not partial.lens:
            partial.lens = lens

        github = _link_handle(links, "github")
        if github and not partial.github:
            partial.github = github

        linkedin = _link_handle(links, "linkedin")
        if linkedin and not partial.linkedin:
            partial.linkedin = linkedin

    if not partial.has_positive_identity():
        return None
    return partial


class Web3BioProvider(IdentityProvider):
    name = "web3bio"
    source_tag = "web3bio"

    def __init__(
        self,
        client: Optional[ResilientHTTPClient] = None,
        concurrency: Optional[int] = None,
    ):
        super().__init__(client or get_web3bio_client())
        self.base_url = settings.WEB3BIO_API_BASE.rstrip("/")
        self.concurrency = concurrency or settings.WEB3BIO_CONCURRENCY

    async def fetch_profile(self, wallet: str) -> Optional[List[Dict[str, Any]]]:
        response = await self.client.get(f"{self.base_url}/profile/{wallet}")
        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise ProviderUnavailableError(
                f"Web3.bio API error: {response.status_code}", provider=self.name
            )
        data = response.json()
        return data if isinstance(data, list) else [data]

    async def resolve_batch(self, wallets: List[str]) -> Dict[str, PartialIdentity]:
        results: Dict[str, PartialIdentity] = {}
        normalized = [normalize_wallet(w) for w in wallets]
        errors = 0
        last_error: Optional[BaseException] = None

        for group in chunked(normalized, self.concurrency):
            responses = await asyncio.gather(
                *(self.fetch_profile(wallet) for wallet in group),
                return_exceptions=True,
            )
            for wallet, response in zip(group, responses):
                if isinstance(response, BaseException):
                    errors += 1
                    last_error = response
                    continue
                parsed = parse_web3bio_profiles(response)
                if parsed:
                    results[wallet] = parsed

        if errors:
            logger.warning(f"[WEB3BIO] {errors}/{len(normalized)} requests failed, last: {last_error}")
        if normalized and errors == len(normalized):
            raise ProviderUnavailableError(
                f"All {errors} Web3.bio requests failed: {last_error}", provider=self.name
            )

        return results


def create_web3bio_provider() -> Web3BioProvider:
    return Web3BioProvider()
