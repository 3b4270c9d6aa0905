"""
ENS Adapter

On-chain name-service tier. Reverse-resolves each wallet to its primary ENS
name and reads the social text records set on it (ENSIP-5 keys), using the
ensdata.net resolver API so no RPC node is needed.

API: GET {ENSDATA_API_BASE}/{address}  -> flat JSON of name + text records
404 means the address has no primary name.

Only offered to paid tiers with include_ens set; see JobOptions.ens_enabled.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional

from walletgraph.adapters.base import IdentityProvider
from walletgraph.adapters.twitter import clean_twitter_handle, twitter_url
from walletgraph.core.config import settings
from walletgraph.core.exceptions import ProviderUnavailableError
from walletgraph.core.http_client import ResilientHTTPClient, get_ensdata_client
from walletgraph.core.utils import chunked, normalize_wallet
from walletgraph.schemas.identity import PartialIdentity

logger = logging.getLogger(__name__)

# Text record keys where Twitter handles are stored, in preference order
TWITTER_KEYS = ("com.twitter", "twitter", "vnd.twitter")
GITHUB_KEYS = ("com.github", "github")
NAME_KEYS = ("ens_primary", "ens", "name")

# Pause between batches so the free resolver doesn't throttle us
BATCH_DELAY_SECONDS = 0.05


def _first(data: Dict[str, Any], keys) -> Optional[str]:
    records = data.get("records") if isinstance(data.get("records"), dict) else {}
    for key in keys:
        value = data.get(key) or records.get(key)
        if value:
            return value
    return None


def parse_ens_record(data: Optional[Dict[str, Any]]) -> Optional[PartialIdentity]:
    if not data:
        return None

    ens_name = _first(data, NAME_KEYS)
    if not ens_name:
        return None

    partial = PartialIdentity(ens_name=ens_name)

    records = data.get("records") if isinstance(data.get("records"), dict) else {}
    for key in TWITTER_KEYS:
        handle = clean_twitter_handle(data.get(key) or records.get(key))
        if handle:
            partial.twitter_handle = handle
            partial.twitter_url = twitter_url(handle)
            break

    github = _first(data, GITHUB_KEYS)
    if github:
        partial.github = github

    return partial


class ENSProvider(IdentityProvider):
    name = "ens"
    source_tag = "ens"

    def __init__(
        self,
        client: Optional[ResilientHTTPClient] = None,
        batch_size: Optional[int] = None,
    ):
        super().__init__(client or get_ensdata_client())
        self.base_url = settings.ENSDATA_API_BASE.rstrip("/")
        self.batch_size = batch_size or settings.ENS_BATCH_SIZE

    async def fetch_record(self, wallet: str) -> Optional[Dict[str, Any]]:
        response = await self.client.get(f"{self.base_url}/{wallet}")
        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise ProviderUnavailableError(
                f"ENS resolver error: {response.status_code}", provider=self.name
            )
        return response.json()

    async def resolve_batch(self, wallets: List[str]) -> Dict[str, PartialIdentity]:
        results: Dict[str, PartialIdentity] = {}
        normalized = [normalize_wallet(w) for w in wallets]
        errors = 0
        last_error: Optional[BaseException] = None

        batches = list(chunked(normalized, self.batch_size))
        for index, batch in enumerate(batches):
            responses = await asyncio.gather(
                *(self.fetch_record(wallet) for wallet in batch),
                return_exceptions=True,
            )
            for wallet, response in zip(batch, responses):
                if isinstance(response, BaseException):
                    errors += 1
                    last_error = response
                    continue
                parsed = parse_ens_record(response)
                if parsed:
                    results[wallet] = parsed

            if index + 1 < len(batches):
                await asyncio.sleep(BATCH_DELAY_SECONDS)

        if errors:
            logger.warning(f"[ENS] {errors}/{len(normalized)} lookups failed, last: {last_error}")
        if normalized and errors == len(normalized):
            raise ProviderUnavailableError(
                f"All {errors} ENS lookups failed: {last_error}", provider=self.name
            )

        return results


def create_ens_provider() -> ENSProvider:
    return ENSProvider()
