"""
Provider adapters: response parsing and batch behaviour over a mock transport.
"""
import httpx
import pytest

from fakes import wallet
from walletgraph.adapters import ENSProvider, NeynarProvider, Web3BioProvider, run_provider
from walletgraph.adapters.ens import parse_ens_record
from walletgraph.adapters.neynar import parse_neynar_users
from walletgraph.adapters.web3bio import parse_web3bio_profiles
from walletgraph.core.exceptions import ProviderError, ProviderUnavailableError
from walletgraph.core.http_client import ResilientHTTPClient, RetryConfig

A, B, C = wallet(1), wallet(2), wallet(3)


def mock_client(handler) -> ResilientHTTPClient:
    return ResilientHTTPClient(
        retry_config=RetryConfig(max_retries=0, base_delay=0.0, jitter_factor=0.0),
        transport=httpx.MockTransport(handler),
    )


def neynar_user(username, followers=10, fid=1, twitter=None):
    user = {"username": username, "follower_count": followers, "fid": fid, "verified_accounts": []}
    if twitter:
        user["verified_accounts"].append({"platform": "x", "username": twitter})
    return user


# =============================================================================
# Parsing
# =============================================================================

class TestParsing:
    def test_neynar_primary_user(self):
        partial = parse_neynar_users([
            neynar_user("alice", followers=99, fid=7, twitter="@Alice_X"),
            neynar_user("alt-account"),
        ])
        assert partial.farcaster == "alice"
        assert partial.farcaster_url == "https://warpcast.com/alice"
        assert partial.fc_followers == 99
        assert partial.twitter_handle == "alice_x"

    def test_neynar_empty(self):
        assert parse_neynar_users([]) is None
        assert parse_neynar_users([{"fid": 3}]) is None

    def test_web3bio_flattens_platforms(self):
        partial = parse_web3bio_profiles([
            {"platform": "ens", "identity": "alice.eth", "links": {
                "twitter": {"handle": "alice", "link": "https://twitter.com/alice"},
                "github": {"handle": "alice-gh"},
            }},
            {"platform": "farcaster", "identity": "alice", "links": {
                "farcaster": {"handle": "@alice"},
                "twitter": {"handle": "someone_else"},
            }},
        ])
        assert partial.ens_name == "alice.eth"
        assert partial.twitter_handle == "alice"
        assert partial.twitter_url == "https://twitter.com/alice"
        assert partial.farcaster == "alice"
        assert partial.farcaster_url == "https://warpcast.com/alice"
        assert partial.github == "alice-gh"

    def test_web3bio_without_identity(self):
        assert parse_web3bio_profiles([{"platform": "lens", "links": []}]) is None

    def test_ens_text_records(self):
        partial = parse_ens_record({
            "ens_primary": "alice.eth",
            "records": {"com.twitter": "https://x.com/AliceETH", "com.github": "alice"},
        })
        assert partial.ens_name == "alice.eth"
        assert partial.twitter_handle == "aliceeth"
        assert partial.github == "alice"

    def test_ens_requires_a_name(self):
        assert parse_ens_record({"twitter": "alice"}) is None


# =============================================================================
# Batch resolution
# =============================================================================

class TestNeynarProvider:
    @pytest.mark.asyncio
    async def test_batches_and_maps_addresses(self):
        requested = []

        def handler(request):
            addresses = request.url.params["addresses"].split(",")
            requested.append(addresses)
            assert request.headers["x-api-key"] == "key"
            body = {}
            if A in addresses:
                body[A] = [neynar_user("alice")]
            if C in addresses:
                body[C] = [neynar_user("carol", twitter="carol_x")]
            return httpx.Response(200, json=body)

        provider = NeynarProvider(client=mock_client(handler), api_key="key", batch_size=2, round_delay_ms=0)
        results = await provider.resolve_batch([A, B, C])

        assert requested == [[A, B], [C]]
        assert set(results) == {A, C}
        assert results[C].twitter_handle == "carol_x"

    @pytest.mark.asyncio
    async def test_404_means_no_accounts(self):
        provider = NeynarProvider(client=mock_client(lambda r: httpx.Response(404)), api_key="key", round_delay_ms=0)
        assert await provider.resolve_batch([A]) == {}

    @pytest.mark.asyncio
    async def test_one_failed_batch_loses_only_its_wallets(self):
        def handler(request):
            addresses = request.url.params["addresses"].split(",")
            if A in addresses:
                return httpx.Response(503)
            return httpx.Response(200, json={C: [neynar_user("carol")]})

        provider = NeynarProvider(client=mock_client(handler), api_key="key", batch_size=1, round_delay_ms=0)
        results = await provider.resolve_batch([A, C])
        assert set(results) == {C}

    @pytest.mark.asyncio
    async def test_all_batches_failing_raises(self):
        provider = NeynarProvider(client=mock_client(lambda r: httpx.Response(500)), api_key="key", round_delay_ms=0)
        with pytest.raises(ProviderUnavailableError):
            await provider.resolve_batch([A, B])

    @pytest.mark.asyncio
    async def test_bad_key_aborts(self):
        provider = NeynarProvider(client=mock_client(lambda r: httpx.Response(401)), api_key="bad", round_delay_ms=0)
        with pytest.raises(ProviderError) as exc_info:
            await provider.resolve_batch([A])
        assert exc_info.value.code == "PROVIDER_AUTH_FAILED"


class TestWeb3BioProvider:
    @pytest.mark.asyncio
    async def test_one_request_per_wallet(self):
        paths = []

        def handler(request):
            paths.append(request.url.path)
            if request.url.path.endswith(A):
                return httpx.Response(200, json=[{"platform": "ens", "identity": "alice.eth", "links": {}}])
            return httpx.Response(404)

        provider = Web3BioProvider(client=mock_client(handler))
        results = await provider.resolve_batch([A, B])

        assert sorted(paths) == sorted([f"/profile/{A}", f"/profile/{B}"])
        assert results[A].ens_name == "alice.eth"
        assert B not in results


class TestENSProvider:
    @pytest.mark.asyncio
    async def test_resolves_names(self):
        def handler(request):
            if request.url.path == f"/{B}":
                return httpx.Response(200, json={"ens_primary": "bob.eth", "twitter": "bob"})
            return httpx.Response(404)

        provider = ENSProvider(client=mock_client(handler), batch_size=10)
        results = await provider.resolve_batch([A, B])

        assert list(results) == [B]
        assert results[B].twitter_handle == "bob"


class TestRunProvider:
    @pytest.mark.asyncio
    async def test_failure_becomes_empty_outcome(self):
        provider = Web3BioProvider(client=mock_client(lambda r: httpx.Response(500)))
        outcome = await run_provider(provider, [A])

        assert outcome.status == "failed"
        assert outcome.results == {}
        assert outcome.wallet_count == 1

    @pytest.mark.asyncio
    async def test_unconfigured_provider_is_skipped(self):
        provider = NeynarProvider(client=mock_client(lambda r: httpx.Response(200, json={})), api_key="")
        outcome = await run_provider(provider, [A])
        assert outcome.status == "skipped"

    @pytest.mark.asyncio
    async def test_results_outside_request_are_dropped(self):
        def handler(request):
            return httpx.Response(200, json={C: [neynar_user("carol")]})

        provider = NeynarProvider(client=mock_client(handler), api_key="key", round_delay_ms=0)
        outcome = await run_provider(provider, [A])
        assert outcome.status == "ok"
        assert outcome.results == {}
