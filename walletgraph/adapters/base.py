"""
Identity Provider base types

Every provider exposes resolve_batch(wallets) -> {wallet: PartialIdentity}
and is free to raise on transport / rate-limit errors. The pipeline never
calls resolve_batch directly: it goes through run_provider(), which wraps the
call in the provider's circuit breaker and turns any failure into a
ProviderOutcome with an empty result map. Downstream merge code treats
"ok" and "failed" outcomes the same way, it just iterates .results.
"""
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from walletgraph.core.circuit_breaker import CircuitBreaker, CircuitOpenError, get_circuit_breaker
from walletgraph.core.http_client import ResilientHTTPClient
from walletgraph.schemas.identity import PartialIdentity

logger = logging.getLogger(__name__)


class IdentityProvider(ABC):
    """
    Adapter around one external identity source.

    Subclasses set ``name`` (breaker / metrics key) and ``source_tag``
    (provenance tag merged into WalletIdentity.sources).
    """

    name: str = "provider"
    source_tag: str = "provider"

    def __init__(self, client: Optional[ResilientHTTPClient] = None):
        self.client = client

    def is_configured(self) -> bool:
        """Providers missing credentials are skipped, not failed."""
        return True

    @abstractmethod
    async def resolve_batch(self, wallets: List[str]) -> Dict[str, PartialIdentity]:
        """Resolve wallets. Only wallets with data appear in the result."""

    async def close(self) -> None:
        if self.client is not None:
            await self.client.close()


@dataclass
class ProviderOutcome:
    """Tagged result of one provider call: ok / failed / skipped."""
    provider: str
    status: str
    results: Dict[str, PartialIdentity] = field(default_factory=dict)
    error: Optional[str] = None
    latency_ms: int = 0
    wallet_count: int = 0

    @classmethod
    def ok(cls, provider: str, results: Dict[str, PartialIdentity], **kwargs) -> "ProviderOutcome":
        return cls(provider=provider, status="ok", results=results, **kwargs)

    @classmethod
    def failed(cls, provider: str, error: str, **kwargs) -> "ProviderOutcome":
        return cls(provider=provider, status="failed", error=error, **kwargs)

    @classmethod
    def skipped(cls, provider: str, reason: str) -> "ProviderOutcome":
        return cls(provider=provider, status="skipped", error=reason)

    @property
    def succeeded(self) -> bool:
        return self.status == "ok"


async def run_provider(
    provider: IdentityProvider,
    wallets: List[str],
    breaker: Optional[CircuitBreaker] = None,
) -> ProviderOutcome:
    """
    Call a provider for a set of wallets, never raising.

    Errors (including an open circuit) are logged and reported as a failed
    outcome with an empty result map.
    """
    if not wallets:
        return ProviderOutcome.skipped(provider.name, "no wallets")
    if not provider.is_configured():
        return ProviderOutcome.skipped(provider.name, "not configured")

    breaker = breaker or get_circuit_breaker(provider.name)
    requested = set(wallets)
    start = time.monotonic()

    try:
        raw = await breaker.execute(provider.resolve_batch, wallets)
    except CircuitOpenError as e:
        logger.warning(f"[{provider.name.upper()}] Skipped {len(wallets)} wallets: {e}")
        return ProviderOutcome.failed(provider.name, str(e), wallet_count=len(wallets))
    except Exception as e:
        latency_ms = int((time.monotonic() - start) * 1000)
        logger.warning(
            f"[{provider.name.upper()}] Lookup failed for {len(wallets)} wallets "
            f"after {latency_ms}ms: {type(e).__name__}: {e}"
        )
        return ProviderOutcome.failed(
            provider.name, f"{type(e).__name__}: {e}",
            latency_ms=latency_ms, wallet_count=len(wallets),
        )

    latency_ms = int((time.monotonic() - start) * 1000)
    results = {
        wallet: partial
        for wallet, partial in (raw or {}).items()
        if wallet in requested and partial is not None and not partial.is_empty()
    }
    logger.info(
        f"[{provider.name.upper()}] {len(results)}/{len(wallets)} wallets resolved in {latency_ms}ms"
    )
    return ProviderOutcome.ok(provider.name, results, latency_ms=latency_ms, wallet_count=len(wallets))
