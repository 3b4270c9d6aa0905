"""
Resilient HTTP Client for Identity Provider Calls

- Exponential backoff with jitter to prevent thundering herd
- 429 detection with Retry-After header respect
- Fail fast (RateLimitExceeded) when a provider asks us to wait too long
- Per-host concurrency cap so fan-out tiers can't flood a provider

Circuit breaking is NOT done here; the lookup pipeline wraps each provider
call in a named breaker from walletgraph.core.circuit_breaker so that an open
circuit becomes a "failed, empty result" outcome for that tier.

All provider adapters MUST go through this client.
"""
import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Dict, Optional
from urllib.parse import urlparse

import httpx

from walletgraph.core.config import settings

logger = logging.getLogger(__name__)


class RateLimitExceeded(Exception):
    """
    Raised when a host is rate-limited for longer than max_rate_limit_wait.

    Lets the provider tier give up on this chunk instead of stalling the
    whole job behind a long Retry-After.
    """
    def __init__(self, host: str, wait_time: float):
        self.host = host
        self.wait_time = wait_time
        super().__init__(f"Rate limited by {host} for {wait_time:.0f}s")


@dataclass
class RateLimitConfig:
    """Per-host pacing."""
    max_concurrent: int = 5            # In-flight requests per host
    min_request_interval: float = 0.0  # Minimum seconds between request starts


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_retries: int = 3
    base_delay: float = 1.0           # Base delay in seconds
    max_delay: float = 30.0           # Maximum delay cap
    exponential_base: float = 2.0     # Exponential backoff multiplier
    jitter_factor: float = 0.5        # Random jitter (0-1)
    max_rate_limit_wait: float = 60.0  # Longest Retry-After we'll sit through

    # Status codes that should trigger retry
    retryable_status_codes: tuple = (429, 500, 502, 503, 504)

    # Permanent failures - raise immediately. 404 is NOT here: providers use
    # it to mean "no profile" and callers handle it.
    fatal_status_codes: tuple = (400, 401, 403)


@dataclass
class HostState:
    """Tracks state for a specific host."""
    last_request_time: float = 0.0
    total_requests: int = 0
    failure_count: int = 0

    # Set when we receive a 429; every request to the host waits on it
    blocked_until: Optional[float] = None


class ResilientHTTPClient:
    """
    Async HTTP client with built-in resilience patterns.

    Usage:
        async with get_neynar_client() as client:
            response = await client.get(url, params=...)
    """

    def __init__(
        self,
        rate_limit_config: Optional[RateLimitConfig] = None,
        retry_config: Optional[RetryConfig] = None,
        timeout: float = 30.0,
        default_headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.rate_limit_config = rate_limit_config or RateLimitConfig()
        self.retry_config = retry_config or RetryConfig()
        self.timeout = timeout
        self.default_headers = default_headers or {}
        self.transport = transport

        self._client: Optional[httpx.AsyncClient] = None
        self._host_states: Dict[str, HostState] = {}
        self._semaphores: Dict[str, asyncio.Semaphore] = {}
        self._pacing_lock = asyncio.Lock()

    def _build_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout,
            headers=self.default_headers,
            follow_redirects=True,
            transport=self.transport,
        )

    async def __aenter__(self):
        if self._client is None:
            self._client = self._build_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def init(self):
        """Initialize client without context manager. Must call close() when done."""
        if self._client is None:
            self._client = self._build_client()
        return self

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None

    def _get_host(self, url: str) -> str:
        return urlparse(url).netloc

    def _get_host_state(self, host: str) -> HostState:
        if host not in self._host_states:
            self._host_states[host] = HostState()
        return self._host_states[host]

    def _get_semaphore(self, host: str) -> asyncio.Semaphore:
        if host not in self._semaphores:
            self._semaphores[host] = asyncio.Semaphore(max(1, self.rate_limit_config.max_concurrent))
        return self._semaphores[host]

    def _calculate_backoff(self, attempt: int) -> float:
        """
        Calculate delay with exponential backoff and jitter.

        Formula: min(base * (exp_base ^ attempt) +/- jitter, max_delay)
        """
        cfg = self.retry_config
        delay = cfg.base_delay * (cfg.exponential_base ** attempt)
        jitter = delay * cfg.jitter_factor * (2 * random.random() - 1)
        return max(0.0, min(delay + jitter, cfg.max_delay))

    def _parse_retry_after(self, response: httpx.Response) -> Optional[float]:
        """Parse Retry-After header, returns absolute timestamp."""
        retry_after = response.headers.get("Retry-After")
        if not retry_after:
            return None

        try:
            return time.time() + int(retry_after)
        except ValueError:
            pass

        try:
            from email.utils import parsedate_to_datetime
            return parsedate_to_datetime(retry_after).timestamp()
        except (ValueError, TypeError):
            return None

    async def _check_preflight_block(self, host: str) -> None:
        """Wait out (or fail fast on) a 429 block before sending anything."""
        state = self._get_host_state(host)
        now = time.time()

        if state.blocked_until and now < state.blocked_until:
            wait_time = state.blocked_until - now
            if wait_time > self.retry_config.max_rate_limit_wait:
                logger.warning(f"[PRE-FLIGHT] {host}: Blocked for {wait_time:.0f}s - failing fast")
                raise RateLimitExceeded(host, wait_time)

            logger.info(f"[PRE-FLIGHT] {host}: Waiting {wait_time:.1f}s for block to clear")
            await asyncio.sleep(wait_time)
            state.blocked_until = None

    async def _pace(self, host: str) -> None:
        """Enforce min_request_interval between request starts to one host."""
        interval = self.rate_limit_config.min_request_interval
        async with self._pacing_lock:
            state = self._get_host_state(host)
            if interval > 0:
                elapsed = time.time() - state.last_request_time
                if elapsed < interval:
                    await asyncio.sleep(interval - elapsed)
            state.last_request_time = time.time()
            state.total_requests += 1

    async def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """
        Make an HTTP request with full resilience.

        Returns:
            httpx.Response for 2xx and non-fatal 4xx (e.g. 404)

        Raises:
            httpx.HTTPStatusError: On fatal status or retries exhausted on 5xx
            RateLimitExceeded: When the provider asks us to wait too long
            httpx.TransportError: When timeouts/connect errors exhaust retries
        """
        if not self._client:
            await self.init()

        host = self._get_host(url)
        await self._check_preflight_block(host)

        async with self._get_semaphore(host):
            return await self._do_request_with_retry(method, url, host, **kwargs)

    async def _do_request_with_retry(self, method: str, url: str, host: str, **kwargs) -> httpx.Response:
        cfg = self.retry_config
        state = self._get_host_state(host)
        last_exception: Optional[Exception] = None

        for attempt in range(cfg.max_retries + 1):
            try:
                await self._pace(host)
                logger.debug(f"[HTTP] {method} {url} (attempt {attempt + 1}/{cfg.max_retries + 1})")
                response = await self._client.request(method, url, **kwargs)

                if response.status_code == 429:
                    retry_after = self._parse_retry_after(response)
                    if retry_after:
                        wait_time = max(0.0, retry_after - time.time())
                    else:
                        wait_time = self._calculate_backoff(attempt)
                    state.blocked_until = time.time() + wait_time

                    if wait_time > cfg.max_rate_limit_wait:
                        logger.error(f"[429] {host}: Wait time {wait_time:.0f}s exceeds max - failing fast")
                        raise RateLimitExceeded(host, wait_time)

                    if attempt < cfg.max_retries:
                        logger.warning(f"[429] {host}: Rate limited, backing off {wait_time:.1f}s")
                        await asyncio.sleep(wait_time)
                        state.blocked_until = None
                        continue
                    response.raise_for_status()

                if response.status_code in cfg.retryable_status_codes:
                    state.failure_count += 1
                    if attempt < cfg.max_retries:
                        delay = self._calculate_backoff(attempt)
                        logger.warning(
                            f"[HTTP] {host}: Status {response.status_code}, "
                            f"retrying in {delay:.1f}s (attempt {attempt + 1})"
                        )
                        await asyncio.sleep(delay)
                        continue
                    response.raise_for_status()

                if response.status_code in cfg.fatal_status_codes:
                    logger.error(f"[HTTP] {host}: Fatal status {response.status_code}, not retrying")
                    response.raise_for_status()

                state.failure_count = 0
                return response

            except (httpx.TimeoutException, httpx.ConnectError) as e:
                state.failure_count += 1
                last_exception = e
                if attempt < cfg.max_retries:
                    delay = self._calculate_backoff(attempt)
                    logger.warning(f"[HTTP] {host}: {type(e).__name__}, retrying in {delay:.1f}s")
                    await asyncio.sleep(delay)
                    continue

        logger.error(f"[HTTP] {host}: All {cfg.max_retries + 1} attempts failed")
        if last_exception:
            raise last_exception
        raise httpx.TransportError(f"Request to {url} failed after {cfg.max_retries + 1} attempts")

    async def get(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("POST", url, **kwargs)


# Pre-configured clients per provider

def get_neynar_client() -> ResilientHTTPClient:
    """
    Neynar bulk-by-address: a handful of large requests in parallel rounds.
    """
    headers = {"accept": "application/json"}
    if settings.NEYNAR_API_KEY:
        headers["x-api-key"] = settings.NEYNAR_API_KEY
    return ResilientHTTPClient(
        rate_limit_config=RateLimitConfig(
            max_concurrent=settings.NEYNAR_CONCURRENT_BATCHES,
        ),
        retry_config=RetryConfig(
            max_retries=3,
            base_delay=1.0,
            max_delay=30.0,
        ),
        timeout=30.0,
        default_headers=headers,
    )


def get_web3bio_client() -> ResilientHTTPClient:
    """
    Web3.bio profile endpoint: one request per wallet, wide fan-out.
    Fewer retries, since this tier is the fallback and runs per wallet.
    """
    headers = {"accept": "application/json"}
    if settings.WEB3BIO_API_KEY:
        headers["X-API-Key"] = settings.WEB3BIO_API_KEY
    return ResilientHTTPClient(
        rate_limit_config=RateLimitConfig(
            max_concurrent=settings.WEB3BIO_CONCURRENCY,
        ),
        retry_config=RetryConfig(
            max_retries=1,
            base_delay=1.0,
            max_delay=10.0,
            max_rate_limit_wait=15.0,
        ),
        timeout=15.0,
        default_headers=headers,
    )


def get_ensdata_client() -> ResilientHTTPClient:
    """
    ensdata.net reverse records. Free service - be respectful.
    """
    return ResilientHTTPClient(
        rate_limit_config=RateLimitConfig(
            max_concurrent=settings.ENS_BATCH_SIZE,
            min_request_interval=0.02,
        ),
        retry_config=RetryConfig(
            max_retries=2,
            base_delay=1.5,
            max_delay=20.0,
        ),
        timeout=settings.ENS_TIMEOUT_SECONDS,
        default_headers={"accept": "application/json"},
    )
