"""
Circuit Breaker for identity provider calls

States:
- CLOSED: Normal operation, calls pass through
- OPEN: Failures exceeded threshold, calls blocked
- HALF_OPEN: Testing if the provider recovered

One breaker per provider (see get_circuit_breaker). An open breaker makes the
pipeline skip that provider tier for the chunk instead of hammering a provider
that is already failing; the wallets fall through to the next tier.
"""
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitOpenError(Exception):
    """Raised when circuit breaker is OPEN and blocking calls."""

    def __init__(self, circuit_name: str, retry_after_seconds: float):
        self.circuit_name = circuit_name
        self.retry_after_seconds = retry_after_seconds
        super().__init__(
            f"Circuit '{circuit_name}' is OPEN. Retry after {retry_after_seconds:.0f} seconds."
        )


class CircuitBreaker:
    """
    Circuit breaker for a single identity provider.

    Attributes:
        name: Identifier for this circuit breaker (provider name)
        failure_threshold: Consecutive failures before opening
        recovery_timeout: Base seconds to wait before a half-open probe
    """

    FAILURE_THRESHOLD = 5
    RECOVERY_TIMEOUT = 60  # Base seconds before trying again
    MAX_BACKOFF_MULTIPLIER = 16  # Maximum backoff: 16 * 60 = 16 minutes

    def __init__(
        self,
        name: str,
        failure_threshold: Optional[int] = None,
        recovery_timeout: Optional[int] = None,
    ):
        self.name = name
        self.failure_threshold = failure_threshold or self.FAILURE_THRESHOLD
        self.recovery_timeout = recovery_timeout if recovery_timeout is not None else self.RECOVERY_TIMEOUT

        self._state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_time: Optional[datetime] = None
        self.backoff_multiplier = 1

        # Metrics
        self.total_calls = 0
        self.total_failures = 0
        self.total_blocked = 0

    @property
    def state(self) -> CircuitState:
        return self._state

    @state.setter
    def state(self, new_state: CircuitState):
        if new_state != self._state:
            logger.info(f"[CIRCUIT:{self.name}] State changed: {self._state.value} -> {new_state.value}")
            self._state = new_state

    def get_retry_after_seconds(self) -> float:
        """Seconds until the circuit will allow a probe call."""
        if self._state != CircuitState.OPEN or not self.last_failure_time:
            return 0

        elapsed = (datetime.now(timezone.utc) - self.last_failure_time).total_seconds()
        return max(0, self.recovery_timeout * self.backoff_multiplier - elapsed)

    def is_call_permitted(self) -> bool:
        if self._state == CircuitState.OPEN:
            if self.get_retry_after_seconds() <= 0:
                self.state = CircuitState.HALF_OPEN
                return True
            return False
        return True

    async def execute(self, func: Callable, *args, **kwargs) -> Any:
        """
        Execute an async callable with circuit breaker protection.

        Raises:
            CircuitOpenError: If circuit is OPEN
            Exception: Re-raises any exception from func
        """
        self.total_calls += 1

        if not self.is_call_permitted():
            self.total_blocked += 1
            retry_after = self.get_retry_after_seconds()
            logger.warning(f"[CIRCUIT:{self.name}] Call blocked - retry after {retry_after:.0f}s")
            raise CircuitOpenError(self.name, retry_after)

        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            self._on_failure(e)
            raise
        self._on_success()
        return result

    def _on_success(self):
        if self._state == CircuitState.HALF_OPEN:
            self.state = CircuitState.CLOSED
            self.backoff_multiplier = 1
        self.failure_count = 0

    def _on_failure(self, error: Exception):
        self.failure_count += 1
        self.total_failures += 1
        self.last_failure_time = datetime.now(timezone.utc)

        if self._state == CircuitState.HALF_OPEN:
            # Probe failed: reopen with a longer wait
            self.backoff_multiplier = min(self.backoff_multiplier * 2, self.MAX_BACKOFF_MULTIPLIER)
            self.state = CircuitState.OPEN
            logger.warning(
                f"[CIRCUIT:{self.name}] Probe failed ({type(error).__name__}), "
                f"backoff={self.backoff_multiplier}x"
            )
        elif self._state == CircuitState.CLOSED and self.failure_count >= self.failure_threshold:
            self.state = CircuitState.OPEN
            logger.warning(
                f"[CIRCUIT:{self.name}] OPENED after {self.failure_count} failures - "
                f"last error={type(error).__name__}"
            )

    def reset(self):
        """Manually reset the circuit breaker to CLOSED state."""
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.backoff_multiplier = 1
        self.last_failure_time = None

    def get_metrics(self) -> dict:
        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": self.failure_count,
            "backoff_multiplier": self.backoff_multiplier,
            "total_calls": self.total_calls,
            "total_failures": self.total_failures,
            "total_blocked": self.total_blocked,
            "retry_after_seconds": self.get_retry_after_seconds(),
        }


_circuit_breakers: Dict[str, CircuitBreaker] = {}


def get_circuit_breaker(name: str, **kwargs) -> CircuitBreaker:
    """Get or create a circuit breaker by name."""
    if name not in _circuit_breakers:
        _circuit_breakers[name] = CircuitBreaker(name, **kwargs)
    return _circuit_breakers[name]


def get_all_circuit_breakers() -> Dict[str, CircuitBreaker]:
    return _circuit_breakers.copy()


def reset_circuit_breakers() -> None:
    """Drop all registered breakers (worker restart, tests)."""
    _circuit_breakers.clear()
