"""
WalletGraph Exception Hierarchy

Structured exception classes for the lookup pipeline. Every exception carries
a code, message, and details so failed jobs can surface something useful to
operators.

Exception Hierarchy:
    WalletGraphError
    ├── JobError
    │   ├── JobNotFoundError
    │   ├── JobLoadError
    │   ├── JobLeaseLostError
    │   └── InvalidJobError
    ├── ProviderError
    │   ├── ProviderRateLimitedError
    │   └── ProviderUnavailableError
    └── StoreError
        └── SocialGraphWriteError

Severity follows the P0-P3 convention:
- Job errors that stop progress are P1
- Provider errors are P3 (expected, degrade to "no data from this source")
- Store errors are P2 (degrade, but worth a look)
"""
import logging
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)


class WalletGraphError(Exception):
    """
    Base exception for all WalletGraph custom errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context for debugging
        severity: P0-P3 severity level
    """

    default_code: str = "WALLETGRAPH_ERROR"
    default_severity: str = "P2"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: Optional[str] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        self.severity = severity or self.default_severity
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "severity": self.severity,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


# =============================================================================
# JOB LEDGER ERRORS
# =============================================================================

class JobError(WalletGraphError):
    """Base exception for lookup job errors."""
    default_code = "JOB_ERROR"
    default_severity = "P1"

    def __init__(self, message: str, job_id: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        details["job_id"] = job_id
        self.job_id = job_id
        super().__init__(message, details=details, **kwargs)


class JobNotFoundError(JobError):
    """The job row does not exist."""
    default_code = "JOB_NOT_FOUND"


class JobLoadError(JobError):
    """The job row could not be read (persistence unreachable)."""
    default_code = "JOB_LOAD_FAILED"
    default_severity = "P0"


class JobLeaseLostError(JobError):
    """Another invocation advanced the job first; this chunk's progress is discarded."""
    default_code = "JOB_LEASE_LOST"
    default_severity = "P3"

    def __init__(
        self,
        message: str,
        job_id: Optional[str] = None,
        expected_version: Optional[int] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details["expected_version"] = expected_version
        super().__init__(message, job_id=job_id, details=details, **kwargs)


class InvalidJobError(JobError):
    """Job could not be created from the supplied input."""
    default_code = "JOB_INVALID"
    default_severity = "P3"


# =============================================================================
# IDENTITY PROVIDER ERRORS
# =============================================================================

class ProviderError(WalletGraphError):
    """Base exception for identity provider failures."""
    default_code = "PROVIDER_ERROR"
    default_severity = "P3"

    def __init__(self, message: str, provider: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        details["provider"] = provider
        self.provider = provider
        super().__init__(message, details=details, **kwargs)


class ProviderRateLimitedError(ProviderError):
    """Provider is rate limiting us."""
    default_code = "PROVIDER_RATE_LIMITED"

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        retry_after_seconds: Optional[float] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details["retry_after_seconds"] = retry_after_seconds
        super().__init__(message, provider=provider, details=details, **kwargs)


class ProviderUnavailableError(ProviderError):
    """Provider returned an unusable response or is unreachable."""
    default_code = "PROVIDER_UNAVAILABLE"


# =============================================================================
# STORE ERRORS
# =============================================================================

class StoreError(WalletGraphError):
    """Base exception for cache / social graph store failures."""
    default_code = "STORE_ERROR"
    default_severity = "P2"


class SocialGraphWriteError(StoreError):
    """A social graph upsert hit a database error. Retried by upsert_with_retry."""
    default_code = "SOCIAL_GRAPH_WRITE_FAILED"

    def __init__(
        self,
        message: str,
        wallet: Optional[str] = None,
        attempts: Optional[int] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({
            "wallet": wallet,
            "attempts": attempts,
        })
        self.wallet = wallet
        super().__init__(message, details=details, **kwargs)
