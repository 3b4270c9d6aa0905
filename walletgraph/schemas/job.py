"""
Lookup job schemas

JobOptions is stored as JSON on the job row and re-validated on every load,
so old rows missing newer keys still parse with defaults.
"""
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class SocialGraphWriteStatus(str, Enum):
    """Outcome of the finalization write-back, set once per job."""
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class AccessTier(str, Enum):
    FREE = "free"
    STARTER = "starter"
    PRO = "pro"
    UNLIMITED = "unlimited"

    @property
    def is_premium(self) -> bool:
        return self != AccessTier.FREE


class JobOptions(BaseModel):
    include_ens: bool = False
    tier: AccessTier = AccessTier.FREE
    can_use_neynar: bool = True
    can_use_ens: bool = False
    save_to_history: bool = False
    history_name: Optional[str] = None
    persist_social_graph: bool = True
    user_id: Optional[str] = None

    @classmethod
    def for_tier(cls, tier: AccessTier, **overrides) -> "JobOptions":
        """Entitlement flags derived from the tier, then caller overrides."""
        tier = AccessTier(tier)
        values: Dict[str, Any] = {
            "tier": tier,
            "can_use_neynar": True,
            "can_use_ens": tier.is_premium,
        }
        values.update(overrides)
        return cls(**values)

    @property
    def ens_enabled(self) -> bool:
        return self.include_ens and self.can_use_ens


@dataclass
class ProcessResult:
    """What one process_chunk invocation reports back to the worker."""
    completed: bool
    processed_count: int
    twitter_found: int = 0
    farcaster_found: int = 0
    any_social_found: int = 0
    cache_hits: int = 0
    social_graph_write_status: Optional[SocialGraphWriteStatus] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if self.social_graph_write_status is not None:
            data["social_graph_write_status"] = self.social_graph_write_status.value
        return data


class JobProgress(BaseModel):
    """Operator-facing snapshot of a job, queryable mid-flight."""
    id: str
    status: JobStatus
    total_wallets: int
    processed_count: int
    current_stage: Optional[str] = None
    twitter_found: int = 0
    farcaster_found: int = 0
    any_social_found: int = 0
    cache_hits: int = 0
    social_graph_write_status: Optional[SocialGraphWriteStatus] = None
    error_message: Optional[str] = None
    retry_count: int = 0
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def percent_complete(self) -> float:
        if not self.total_wallets:
            return 100.0
        return round(100.0 * self.processed_count / self.total_wallets, 1)

    class Config:
        from_attributes = True
