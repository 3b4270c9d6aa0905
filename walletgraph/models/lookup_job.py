"""
Lookup job ledger model

One row per lookup job. The row is the checkpoint: processed_count is the
resume pointer, partial_results the accumulated output. Concurrent workers are
kept apart by the lease columns (claim) and the version column (every
progress write is conditional on the version the writer loaded).
"""
from uuid import uuid4

from sqlalchemy import Column, DateTime, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB

from walletgraph.core.database import Base
from walletgraph.core.utils import utcnow


def _new_job_id() -> str:
    return str(uuid4())


class LookupJob(Base):
    __tablename__ = "lookup_jobs"

    id = Column(String(36), primary_key=True, default=_new_job_id)
    user_id = Column(String(100), nullable=True)

    # pending -> processing -> completed|failed (admin reset back to pending)
    status = Column(String(20), nullable=False, default="pending")

    # Input
    wallets = Column(JSONB, nullable=False, default=list)        # normalized, de-duplicated
    original_data = Column(JSONB, nullable=False, default=dict)  # wallet -> {column: value}
    options = Column(JSONB, nullable=False, default=dict)        # JobOptions

    # Progress / checkpoint
    processed_count = Column(Integer, nullable=False, default=0)
    current_stage = Column(String(50), nullable=True)
    partial_results = Column(JSONB, nullable=True)

    # Running counters (cumulative across chunks)
    twitter_found = Column(Integer, nullable=False, default=0)
    farcaster_found = Column(Integer, nullable=False, default=0)
    any_social_found = Column(Integer, nullable=False, default=0)
    cache_hits = Column(Integer, nullable=False, default=0)

    # Set once at finalization: success | partial | failed
    social_graph_write_status = Column(String(20), nullable=True)

    # Error state
    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)

    # Concurrency control
    version = Column(Integer, nullable=False, default=0)
    lease_owner = Column(String(100), nullable=True)
    lease_expires_at = Column(DateTime(timezone=True), nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_lookup_jobs_status_created", "status", "created_at"),
        Index("ix_lookup_jobs_user_id", "user_id"),
    )

    @property
    def total_wallets(self) -> int:
        return len(self.wallets or [])

    def __repr__(self):
        return f"<LookupJob {self.id} {self.status} {self.processed_count}/{self.total_wallets}>"
