"""
Lookup history archive

Completed jobs that asked for it (save_to_history) get their full result set
archived here so the job row's partial_results can be reset later.
"""
from uuid import uuid4

from sqlalchemy import Column, DateTime, Index, Integer, String
from sqlalchemy.dialects.postgresql import JSONB

from walletgraph.core.database import Base
from walletgraph.core.utils import utcnow


class LookupHistory(Base):
    __tablename__ = "lookup_history"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    name = Column(String(255), nullable=True)
    user_id = Column(String(100), nullable=True)
    job_id = Column(String(36), nullable=True)
    wallet_count = Column(Integer, nullable=False)
    twitter_found = Column(Integer, nullable=False)
    farcaster_found = Column(Integer, nullable=False)
    results = Column(JSONB, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_lookup_history_created_at", "created_at"),
        Index("ix_lookup_history_user_id", "user_id"),
    )
