"""
Analytics models

AnalyticsEvent - pipeline events (graph hit/miss, write outcome, completion)
ApiCallMetric - one row per provider call, for latency/error dashboards
"""
from sqlalchemy import Column, DateTime, Index, Integer, String
from sqlalchemy.dialects.postgresql import JSONB

from walletgraph.core.database import Base
from walletgraph.core.utils import utcnow


class AnalyticsEvent(Base):
    __tablename__ = "analytics_events"

    id = Column(Integer, primary_key=True)
    event_name = Column(String(100), nullable=False)
    # "metadata" is reserved on declarative classes
    event_metadata = Column("metadata", JSONB, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_analytics_events_name_created", "event_name", "created_at"),
    )


class ApiCallMetric(Base):
    __tablename__ = "api_call_metrics"

    id = Column(Integer, primary_key=True)
    provider = Column(String(50), nullable=False)
    latency_ms = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False)  # ok | failed | skipped
    wallet_count = Column(Integer, nullable=False, default=0)
    job_id = Column(String(36), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_api_call_metrics_provider_created", "provider", "created_at"),
    )
