"""
Social graph models

SocialGraph is the permanent, quality-scored wallet -> identity table.
One row per wallet, never deleted automatically, refined by every job that
resolves the wallet again.

SocialGraphHistory is a field-level audit log of what each upsert changed.
"""
from sqlalchemy import Boolean, Column, DateTime, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB

from walletgraph.core.database import Base
from walletgraph.core.utils import utcnow


class SocialGraph(Base):
    __tablename__ = "social_graph"

    wallet = Column(String(64), primary_key=True)  # lowercase address

    # Identity fields
    ens_name = Column(String(255), nullable=True)
    twitter_handle = Column(String(50), nullable=True)
    twitter_url = Column(String(255), nullable=True)
    farcaster = Column(String(100), nullable=True)
    farcaster_url = Column(String(255), nullable=True)
    fc_followers = Column(Integer, nullable=True)
    fc_fid = Column(Integer, nullable=True)
    lens = Column(String(255), nullable=True)
    github = Column(String(100), nullable=True)
    linkedin = Column(String(255), nullable=True)

    # Provenance: discovering providers only ('cache'/'graph' never stored)
    sources = Column(JSONB, nullable=False, default=list)

    # Verification flags
    twitter_verified = Column(Boolean, nullable=False, default=False)
    farcaster_verified = Column(Boolean, nullable=False, default=False)

    # Trust
    quality_score = Column(Integer, nullable=False, default=0)  # 0-100
    stale_at = Column(DateTime(timezone=True), nullable=False)

    first_seen_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    last_updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    lookup_count = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        Index("ix_social_graph_twitter_handle", "twitter_handle"),
        Index("ix_social_graph_farcaster", "farcaster"),
        Index("ix_social_graph_stale_at", "stale_at"),
        Index("ix_social_graph_quality_score", "quality_score"),
    )

    def __repr__(self):
        return f"<SocialGraph {self.wallet} q={self.quality_score}>"


class SocialGraphHistory(Base):
    __tablename__ = "social_graph_history"

    id = Column(Integer, primary_key=True)
    wallet = Column(String(64), nullable=False)
    field_name = Column(String(50), nullable=False)
    old_value = Column(Text, nullable=True)
    new_value = Column(Text, nullable=True)
    source = Column(String(100), nullable=True)  # comma-joined provider tags of the write
    changed_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_social_graph_history_wallet", "wallet"),
        Index("ix_social_graph_history_changed_at", "changed_at"),
    )
