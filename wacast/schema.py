"""
wacast.schema

ORM models for campaign history and snapshots.

Types are kept generic (JSON, timezone-aware DateTime) so the same models
run on Postgres in production and SQLite in tests.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from sqlalchemy import (
    DateTime,
    Float,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator

from .util import to_utc, utcnow


class UTCDateTime(TypeDecorator):
    """DateTime(timezone=True) that always hands back aware UTC values (SQLite drops tzinfo)."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Any) -> Optional[datetime]:
        return to_utc(value) if value is not None else None

    def process_result_value(self, value: Any, dialect: Any) -> Optional[datetime]:
        return to_utc(value) if value is not None else None


class Base(DeclarativeBase):
    pass


class CampaignRow(Base):
    __tablename__ = "campaigns"
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    template_id: Mapped[str] = mapped_column(String(200))
    template_language: Mapped[str] = mapped_column(String(20), default="es")
    target_shards: Mapped[List[str]] = mapped_column(JSON, default=list)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, index=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    total_sent: Mapped[int] = mapped_column(Integer, default=0)
    total_success: Mapped[int] = mapped_column(Integer, default=0)
    total_failed: Mapped[int] = mapped_column(Integer, default=0)
    created_by: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)

    sends: Mapped[List["CampaignSendRow"]] = relationship(
        back_populates="campaign",
        cascade="all, delete-orphan",
        order_by="CampaignSendRow.seq",
    )


class CampaignSendRow(Base):
    __tablename__ = "campaign_sends"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    campaign_id: Mapped[str] = mapped_column(String(64), ForeignKey("campaigns.id", ondelete="CASCADE"), index=True)
    seq: Mapped[int] = mapped_column(Integer)
    recipient_id: Mapped[str] = mapped_column(String(64), index=True)
    source_shard: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    sent_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)
    status: Mapped[str] = mapped_column(String(20))  # sent|failed
    external_message_id: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text(), nullable=True)
    error_kind: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    error_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    campaign: Mapped["CampaignRow"] = relationship(back_populates="sends")
    __table_args__ = (UniqueConstraint("campaign_id", "seq", name="uq_campaign_sends_seq"),)


class SnapshotRow(Base):
    __tablename__ = "campaign_snapshots"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # Same id as campaigns.id (recovered snapshots have no campaign row).
    campaign_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    template_name: Mapped[str] = mapped_column(String(200))
    sent_at: Mapped[datetime] = mapped_column(UTCDateTime(), index=True)
    total_sent: Mapped[int] = mapped_column(Integer, default=0)
    target_shards: Mapped[List[str]] = mapped_column(JSON, default=list)
    sending_order: Mapped[str] = mapped_column(String(4), default="desc")
    notes: Mapped[str] = mapped_column(Text(), default="")
    created_by: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)

    recipients: Mapped[List["SnapshotRecipientRow"]] = relationship(
        back_populates="snapshot",
        cascade="all, delete-orphan",
        order_by="SnapshotRecipientRow.seq",
    )


class SnapshotRecipientRow(Base):
    __tablename__ = "campaign_snapshot_recipients"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    snapshot_id: Mapped[int] = mapped_column(Integer, ForeignKey("campaign_snapshots.id", ondelete="CASCADE"), index=True)
    seq: Mapped[int] = mapped_column(Integer)
    recipient_id: Mapped[str] = mapped_column(String(64))
    initial_status: Mapped[str] = mapped_column(String(100))
    initial_channel: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    initial_paid_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    initial_upsell_paid_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    initial_revenue: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    source_shard: Mapped[str] = mapped_column(String(100))

    snapshot: Mapped["SnapshotRow"] = relationship(back_populates="recipients")


def create_all(engine: Engine) -> None:
    """Create the campaign tables if missing (idempotent)."""
    Base.metadata.create_all(engine)
