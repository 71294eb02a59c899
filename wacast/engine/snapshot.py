"""
wacast.engine.snapshot

Frozen "before" view of every recipient that was successfully reached.

capture() re-reads each recipient's live record and copies the mutable
business fields. Recipients whose record cannot be re-read are kept with the
"error" sentinel so the snapshot always has one entry per successful send.
Snapshots are never edited; delete() removes one whole.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Union

from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker

from ..db import get_sessionmaker, session_scope
from ..errors import SnapshotExists, SnapshotNotFound
from ..models import (
    SNAPSHOT_ERROR,
    CampaignSnapshot,
    RecipientSnapshot,
    ResolvedRecipient,
    SendingOrder,
    SentRecord,
)
from ..schema import SnapshotRecipientRow, SnapshotRow
from ..shards.resolver import ShardResolver
from ..util import new_campaign_id, to_utc, utcnow

logger = logging.getLogger(__name__)

RecipientRef = Union[str, SentRecord]


def _to_float(v: Any) -> Optional[float]:
    if v is None or v == "":
        return None
    try:
        return float(v)
    except (TypeError, ValueError):
        return None


def _row_to_snapshot(row: SnapshotRow, with_recipients: bool = True) -> CampaignSnapshot:
    return CampaignSnapshot(
        campaign_id=row.campaign_id,
        template_name=row.template_name,
        sent_at=row.sent_at,
        total_sent=row.total_sent,
        target_shards=list(row.target_shards or []),
        sending_order=SendingOrder(row.sending_order or "desc"),
        notes=row.notes or "",
        created_by=row.created_by,
        recipients=[
            RecipientSnapshot(
                recipient_id=r.recipient_id,
                initial_status=r.initial_status,
                initial_channel=r.initial_channel,
                source_shard=r.source_shard,
                initial_paid_at=r.initial_paid_at,
                initial_upsell_paid_at=r.initial_upsell_paid_at,
                initial_revenue=r.initial_revenue,
            )
            for r in row.recipients
        ]
        if with_recipients
        else [],
    )


class SnapshotEngine:
    def __init__(self, resolver: ShardResolver, sessions: Optional[sessionmaker] = None):
        self.resolver = resolver
        self._sessions = sessions or get_sessionmaker()

    # ------------------------------------------------------------------
    # Field extraction
    # ------------------------------------------------------------------
    def extract(self, hit: ResolvedRecipient, recipient_id: str) -> RecipientSnapshot:
        f = self.resolver.field
        return RecipientSnapshot(
            recipient_id=recipient_id,
            initial_status=str(f(hit, "status", "") or ""),
            initial_channel=f(hit, "channel"),
            source_shard=hit.origin_shard,
            initial_paid_at=to_utc(f(hit, "paid_at")),
            initial_upsell_paid_at=to_utc(f(hit, "upsell_paid_at")),
            initial_revenue=_to_float(f(hit, "revenue")),
        )

    def _read_one(self, ref: RecipientRef, shards: Sequence[str]) -> RecipientSnapshot:
        if isinstance(ref, SentRecord):
            rid, origin = ref.recipient_id, ref.source_shard
        else:
            rid, origin = str(ref), None
        order = [origin] + [k for k in shards if k != origin] if origin else list(shards)

        try:
            hit = self.resolver.resolve(rid, order)
        except Exception:
            logger.exception("Snapshot re-read failed for %s", rid)
            hit = None

        if hit is None:
            logger.warning("Snapshot: %s could not be re-read; storing error sentinel", rid)
            return RecipientSnapshot(
                recipient_id=rid,
                initial_status=SNAPSHOT_ERROR,
                initial_channel=SNAPSHOT_ERROR,
                source_shard=origin or SNAPSHOT_ERROR,
            )
        return self.extract(hit, rid)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def _persist(self, snap: CampaignSnapshot) -> CampaignSnapshot:
        with session_scope(self._sessions) as s:
            exists = s.scalar(select(SnapshotRow.id).where(SnapshotRow.campaign_id == snap.campaign_id))
            if exists is not None:
                raise SnapshotExists(f"Snapshot for {snap.campaign_id} already exists")
            row = SnapshotRow(
                campaign_id=snap.campaign_id,
                template_name=snap.template_name,
                sent_at=snap.sent_at,
                total_sent=snap.total_sent,
                target_shards=list(snap.target_shards),
                sending_order=snap.sending_order.value,
                notes=snap.notes or "",
                created_by=snap.created_by,
                created_at=utcnow(),
            )
            row.recipients = [
                SnapshotRecipientRow(
                    seq=i,
                    recipient_id=r.recipient_id,
                    initial_status=r.initial_status,
                    initial_channel=r.initial_channel,
                    initial_paid_at=r.initial_paid_at,
                    initial_upsell_paid_at=r.initial_upsell_paid_at,
                    initial_revenue=r.initial_revenue,
                    source_shard=r.source_shard,
                )
                for i, r in enumerate(snap.recipients)
            ]
            s.add(row)
        logger.info("Snapshot %s saved: %d recipients", snap.campaign_id, snap.total_sent)
        return snap

    def capture(
        self,
        campaign_id: str,
        template_name: str,
        sent_at: datetime,
        successful_recipients: Sequence[RecipientRef],
        shards: Sequence[str],
        sending_order: Union[str, SendingOrder] = SendingOrder.DESC,
        notes: str = "",
        created_by: Optional[str] = None,
    ) -> CampaignSnapshot:
        """
        Snapshot the recipients that received a successful send.

        Callers must pass only successful recipients; SentRecords carry their
        origin shard, which is searched first on the re-read.
        """
        recipients = [self._read_one(ref, shards) for ref in successful_recipients]
        snap = CampaignSnapshot(
            campaign_id=campaign_id,
            template_name=template_name,
            sent_at=to_utc(sent_at) or utcnow(),
            total_sent=len(recipients),
            target_shards=list(shards),
            sending_order=SendingOrder(sending_order),
            notes=notes or "",
            recipients=recipients,
            created_by=created_by,
        )
        return self._persist(snap)

    def recover(
        self,
        template_name: str,
        shards: Sequence[str],
        since_hours: float = 24,
        notes: str = "",
        created_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> CampaignSnapshot:
        """
        Rebuild a snapshot for a send that never got one, from records flagged
        sent within the last `since_hours`.

        The shards' current values become the "initial" values, so run this
        as soon after the send as possible.
        """
        now = to_utc(now) or utcnow()
        since = now - timedelta(hours=since_hours)
        hits = self.resolver.find_sent_since(shards, since)
        if not hits:
            raise SnapshotNotFound(f"No recipients flagged sent in the last {since_hours}h across {list(shards)}")

        recipients: List[RecipientSnapshot] = []
        earliest: Optional[datetime] = None
        for hit in hits:
            cfg = self.resolver.store.config(hit.origin_shard)
            rid = str(hit.record.get(cfg.id_column))
            recipients.append(self.extract(hit, rid))
            ts = to_utc(self.resolver.field(hit, "template_sent_at"))
            if ts is not None and (earliest is None or ts < earliest):
                earliest = ts

        snap = CampaignSnapshot(
            campaign_id=new_campaign_id("recovered"),
            template_name=template_name,
            sent_at=earliest or since,
            total_sent=len(recipients),
            target_shards=list(shards),
            notes=notes or f"Recovered from the last {since_hours}h of sends",
            recipients=recipients,
            created_by=created_by,
        )
        return self._persist(snap)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get(self, campaign_id: str) -> CampaignSnapshot:
        with session_scope(self._sessions) as s:
            row = s.scalar(select(SnapshotRow).where(SnapshotRow.campaign_id == campaign_id))
            if row is None:
                raise SnapshotNotFound(campaign_id)
            return _row_to_snapshot(row)

    def delete(self, campaign_id: str) -> bool:
        """Delete one snapshot. Campaign history is untouched. False if absent."""
        with session_scope(self._sessions) as s:
            row = s.scalar(select(SnapshotRow).where(SnapshotRow.campaign_id == campaign_id))
            if row is None:
                return False
            s.delete(row)
        logger.info("Snapshot %s deleted", campaign_id)
        return True

    def list(self, page: int = 1, limit: int = 20) -> Dict[str, Any]:
        """Newest first (by sent_at), without recipients, plus pagination info."""
        page = max(1, int(page))
        limit = max(1, int(limit))
        with session_scope(self._sessions) as s:
            total = s.scalar(select(func.count()).select_from(SnapshotRow)) or 0
            rows = s.scalars(
                select(SnapshotRow).order_by(SnapshotRow.sent_at.desc()).offset((page - 1) * limit).limit(limit)
            ).all()
            items = [_row_to_snapshot(r, with_recipients=False) for r in rows]
        return {
            "items": items,
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit) if total else 0,
        }

    def all(self) -> List[CampaignSnapshot]:
        with session_scope(self._sessions) as s:
            rows = s.scalars(select(SnapshotRow).order_by(SnapshotRow.sent_at.desc())).all()
            return [_row_to_snapshot(r) for r in rows]
