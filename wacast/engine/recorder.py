"""
wacast.engine.recorder

Durable campaign log (campaigns + campaign_sends).

Each append writes the SentRecord and bumps the counters in one transaction,
with total_sent recomputed from the record count, so
total_sent == total_success + total_failed == len(records) always holds on
disk. Appends for the same campaign are serialized through a per-campaign lock.
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, List, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker

from ..db import get_sessionmaker, session_scope
from ..errors import CampaignNotFound
from ..models import Campaign, SentRecord
from ..schema import CampaignRow, CampaignSendRow
from ..util import new_campaign_id, utcnow

logger = logging.getLogger(__name__)


def _to_record(row: CampaignSendRow) -> SentRecord:
    return SentRecord(
        recipient_id=row.recipient_id,
        source_shard=row.source_shard,
        sent_at=row.sent_at,
        status=row.status,
        external_message_id=row.external_message_id,
        error=row.error,
        error_kind=row.error_kind,
        error_code=row.error_code,
    )


def _to_campaign(row: CampaignRow, with_records: bool = True) -> Campaign:
    return Campaign(
        id=row.id,
        template_id=row.template_id,
        template_language=row.template_language,
        target_shards=list(row.target_shards or []),
        created_at=row.created_at,
        completed_at=row.completed_at,
        total_sent=row.total_sent,
        total_success=row.total_success,
        total_failed=row.total_failed,
        records=[_to_record(s) for s in row.sends] if with_records else [],
        created_by=row.created_by,
    )


class CampaignRecorder:
    def __init__(self, sessions: Optional[sessionmaker] = None):
        self._sessions = sessions or get_sessionmaker()
        self._registry_lock = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def _lock_for(self, campaign_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(campaign_id)
            if lock is None:
                lock = self._locks[campaign_id] = threading.Lock()
            return lock

    # ------------------------------------------------------------------
    def create(
        self,
        template_id: str,
        template_language: str,
        shards: Sequence[str],
        *,
        created_by: Optional[str] = None,
        campaign_id: Optional[str] = None,
    ) -> Campaign:
        cid = campaign_id or new_campaign_id()
        with session_scope(self._sessions) as s:
            row = CampaignRow(
                id=cid,
                template_id=template_id,
                template_language=template_language or "es",
                target_shards=list(shards),
                created_at=utcnow(),
                total_sent=0,
                total_success=0,
                total_failed=0,
                created_by=created_by,
            )
            s.add(row)
            s.flush()
            campaign = _to_campaign(row, with_records=False)
        logger.info("Campaign %s created (template=%s, shards=%s)", cid, template_id, list(shards))
        return campaign

    def append(self, campaign_id: str, record: SentRecord) -> int:
        """Append one SentRecord; returns its position in the campaign."""
        with self._lock_for(campaign_id):
            with session_scope(self._sessions) as s:
                row = s.get(CampaignRow, campaign_id)
                if row is None:
                    raise CampaignNotFound(campaign_id)
                seq = s.scalar(
                    select(func.count()).select_from(CampaignSendRow).where(CampaignSendRow.campaign_id == campaign_id)
                ) or 0
                s.add(
                    CampaignSendRow(
                        campaign_id=campaign_id,
                        seq=seq,
                        recipient_id=record.recipient_id,
                        source_shard=record.source_shard,
                        sent_at=record.sent_at,
                        status=record.status,
                        external_message_id=record.external_message_id,
                        error=record.error,
                        error_kind=record.error_kind,
                        error_code=record.error_code,
                    )
                )
                if record.ok:
                    row.total_success += 1
                else:
                    row.total_failed += 1
                row.total_sent = seq + 1
        return seq

    def complete(self, campaign_id: str) -> Campaign:
        """Stamp completed_at. Already-completed campaigns keep their first timestamp."""
        with self._lock_for(campaign_id):
            with session_scope(self._sessions) as s:
                row = s.get(CampaignRow, campaign_id)
                if row is None:
                    raise CampaignNotFound(campaign_id)
                if row.completed_at is None:
                    row.completed_at = utcnow()
                    logger.info(
                        "Campaign %s completed: sent=%d ok=%d failed=%d",
                        campaign_id, row.total_sent, row.total_success, row.total_failed,
                    )
                else:
                    logger.info("Campaign %s already completed at %s", campaign_id, row.completed_at)
                campaign = _to_campaign(row, with_records=False)
        with self._registry_lock:
            self._locks.pop(campaign_id, None)
        return campaign

    def get(self, campaign_id: str) -> Campaign:
        with session_scope(self._sessions) as s:
            row = s.get(CampaignRow, campaign_id)
            if row is None:
                raise CampaignNotFound(campaign_id)
            return _to_campaign(row)

    def list_recent(self, limit: int = 50) -> List[Campaign]:
        """Newest first, without per-recipient records."""
        with session_scope(self._sessions) as s:
            rows = s.scalars(select(CampaignRow).order_by(CampaignRow.created_at.desc()).limit(limit)).all()
            return [_to_campaign(r, with_records=False) for r in rows]
