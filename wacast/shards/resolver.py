"""
wacast.shards.resolver

Find a recipient's live record across an ordered list of shards.

The search order is pluggable:
  - SequentialStrategy (default): query shards one at a time, stop at the
    first hit. Later shards are never touched once a hit is found.
  - FanOutStrategy: query all shards in parallel; the highest-priority hit
    wins, and only shards ranked above it are waited on.

Unknown or unreachable shards are logged and skipped; they never fail
resolution on their own.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..errors import RecipientNotFound, ShardUnavailable
from ..models import ResolvedRecipient
from ..util import from_utc, gv
from .store import ShardStore

logger = logging.getLogger(__name__)

Lookup = Callable[[str], Optional[Dict[str, Any]]]


def _safe_lookup(lookup: Lookup, shard_key: str, recipient_id: str) -> Optional[Dict[str, Any]]:
    try:
        return lookup(shard_key)
    except ShardUnavailable as e:
        logger.warning("Skipping shard %s while resolving %s: %s", shard_key, recipient_id, e)
        return None


class OrderingStrategy:
    """Decides how shards are searched. Must return the first hit by shard priority."""

    name = "base"

    def search(self, recipient_id: str, shard_keys: Sequence[str], lookup: Lookup) -> Optional[ResolvedRecipient]:
        raise NotImplementedError


class SequentialStrategy(OrderingStrategy):
    name = "sequential"

    def search(self, recipient_id, shard_keys, lookup):
        for key in shard_keys:
            record = _safe_lookup(lookup, key, recipient_id)
            if record is not None:
                return ResolvedRecipient(record=record, origin_shard=key)
        return None


class FanOutStrategy(OrderingStrategy):
    name = "fan_out"

    def __init__(self, max_workers: int = 4):
        self.max_workers = max(1, max_workers)

    def search(self, recipient_id, shard_keys, lookup):
        if not shard_keys:
            return None
        pool = ThreadPoolExecutor(max_workers=min(self.max_workers, len(shard_keys)))
        try:
            futures = [pool.submit(_safe_lookup, lookup, key, recipient_id) for key in shard_keys]
            for key, fut in zip(shard_keys, futures):
                record = fut.result()
                if record is not None:
                    return ResolvedRecipient(record=record, origin_shard=key)
            return None
        finally:
            # lower-ranked lookups still running finish in the background
            pool.shutdown(wait=False, cancel_futures=True)


class ShardResolver:
    def __init__(self, store: ShardStore, strategy: Optional[OrderingStrategy] = None):
        self.store = store
        self.strategy = strategy or SequentialStrategy()

    def resolve(self, recipient_id: str, shard_keys: Sequence[str]) -> Optional[ResolvedRecipient]:
        """First match across `shard_keys` in order, or None (not found anywhere)."""
        return self.strategy.search(
            recipient_id,
            list(shard_keys),
            lambda key: self.store.find_one(key, recipient_id),
        )

    def resolve_or_raise(self, recipient_id: str, shard_keys: Sequence[str]) -> ResolvedRecipient:
        hit = self.resolve(recipient_id, shard_keys)
        if hit is None:
            raise RecipientNotFound(recipient_id, shard_keys)
        return hit

    def field(self, resolved: ResolvedRecipient, logical: str, default: Any = None) -> Any:
        """Read a logical field (status, channel, paid_at, ...) through the shard's column map."""
        cfg = self.store.shards.get(resolved.origin_shard)
        colmap = cfg.columns if cfg is not None else {}
        return gv(colmap, resolved.record, logical, default)

    def mark_sent(self, recipient_id: str, shard_key: str, template_name: str, sent_at: datetime) -> int:
        """Flag the recipient as having received `template_name`. Returns rows modified."""
        cfg = self.store.config(shard_key)
        patch = {
            cfg.col("sent"): True,
            cfg.col("template_sent_at"): from_utc(sent_at, cfg.timestamp_unit),
            cfg.col("template_name"): template_name,
        }
        return self.store.update_one(shard_key, recipient_id, patch)

    def ping(self, shard_key: str) -> int:
        """Connection test: number of records in the shard. Raises ShardUnavailable."""
        return self.store.count(shard_key)

    def find_sent_since(self, shard_keys: Sequence[str], since: datetime) -> List[ResolvedRecipient]:
        """Recipients flagged sent since `since`, deduplicated by id (earlier shard wins)."""
        seen = set()
        out: List[ResolvedRecipient] = []
        for key in shard_keys:
            try:
                rows = self.store.find_sent_since(key, since)
            except ShardUnavailable as e:
                logger.warning("Skipping shard %s during recovery: %s", key, e)
                continue
            id_col = self.store.config(key).id_column
            for r in rows:
                rid = str(r.get(id_col))
                if rid in seen:
                    continue
                seen.add(rid)
                out.append(ResolvedRecipient(record=r, origin_shard=key))
        return out

    def close(self) -> None:
        self.store.close_all()
