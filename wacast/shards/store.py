"""
wacast.shards.store

Cached access to recipient shards.

Each shard is a (connection url, table) pair. One engine + reflected Table
is created lazily per distinct pair and kept for the process lifetime
(close_all() on shutdown). Creation happens under a lock; if two threads race,
the first writer's entry wins and the loser's engine is disposed.

Every driver/SQL failure surfaces as ShardUnavailable so callers can skip the
shard without caring which database is behind it.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from sqlalchemy import MetaData, Table, create_engine, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from ..config import ShardConfig
from ..db import normalize_database_url
from ..errors import ShardUnavailable
from ..util import to_utc

logger = logging.getLogger(__name__)


class ShardStore:
    def __init__(self, shards: Mapping[str, ShardConfig]):
        self.shards: Dict[str, ShardConfig] = dict(shards)
        self._lock = threading.Lock()
        self._cache: Dict[Tuple[str, str], Tuple[Engine, Table]] = {}

    # ------------------------------------------------------------------
    # Connection cache
    # ------------------------------------------------------------------
    def config(self, shard_key: str) -> ShardConfig:
        cfg = self.shards.get(shard_key)
        if cfg is None:
            raise ShardUnavailable(shard_key, "unknown shard key")
        return cfg

    def _handle(self, shard_key: str) -> Tuple[ShardConfig, Engine, Table]:
        cfg = self.config(shard_key)
        cache_key = (cfg.url, cfg.table)
        hit = self._cache.get(cache_key)
        if hit is not None:
            return cfg, hit[0], hit[1]

        # a missing DBAPI driver raises ImportError, not SQLAlchemyError
        engine: Optional[Engine] = None
        try:
            engine = create_engine(normalize_database_url(cfg.url), future=True, pool_pre_ping=True)
            table = Table(cfg.table, MetaData(), autoload_with=engine)
        except Exception as e:
            if engine is not None:
                engine.dispose()
            raise ShardUnavailable(shard_key, f"{type(e).__name__}: {e}") from e

        with self._lock:
            existing = self._cache.get(cache_key)
            if existing is None:
                self._cache[cache_key] = (engine, table)
                logger.info("Opened shard %s (%s)", shard_key, cfg.table)
                return cfg, engine, table
        engine.dispose()
        return cfg, existing[0], existing[1]

    def cached_pairs(self) -> List[Tuple[str, str]]:
        with self._lock:
            return list(self._cache.keys())

    def close_all(self) -> None:
        with self._lock:
            entries = list(self._cache.values())
            self._cache.clear()
        for engine, _ in entries:
            engine.dispose()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def find_one(self, shard_key: str, recipient_id: str) -> Optional[Dict[str, Any]]:
        cfg, engine, table = self._handle(shard_key)
        try:
            stmt = select(table).where(table.c[cfg.id_column] == recipient_id).limit(1)
            with engine.connect() as conn:
                row = conn.execute(stmt).mappings().first()
        except (SQLAlchemyError, KeyError) as e:
            raise ShardUnavailable(shard_key, str(e)) from e
        return dict(row) if row is not None else None

    def update_one(self, shard_key: str, recipient_id: str, patch: Mapping[str, Any]) -> int:
        """Apply `patch` (physical column names) to one record. Returns rows modified."""
        cfg, engine, table = self._handle(shard_key)
        values = {k: v for k, v in patch.items() if k in table.c}
        dropped = sorted(set(patch) - set(values))
        if dropped:
            logger.debug("Shard %s has no columns %s; skipping them", shard_key, dropped)
        if not values:
            return 0
        stmt = table.update().where(table.c[cfg.id_column] == recipient_id).values(**values)
        try:
            with engine.begin() as conn:
                return conn.execute(stmt).rowcount or 0
        except SQLAlchemyError as e:
            raise ShardUnavailable(shard_key, str(e)) from e

    def count(self, shard_key: str) -> int:
        _, engine, table = self._handle(shard_key)
        try:
            with engine.connect() as conn:
                return int(conn.execute(select(func.count()).select_from(table)).scalar_one())
        except SQLAlchemyError as e:
            raise ShardUnavailable(shard_key, str(e)) from e

    def find_sent_since(self, shard_key: str, since: datetime) -> List[Dict[str, Any]]:
        """Records flagged sent whose template-sent timestamp is >= since."""
        cfg, engine, table = self._handle(shard_key)
        sent_col = cfg.col("sent")
        ts_col = cfg.col("template_sent_at")
        if sent_col not in table.c or ts_col not in table.c:
            logger.warning("Shard %s lacks %s/%s columns; nothing to recover", shard_key, sent_col, ts_col)
            return []
        stmt = select(table).where(table.c[sent_col] == True, table.c[ts_col].is_not(None))  # noqa: E712
        try:
            with engine.connect() as conn:
                rows = [dict(r) for r in conn.execute(stmt).mappings()]
        except SQLAlchemyError as e:
            raise ShardUnavailable(shard_key, str(e)) from e

        since_utc = to_utc(since)
        out = []
        for r in rows:
            ts = to_utc(r.get(ts_col))
            if ts is not None and since_utc is not None and ts >= since_utc:
                out.append(r)
        return out
