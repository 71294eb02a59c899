"""
wacast.engine.service

Wiring: build the resolver, recorder, snapshot and analytics engines from
config, and expose the operator-level operations (send, report, delete,
recover, list, global summary, shard ping) in one place. Flows and the CLI
go through this.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

from sqlalchemy.engine import Engine

from ..config import AnalyticsSettings, ShardConfig, load_analytics_settings, load_economic_parameters, load_shards
from ..db import get_engine, get_sessionmaker
from ..errors import ShardUnavailable
from ..models import Campaign, CampaignReport, CampaignSnapshot, EconomicParameters, GlobalSummary
from ..providers import BaseMessageProvider, get_provider
from ..schema import create_all
from ..shards.resolver import OrderingStrategy, ShardResolver
from ..shards.store import ShardStore
from ..templates import TemplateRegistry
from .analytics import AnalyticsEngine
from .controller import AuthAlertFn
from .recorder import CampaignRecorder
from .session import CampaignSession
from .snapshot import SnapshotEngine

logger = logging.getLogger(__name__)


@dataclass
class CampaignService:
    resolver: ShardResolver
    recorder: CampaignRecorder
    snapshots: SnapshotEngine
    analytics: AnalyticsEngine
    templates: TemplateRegistry
    provider: BaseMessageProvider

    def new_session(
        self,
        *,
        live: Optional[bool] = None,
        on_auth_error: Optional[AuthAlertFn] = None,
        created_by: Optional[str] = None,
    ) -> CampaignSession:
        kwargs: Dict[str, Any] = {}
        if live is not None:
            kwargs["live"] = live
        return CampaignSession(
            resolver=self.resolver,
            recorder=self.recorder,
            snapshots=self.snapshots,
            provider=self.provider,
            templates=self.templates,
            on_auth_error=on_auth_error,
            created_by=created_by,
            **kwargs,
        )

    def report_for(self, campaign_id: str, params: Optional[EconomicParameters] = None) -> CampaignReport:
        params = params or load_economic_parameters()
        return self.analytics.analyze(self.snapshots.get(campaign_id), params)

    def global_summary(self, params: Optional[EconomicParameters] = None) -> GlobalSummary:
        params = params or load_economic_parameters()
        return self.analytics.global_summary(self.snapshots.all(), params)

    def delete_snapshot(self, campaign_id: str) -> bool:
        return self.snapshots.delete(campaign_id)

    def recover(self, template_name: str, shards: Sequence[str], since_hours: float = 24, notes: str = "") -> CampaignSnapshot:
        return self.snapshots.recover(template_name, shards, since_hours=since_hours, notes=notes)

    def list_snapshots(self, page: int = 1, limit: int = 20) -> Dict[str, Any]:
        return self.snapshots.list(page=page, limit=limit)

    def list_campaigns(self, limit: int = 50) -> List[Campaign]:
        return self.recorder.list_recent(limit=limit)

    def ping_shards(self, shard_keys: Optional[Sequence[str]] = None) -> Dict[str, Dict[str, Any]]:
        """{shard: {"ok": bool, "count": int | None, "error": str | None}}"""
        out: Dict[str, Dict[str, Any]] = {}
        for key in shard_keys or list(self.resolver.store.shards):
            try:
                out[key] = {"ok": True, "count": self.resolver.ping(key), "error": None}
            except ShardUnavailable as e:
                out[key] = {"ok": False, "count": None, "error": str(e)}
        return out

    def close(self) -> None:
        self.resolver.close()


def build_service(
    *,
    engine: Optional[Engine] = None,
    shards: Optional[Mapping[str, ShardConfig]] = None,
    templates: Optional[TemplateRegistry] = None,
    provider: Optional[BaseMessageProvider] = None,
    strategy: Optional[OrderingStrategy] = None,
    settings: Optional[AnalyticsSettings] = None,
    create_tables: bool = False,
) -> CampaignService:
    """Assemble a CampaignService; anything not passed in is loaded from config/env."""
    engine = engine or get_engine()
    if create_tables:
        create_all(engine)
    sessions = get_sessionmaker(engine)

    resolver = ShardResolver(ShardStore(shards if shards is not None else load_shards()), strategy)
    return CampaignService(
        resolver=resolver,
        recorder=CampaignRecorder(sessions),
        snapshots=SnapshotEngine(resolver, sessions),
        analytics=AnalyticsEngine(resolver, settings or load_analytics_settings()),
        templates=templates or TemplateRegistry.load(),
        provider=provider or get_provider(),
    )
