"""
wacast.engine.session

One campaign send, start to finish.

CampaignSession threads a single campaign id through every step:

  start()   validate config, create the campaign row
  events()  run the send loop, append each outcome, yield it to the caller
            (the caller drives pause/resume/cancel through session.control)
  finally   complete the campaign and snapshot the successful recipients,
            also after a cancel or an early stop by the caller

The same id keys the snapshot, so history and analytics stay joinable.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Sequence, Union

from ..config import LIVE_DEFAULT, resolve_pace
from ..errors import AuthError, ConfigError
from ..models import Campaign, CampaignSnapshot, SendOutcome, SendingOrder, SentRecord
from ..providers import BaseMessageProvider, dispatch_safely
from ..shards.resolver import ShardResolver
from ..templates import TemplateConfig, TemplateRegistry
from .control import SendControl, SendState
from .controller import AuthAlertFn, SendController
from .recorder import CampaignRecorder
from .snapshot import SnapshotEngine

logger = logging.getLogger(__name__)


@dataclass
class CampaignRun:
    campaign: Campaign
    state: SendState
    snapshot: Optional[CampaignSnapshot] = None
    outcomes: int = 0
    failures: List[SentRecord] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "campaign_id": self.campaign.id,
            "template": self.campaign.template_id,
            "state": self.state.value,
            "total_sent": self.campaign.total_sent,
            "total_success": self.campaign.total_success,
            "total_failed": self.campaign.total_failed,
            "snapshot_recipients": len(self.snapshot.recipients) if self.snapshot else 0,
        }


class CampaignSession:
    def __init__(
        self,
        *,
        resolver: ShardResolver,
        recorder: CampaignRecorder,
        snapshots: SnapshotEngine,
        provider: BaseMessageProvider,
        templates: TemplateRegistry,
        live: bool = LIVE_DEFAULT,
        on_auth_error: Optional[AuthAlertFn] = None,
        created_by: Optional[str] = None,
    ):
        self.resolver = resolver
        self.recorder = recorder
        self.snapshots = snapshots
        self.provider = provider
        self.templates = templates
        self.live = live
        self.on_auth_error = on_auth_error
        self.created_by = created_by

        self.control = SendControl()
        self.campaign: Optional[Campaign] = None
        self.result: Optional[CampaignRun] = None
        self._template: Optional[TemplateConfig] = None
        self._components: Optional[List[Dict[str, Any]]] = None
        self._recipients: List[str] = []
        self._shards: List[str] = []
        self._pace_ms = 0
        self._sending_order = SendingOrder.DESC
        self._notes = ""

    @property
    def campaign_id(self) -> Optional[str]:
        return self.campaign.id if self.campaign else None

    # ------------------------------------------------------------------
    def start(
        self,
        template_name: str,
        recipients: Sequence[str],
        shards: Sequence[str],
        pace: Union[int, str, None] = None,
        *,
        sending_order: Union[str, SendingOrder] = SendingOrder.DESC,
        notes: str = "",
    ) -> "CampaignSession":
        """Validate everything up front, then create the campaign row. Nothing is sent yet."""
        if self.campaign is not None:
            raise ConfigError(f"Session already started for campaign {self.campaign.id}")
        if not shards:
            raise ConfigError("At least one shard is required")
        unknown = [k for k in shards if k not in self.resolver.store.shards]
        if unknown:
            raise ConfigError(f"Unknown shard(s): {', '.join(unknown)}")

        self._template = self.templates.get(template_name)
        self._components = self._template.components() or None
        if self.live:
            self.provider.check_config()

        self._pace_ms = resolve_pace(pace)
        self._sending_order = SendingOrder(sending_order)
        self._notes = notes or ""
        self._recipients = [str(r).strip() for r in recipients if str(r).strip()]
        self._shards = list(shards)

        self.campaign = self.recorder.create(
            template_name,
            self._template.language,
            self._shards,
            created_by=self.created_by,
        )
        return self

    def _dispatch(self, recipient_id: str, record: Dict[str, Any], shard_key: str) -> Optional[str]:
        assert self._template is not None
        return dispatch_safely(
            self.provider,
            to=recipient_id,
            template_name=self._template.name,
            language=self._template.language,
            components=self._components,
            live=self.live,
        )

    def _alert(self, err: AuthError) -> None:
        logger.error("Campaign %s: provider rejected credentials: %s", self.campaign_id, err.message)
        if self.on_auth_error is not None:
            self.on_auth_error(err)

    def events(self) -> Iterator[SendOutcome]:
        if self.campaign is None or self._template is None:
            raise ConfigError("Call start() before events()")
        if self.result is not None:
            raise ConfigError(f"Campaign {self.campaign.id} already ran")

        cid = self.campaign.id
        controller = SendController(
            self.resolver,
            self._shards,
            template_name=self._template.name,
            on_auth_error=self._alert,
        )
        successes: List[SentRecord] = []
        failures: List[SentRecord] = []
        count = 0
        loop = controller.run(self._recipients, self._dispatch, self._pace_ms, self.control)
        try:
            for outcome in loop:
                record = outcome.to_record()
                self.recorder.append(cid, record)
                count += 1
                (successes if record.ok else failures).append(record)
                yield outcome
        finally:
            loop.close()
            self.result = self._finish(successes, failures, count)

    def _finish(self, successes: List[SentRecord], failures: List[SentRecord], count: int) -> CampaignRun:
        assert self.campaign is not None and self._template is not None
        campaign = self.recorder.complete(self.campaign.id)
        snapshot = self.snapshots.capture(
            campaign.id,
            self._template.name,
            campaign.created_at,
            successes,
            self._shards,
            sending_order=self._sending_order,
            notes=self._notes,
            created_by=self.created_by,
        )
        run = CampaignRun(
            campaign=campaign,
            state=self.control.state,
            snapshot=snapshot,
            outcomes=count,
            failures=failures,
        )
        logger.info("Campaign %s finished: %s", campaign.id, run.to_dict())
        return run

    def run_to_completion(self) -> CampaignRun:
        for _ in self.events():
            pass
        assert self.result is not None
        return self.result
