"""
wacast.engine.analytics

Diff a campaign snapshot against the recipients' current state.

For every snapshot entry the live record is re-read across the snapshot's
shards (origin shard first). Recipients no longer found land in a NotFound
slot and contribute to no numerator; whether they count in rate
denominators is a setting (RateDenominator).

Definitions per recipient:
  responded     current status in the responded set, or the responded flag is set
  newly_paid    initial status != paid and current status == paid
  new_upsell    no upsell before, upsell timestamp now present and after sent_at
  state_changed initial status != current status

Economics:
  revenue = newly_paid * revenue_per_purchase + new_upsell * revenue_per_upsell
  cost    = total_sent * cost_per_message * fx_rate
  roi     = revenue / cost (0 when cost is 0)

The report is only built after the whole pass; rates never divide by zero.
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime
from typing import Any, Iterable, List, Optional, Sequence, Tuple

from ..config import AnalyticsSettings
from ..models import (
    CampaignReport,
    CampaignSnapshot,
    EconomicParameters,
    Economics,
    FunnelCounts,
    GlobalSummary,
    RateDenominator,
    Rates,
    RecipientDelta,
    RecipientSnapshot,
)
from ..shards.resolver import ShardResolver
from ..util import to_utc

logger = logging.getLogger(__name__)

NOT_FOUND = "NotFound"


def _ratio(num: float, den: float) -> float:
    return (num / den) if den else 0.0


def _truthy(v: Any) -> bool:
    if isinstance(v, str):
        return v.strip().lower() in ("1", "true", "yes", "y", "si", "sí")
    return bool(v)


def compute_economics(
    newly_paid: int,
    new_upsell: int,
    total_sent: int,
    params: EconomicParameters,
) -> Economics:
    revenue_purchases = newly_paid * params.revenue_per_purchase
    revenue_upsells = new_upsell * params.revenue_per_upsell
    revenue = revenue_purchases + revenue_upsells
    cost = total_sent * params.cost_per_message * params.fx_rate
    conversions = newly_paid + new_upsell
    return Economics(
        revenue_purchases=revenue_purchases,
        revenue_upsells=revenue_upsells,
        revenue=revenue,
        cost=cost,
        net_profit=revenue - cost,
        roi=_ratio(revenue, cost),
        revenue_per_send=_ratio(revenue, total_sent),
        cost_per_conversion=_ratio(cost, conversions),
    )


def compute_rates(funnel: FunnelCounts, denominator: RateDenominator) -> Rates:
    den = funnel.found if denominator == RateDenominator.FOUND_ONLY else funnel.total_sent
    return Rates(
        response_rate=_ratio(funnel.responded, den),
        conversion_rate=_ratio(funnel.newly_paid, den),
        upsell_rate=_ratio(funnel.new_upsell, den),
    )


class AnalyticsEngine:
    def __init__(self, resolver: ShardResolver, settings: Optional[AnalyticsSettings] = None):
        self.resolver = resolver
        self.settings = settings or AnalyticsSettings()

    def _delta(self, snap: CampaignSnapshot, entry: RecipientSnapshot) -> RecipientDelta:
        shards = list(snap.target_shards)
        if entry.source_shard in shards:
            shards = [entry.source_shard] + [k for k in shards if k != entry.source_shard]

        try:
            hit = self.resolver.resolve(entry.recipient_id, shards)
        except Exception:
            logger.exception("Analytics re-read failed for %s", entry.recipient_id)
            hit = None

        if hit is None:
            return RecipientDelta(
                recipient_id=entry.recipient_id,
                source_shard=entry.source_shard,
                found=False,
                initial_status=entry.initial_status,
                current_status=None,
            )

        f = self.resolver.field
        current_status = str(f(hit, "status", "") or "")
        paid = self.settings.paid_status

        responded = current_status in self.settings.responded_statuses or _truthy(f(hit, "responded", False))
        newly_paid = entry.initial_status != paid and current_status == paid

        current_upsell = to_utc(f(hit, "upsell_paid_at"))
        new_upsell = (
            entry.initial_upsell_paid_at is None
            and current_upsell is not None
            and current_upsell > snap.sent_at
        )

        return RecipientDelta(
            recipient_id=entry.recipient_id,
            source_shard=hit.origin_shard,
            found=True,
            initial_status=entry.initial_status,
            current_status=current_status,
            responded=responded,
            newly_paid=newly_paid,
            new_upsell=new_upsell,
            state_changed=entry.initial_status != current_status,
        )

    def analyze(self, snapshot: CampaignSnapshot, params: EconomicParameters) -> CampaignReport:
        deltas = [self._delta(snapshot, r) for r in snapshot.recipients]

        funnel = FunnelCounts(total_sent=snapshot.total_sent)
        transitions: Counter = Counter()
        for d in deltas:
            if not d.found:
                funnel.not_found += 1
                transitions[(d.initial_status, NOT_FOUND)] += 1
                continue
            funnel.found += 1
            funnel.responded += d.responded
            funnel.newly_paid += d.newly_paid
            funnel.new_upsell += d.new_upsell
            funnel.state_changed += d.state_changed
            transitions[(d.initial_status, d.current_status or "")] += 1

        # Most common first; ties broken by key so output is stable.
        ordered: List[Tuple[str, str, int]] = [
            (a, b, n) for (a, b), n in sorted(transitions.items(), key=lambda kv: (-kv[1], kv[0]))
        ]

        report = CampaignReport(
            campaign_id=snapshot.campaign_id,
            template_name=snapshot.template_name,
            sent_at=snapshot.sent_at,
            target_shards=list(snapshot.target_shards),
            notes=snapshot.notes,
            funnel=funnel,
            transitions=ordered,
            economics=compute_economics(funnel.newly_paid, funnel.new_upsell, funnel.total_sent, params),
            rates=compute_rates(funnel, self.settings.denominator),
            parameters=params,
            denominator=self.settings.denominator,
            recipients=deltas,
        )
        logger.info(
            "Report %s: sent=%d responded=%d paid=%d upsell=%d not_found=%d",
            snapshot.campaign_id, funnel.total_sent, funnel.responded,
            funnel.newly_paid, funnel.new_upsell, funnel.not_found,
        )
        return report

    def global_summary(self, snapshots: Iterable[CampaignSnapshot], params: EconomicParameters) -> GlobalSummary:
        """Totals and averages across every snapshot (averages over campaigns with sends)."""
        reports = [self.analyze(s, params) for s in snapshots]

        funnel = FunnelCounts()
        for r in reports:
            for name in ("total_sent", "found", "not_found", "responded", "newly_paid", "new_upsell", "state_changed"):
                setattr(funnel, name, getattr(funnel, name) + getattr(r.funnel, name))

        with_sends = [r for r in reports if r.funnel.total_sent > 0]
        n = len(with_sends)
        average_rates = Rates(
            response_rate=_ratio(sum(r.rates.response_rate for r in with_sends), n),
            conversion_rate=_ratio(sum(r.rates.conversion_rate for r in with_sends), n),
            upsell_rate=_ratio(sum(r.rates.upsell_rate for r in with_sends), n),
        )
        dates: Sequence[datetime] = sorted(r.sent_at for r in reports)

        return GlobalSummary(
            campaigns=len(reports),
            funnel=funnel,
            economics=compute_economics(funnel.newly_paid, funnel.new_upsell, funnel.total_sent, params),
            rates=compute_rates(funnel, self.settings.denominator),
            average_rates=average_rates,
            average_roi=_ratio(sum(r.economics.roi for r in with_sends), n),
            first_sent_at=dates[0] if dates else None,
            last_sent_at=dates[-1] if dates else None,
        )
