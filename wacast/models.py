"""
wacast.models

Plain dataclasses passed between the resolver, send loop, recorder,
snapshot engine and analytics. ORM rows live in wacast.schema; these are
the detached, in-memory shapes callers actually work with.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


STATUS_SENT = "sent"
STATUS_FAILED = "failed"

# Sentinel written into a RecipientSnapshot when the record could not be re-read.
SNAPSHOT_ERROR = "error"


class SendingOrder(str, Enum):
    ASC = "asc"
    DESC = "desc"


class RateDenominator(str, Enum):
    """Which recipients count towards rate denominators."""

    ALL_SENT = "all_sent"
    FOUND_ONLY = "found_only"


# ---------------------------------------------------------------------------
# Resolution / dispatch
# ---------------------------------------------------------------------------


@dataclass
class ResolvedRecipient:
    record: Dict[str, Any]
    origin_shard: str


@dataclass
class SentRecord:
    recipient_id: str
    source_shard: Optional[str]
    sent_at: datetime
    status: str
    external_message_id: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    error_code: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.status == STATUS_SENT


@dataclass
class SendOutcome:
    """
    One element of the send loop's output stream.

    `to_event()` is the shape pushed to operators while a campaign runs.
    """

    index: int
    recipient_id: str
    success: bool
    sent_at: datetime
    source_shard: Optional[str] = None
    external_message_id: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    error_code: Optional[int] = None

    def to_record(self) -> SentRecord:
        return SentRecord(
            recipient_id=self.recipient_id,
            source_shard=self.source_shard,
            sent_at=self.sent_at,
            status=STATUS_SENT if self.success else STATUS_FAILED,
            external_message_id=self.external_message_id,
            error=self.error,
            error_kind=self.error_kind,
            error_code=self.error_code,
        )

    def to_event(self) -> Dict[str, Any]:
        event: Dict[str, Any] = {
            "recipientId": self.recipient_id,
            "success": self.success,
            "timestampMillis": int(self.sent_at.timestamp() * 1000),
        }
        if self.error is not None:
            event["error"] = self.error
        return event


@dataclass
class Campaign:
    id: str
    template_id: str
    template_language: str
    target_shards: List[str]
    created_at: datetime
    completed_at: Optional[datetime] = None
    total_sent: int = 0
    total_success: int = 0
    total_failed: int = 0
    records: List[SentRecord] = field(default_factory=list)
    created_by: Optional[str] = None

    def successful_records(self) -> List[SentRecord]:
        return [r for r in self.records if r.ok]


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------


@dataclass
class RecipientSnapshot:
    recipient_id: str
    initial_status: str
    initial_channel: Optional[str]
    source_shard: str
    initial_paid_at: Optional[datetime] = None
    initial_upsell_paid_at: Optional[datetime] = None
    initial_revenue: Optional[float] = None


@dataclass
class CampaignSnapshot:
    campaign_id: str
    template_name: str
    sent_at: datetime
    total_sent: int
    target_shards: List[str]
    sending_order: SendingOrder = SendingOrder.DESC
    notes: str = ""
    recipients: List[RecipientSnapshot] = field(default_factory=list)
    created_by: Optional[str] = None


# ---------------------------------------------------------------------------
# Analytics
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EconomicParameters:
    revenue_per_purchase: float
    revenue_per_upsell: float
    cost_per_message: float
    fx_rate: float


@dataclass
class FunnelCounts:
    total_sent: int = 0
    found: int = 0
    not_found: int = 0
    responded: int = 0
    newly_paid: int = 0
    new_upsell: int = 0
    state_changed: int = 0


@dataclass
class Economics:
    revenue_purchases: float = 0.0
    revenue_upsells: float = 0.0
    revenue: float = 0.0
    cost: float = 0.0
    net_profit: float = 0.0
    roi: float = 0.0
    revenue_per_send: float = 0.0
    cost_per_conversion: float = 0.0


@dataclass
class Rates:
    response_rate: float = 0.0
    conversion_rate: float = 0.0
    upsell_rate: float = 0.0


@dataclass
class RecipientDelta:
    recipient_id: str
    source_shard: str
    found: bool
    initial_status: str
    current_status: Optional[str]
    responded: bool = False
    newly_paid: bool = False
    new_upsell: bool = False
    state_changed: bool = False


@dataclass
class CampaignReport:
    campaign_id: str
    template_name: str
    sent_at: datetime
    target_shards: List[str]
    notes: str
    funnel: FunnelCounts
    transitions: List[Tuple[str, str, int]]
    economics: Economics
    rates: Rates
    parameters: EconomicParameters
    denominator: RateDenominator = RateDenominator.ALL_SENT
    recipients: List[RecipientDelta] = field(default_factory=list)

    def transition_histogram(self) -> Dict[str, int]:
        """{"initial → current": count}, most common first."""
        return {f"{a} → {b}": n for a, b, n in self.transitions}

    def summary(self) -> Dict[str, str]:
        """Operator-facing formatted figures."""
        return {
            "response_rate": f"{self.rates.response_rate * 100:.2f}%",
            "conversion_rate": f"{self.rates.conversion_rate * 100:.2f}%",
            "upsell_rate": f"{self.rates.upsell_rate * 100:.2f}%",
            "revenue": f"{self.economics.revenue:,.0f}",
            "cost": f"{self.economics.cost:,.0f}",
            "net_profit": f"{self.economics.net_profit:,.0f}",
            "roi": f"{self.economics.roi:.2f}x",
        }

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["sent_at"] = self.sent_at.isoformat()
        d["denominator"] = self.denominator.value
        d["transitions"] = self.transition_histogram()
        d["summary"] = self.summary()
        return d


@dataclass
class GlobalSummary:
    campaigns: int
    funnel: FunnelCounts
    economics: Economics
    rates: Rates
    average_rates: Rates
    average_roi: float
    first_sent_at: Optional[datetime] = None
    last_sent_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["first_sent_at"] = self.first_sent_at.isoformat() if self.first_sent_at else None
        d["last_sent_at"] = self.last_sent_at.isoformat() if self.last_sent_at else None
        return d
