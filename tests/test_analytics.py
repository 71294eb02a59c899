import unittest
from datetime import datetime, timedelta, timezone

from tests.support import TempDirMixin, make_shard, update_shard_row
from wacast.config import AnalyticsSettings
from wacast.engine.analytics import AnalyticsEngine, compute_economics
from wacast.models import (
    CampaignSnapshot,
    EconomicParameters,
    RateDenominator,
    RecipientSnapshot,
)
from wacast.shards.resolver import ShardResolver
from wacast.shards.store import ShardStore

SENT_AT = datetime(2024, 3, 1, 12, tzinfo=timezone.utc)
AFTER = int((SENT_AT + timedelta(hours=5)).timestamp())
BEFORE = int((SENT_AT - timedelta(days=3)).timestamp())

PARAMS = EconomicParameters(revenue_per_purchase=12900, revenue_per_upsell=19000, cost_per_message=0.005, fx_rate=4000)


def _entry(rid, status, shard="main", upsell=None):
    return RecipientSnapshot(
        recipient_id=rid,
        initial_status=status,
        initial_channel="ads",
        source_shard=shard,
        initial_upsell_paid_at=upsell,
    )


def _snapshot(entries, total_sent=None, shards=("main",)):
    return CampaignSnapshot(
        campaign_id="campaign_1",
        template_name="promo",
        sent_at=SENT_AT,
        total_sent=len(entries) if total_sent is None else total_sent,
        target_shards=list(shards),
        recipients=list(entries),
    )


class AnalyticsTestBase(TempDirMixin, unittest.TestCase):
    rows = []

    def setUp(self):
        d = self.make_tempdir()
        self.main = make_shard(d, "main", self.rows)
        store = ShardStore({"main": self.main})
        self.addCleanup(store.close_all)
        self.resolver = ShardResolver(store)

    def engine(self, denominator=RateDenominator.ALL_SENT):
        settings = AnalyticsSettings(responded_statuses=("responded", "responded-bulk"), paid_status="paid", denominator=denominator)
        return AnalyticsEngine(self.resolver, settings)


class TestFunnel(AnalyticsTestBase):
    rows = [
        {"whatsapp": "A", "estado": "paid", "pagado_at": AFTER},
        {"whatsapp": "B", "estado": "responded"},
        {"whatsapp": "C", "estado": "lead", "respondio_masivo": 1},
        {"whatsapp": "D", "estado": "paid", "upsell_pagado_at": AFTER * 1000},
        {"whatsapp": "E", "estado": "lead", "upsell_pagado_at": BEFORE},
        {"whatsapp": "F", "estado": "lead"},
    ]

    def test_lead_to_paid(self):
        report = self.engine().analyze(_snapshot([_entry("A", "lead")]), PARAMS)
        self.assertEqual(report.funnel.newly_paid, 1)
        self.assertEqual(report.transition_histogram(), {"lead → paid": 1})
        self.assertTrue(report.recipients[0].newly_paid)
        self.assertTrue(report.recipients[0].state_changed)

    def test_counts(self):
        snap = _snapshot(
            [
                _entry("A", "lead"),
                _entry("B", "lead"),
                _entry("C", "lead"),
                _entry("D", "paid"),
                _entry("E", "lead"),
                _entry("F", "lead"),
            ]
        )
        report = self.engine().analyze(snap, PARAMS)
        f = report.funnel
        self.assertEqual(f.total_sent, 6)
        self.assertEqual(f.found, 6)
        self.assertEqual(f.responded, 2)  # B by status, C by flag
        self.assertEqual(f.newly_paid, 1)  # D was already paid
        self.assertEqual(f.new_upsell, 1)  # D after sent_at; E before
        self.assertEqual(f.state_changed, 2)
        self.assertEqual(report.transitions[0], ("lead", "lead", 3))
        self.assertAlmostEqual(report.rates.response_rate, 2 / 6)
        self.assertAlmostEqual(report.rates.conversion_rate, 1 / 6)

    def test_existing_upsell_is_not_new(self):
        snap = _snapshot([_entry("D", "paid", upsell=SENT_AT - timedelta(days=1))])
        self.assertEqual(self.engine().analyze(snap, PARAMS).funnel.new_upsell, 0)

    def test_deterministic(self):
        snap = _snapshot([_entry(r, "lead") for r in "ABCDEF"])
        first = self.engine().analyze(snap, PARAMS).to_dict()
        second = self.engine().analyze(snap, PARAMS).to_dict()
        self.assertEqual(first, second)

    def test_current_state_is_live(self):
        snap = _snapshot([_entry("F", "lead")])
        self.assertEqual(self.engine().analyze(snap, PARAMS).funnel.newly_paid, 0)
        update_shard_row(self.main, "F", estado="paid")
        self.assertEqual(self.engine().analyze(snap, PARAMS).funnel.newly_paid, 1)


class TestNotFound(AnalyticsTestBase):
    rows = [{"whatsapp": "A", "estado": "paid"}, {"whatsapp": "B", "estado": "responded"}]

    def _snap(self):
        return _snapshot([_entry("A", "lead"), _entry("B", "lead"), _entry("GONE", "lead"), _entry("GONE2", "error")])

    def test_not_found_excluded_from_numerators(self):
        report = self.engine().analyze(self._snap(), PARAMS)
        self.assertEqual(report.funnel.not_found, 2)
        self.assertEqual(report.funnel.found, 2)
        self.assertEqual(report.funnel.newly_paid, 1)
        self.assertEqual(report.funnel.responded, 1)
        self.assertEqual(report.transition_histogram()["lead → NotFound"], 1)
        self.assertFalse(report.recipients[2].found)
        self.assertAlmostEqual(report.rates.conversion_rate, 1 / 4)

    def test_found_only_denominator(self):
        report = self.engine(RateDenominator.FOUND_ONLY).analyze(self._snap(), PARAMS)
        self.assertAlmostEqual(report.rates.conversion_rate, 1 / 2)
        self.assertAlmostEqual(report.rates.response_rate, 1 / 2)
        self.assertEqual(report.to_dict()["denominator"], "found_only")


class TestEconomics(AnalyticsTestBase):
    rows = [{"whatsapp": "A", "estado": "paid"}]

    def test_worked_example(self):
        snap = _snapshot([_entry("A", "lead")], total_sent=100)
        e = self.engine().analyze(snap, PARAMS).economics
        self.assertAlmostEqual(e.revenue, 12900)
        self.assertAlmostEqual(e.cost, 2000)
        self.assertAlmostEqual(e.net_profit, 10900)
        self.assertAlmostEqual(e.roi, 6.45)
        self.assertAlmostEqual(e.revenue_per_send, 129)
        self.assertAlmostEqual(e.cost_per_conversion, 2000)

    def test_empty_snapshot_has_zero_rates(self):
        report = self.engine().analyze(_snapshot([]), PARAMS)
        self.assertEqual(report.funnel.total_sent, 0)
        self.assertEqual((report.rates.response_rate, report.rates.conversion_rate, report.rates.upsell_rate), (0, 0, 0))
        self.assertEqual(report.economics.roi, 0)
        self.assertEqual(report.summary()["response_rate"], "0.00%")

    def test_zero_cost_guard(self):
        free = EconomicParameters(revenue_per_purchase=100, revenue_per_upsell=0, cost_per_message=0, fx_rate=1)
        e = compute_economics(3, 0, 10, free)
        self.assertEqual(e.roi, 0)
        self.assertEqual(e.revenue, 300)
        self.assertEqual(e.cost_per_conversion, 0)

    def test_summary_format(self):
        snap = _snapshot([_entry("A", "lead")], total_sent=100)
        summary = self.engine().analyze(snap, PARAMS).summary()
        self.assertEqual(summary["roi"], "6.45x")
        self.assertEqual(summary["conversion_rate"], "1.00%")


class TestGlobalSummary(AnalyticsTestBase):
    rows = [{"whatsapp": "A", "estado": "paid"}, {"whatsapp": "B", "estado": "lead"}]

    def test_aggregates(self):
        one = _snapshot([_entry("A", "lead"), _entry("B", "lead")])
        two = CampaignSnapshot(
            campaign_id="campaign_2",
            template_name="promo",
            sent_at=SENT_AT + timedelta(days=7),
            total_sent=2,
            target_shards=["main"],
            recipients=[_entry("B", "lead"), _entry("A", "paid")],
        )
        empty = CampaignSnapshot(
            campaign_id="campaign_3", template_name="promo", sent_at=SENT_AT - timedelta(days=1), total_sent=0, target_shards=["main"]
        )
        g = self.engine().global_summary([one, two, empty], PARAMS)
        self.assertEqual(g.campaigns, 3)
        self.assertEqual(g.funnel.total_sent, 4)
        self.assertEqual(g.funnel.newly_paid, 1)
        self.assertAlmostEqual(g.rates.conversion_rate, 1 / 4)
        # average over the two campaigns with sends: (0.5 + 0) / 2
        self.assertAlmostEqual(g.average_rates.conversion_rate, 0.25)
        self.assertEqual(g.first_sent_at, SENT_AT - timedelta(days=1))
        self.assertEqual(g.last_sent_at, SENT_AT + timedelta(days=7))
        self.assertAlmostEqual(g.economics.revenue, 12900)

    def test_no_snapshots(self):
        g = self.engine().global_summary([], PARAMS)
        self.assertEqual(g.campaigns, 0)
        self.assertEqual(g.average_roi, 0)
        self.assertIsNone(g.first_sent_at)


if __name__ == "__main__":
    unittest.main()
