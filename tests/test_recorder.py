import threading
import unittest
from datetime import datetime, timezone

from tests.support import TempDirMixin, make_campaign_db
from wacast.engine.recorder import CampaignRecorder
from wacast.errors import CampaignNotFound
from wacast.models import STATUS_FAILED, STATUS_SENT, SentRecord


def _record(rid, ok=True, error=None):
    return SentRecord(
        recipient_id=rid,
        source_shard="main",
        sent_at=datetime(2024, 3, 1, 12, tzinfo=timezone.utc),
        status=STATUS_SENT if ok else STATUS_FAILED,
        external_message_id=f"wamid.{rid}" if ok else None,
        error=error,
        error_kind=None if ok else "NetworkError",
    )


class TestCampaignRecorder(TempDirMixin, unittest.TestCase):
    def setUp(self):
        engine, sessions = make_campaign_db(self.make_tempdir())
        self.addCleanup(engine.dispose)
        self.recorder = CampaignRecorder(sessions)

    def test_create(self):
        c = self.recorder.create("promo_march", "es", ["main", "legacy"], created_by="ops")
        self.assertRegex(c.id, r"^campaign_\d{13}_[0-9a-f]{9}$")
        self.assertEqual((c.total_sent, c.total_success, c.total_failed), (0, 0, 0))
        self.assertIsNone(c.completed_at)
        self.assertEqual(self.recorder.get(c.id).target_shards, ["main", "legacy"])

    def test_counters_track_records(self):
        c = self.recorder.create("promo_march", "es", ["main"])
        self.assertEqual(self.recorder.append(c.id, _record("A")), 0)
        self.assertEqual(self.recorder.append(c.id, _record("B", ok=False, error="Read timed out")), 1)
        self.assertEqual(self.recorder.append(c.id, _record("C")), 2)

        got = self.recorder.get(c.id)
        self.assertEqual((got.total_sent, got.total_success, got.total_failed), (3, 2, 1))
        self.assertEqual(got.total_sent, len(got.records))
        self.assertEqual([r.recipient_id for r in got.records], ["A", "B", "C"])
        self.assertEqual(got.records[1].error, "Read timed out")
        self.assertEqual(got.records[1].error_kind, "NetworkError")
        self.assertEqual([r.recipient_id for r in got.successful_records()], ["A", "C"])
        self.assertEqual(got.records[0].sent_at, datetime(2024, 3, 1, 12, tzinfo=timezone.utc))

    def test_duplicate_recipient_appends_again(self):
        c = self.recorder.create("promo_march", "es", ["main"])
        self.recorder.append(c.id, _record("A", ok=False))
        self.recorder.append(c.id, _record("A"))
        got = self.recorder.get(c.id)
        self.assertEqual((got.total_sent, got.total_success, got.total_failed), (2, 1, 1))

    def test_concurrent_appends_keep_invariant(self):
        c = self.recorder.create("promo_march", "es", ["main"])

        def worker(prefix):
            for i in range(10):
                self.recorder.append(c.id, _record(f"{prefix}{i}", ok=i % 3 != 0))

        threads = [threading.Thread(target=worker, args=(p,)) for p in "XYZ"]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        got = self.recorder.get(c.id)
        self.assertEqual(got.total_sent, 30)
        self.assertEqual(got.total_success + got.total_failed, got.total_sent)
        self.assertEqual(len(got.records), 30)

    def test_complete_is_idempotent(self):
        c = self.recorder.create("promo_march", "es", ["main"])
        first = self.recorder.complete(c.id)
        self.assertIsNotNone(first.completed_at)
        second = self.recorder.complete(c.id)
        self.assertEqual(second.completed_at, first.completed_at)

    def test_unknown_campaign(self):
        with self.assertRaises(CampaignNotFound):
            self.recorder.append("campaign_0_missing", _record("A"))
        with self.assertRaises(CampaignNotFound):
            self.recorder.complete("campaign_0_missing")
        with self.assertRaises(CampaignNotFound):
            self.recorder.get("campaign_0_missing")

    def test_list_recent_newest_first(self):
        ids = [self.recorder.create(f"t{i}", "es", ["main"]).id for i in range(3)]
        recent = self.recorder.list_recent(limit=2)
        self.assertEqual(len(recent), 2)
        self.assertEqual(recent[0].id, ids[-1])
        self.assertEqual(recent[0].records, [])


if __name__ == "__main__":
    unittest.main()
