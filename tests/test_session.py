import unittest
from unittest.mock import patch

from tests.support import (
    ScriptedProvider,
    TempDirMixin,
    make_campaign_db,
    make_shard,
    network_failure,
    read_shard_row,
)
from wacast.config import ShardConfig
from wacast.engine.control import SendState
from wacast.engine.recorder import CampaignRecorder
from wacast.engine.session import CampaignSession
from wacast.engine.snapshot import SnapshotEngine
from wacast.errors import AuthError, ConfigError
from wacast.providers import WhatsAppCloudProvider
from wacast.providers.base import SendResult
from wacast.shards import store as store_module
from wacast.shards.resolver import ShardResolver
from wacast.shards.store import ShardStore
from wacast.templates import TemplateConfig, TemplateRegistry

ROWS_MAIN = [
    {"whatsapp": "A", "estado": "lead", "medio": "ads"},
    {"whatsapp": "B", "estado": "lead", "medio": "ads"},
]
ROWS_LEGACY = [
    {"whatsapp": "C", "estado": "responded", "medio": "organic", "pagado_at": 1700000000, "ingreso": 12900},
]


class SessionTestBase(TempDirMixin, unittest.TestCase):
    def setUp(self):
        d = self.make_tempdir()
        self.main = make_shard(d, "main", ROWS_MAIN)
        self.legacy = make_shard(d, "legacy", ROWS_LEGACY, timestamp_unit="milliseconds")
        store = ShardStore({"main": self.main, "legacy": self.legacy})
        self.addCleanup(store.close_all)
        self.resolver = ShardResolver(store)

        engine, sessions = make_campaign_db(d)
        self.sessions = sessions
        self.addCleanup(engine.dispose)
        self.recorder = CampaignRecorder(sessions)
        self.snapshots = SnapshotEngine(self.resolver, sessions)
        self.templates = TemplateRegistry({"promo": TemplateConfig(name="promo", language="es", body=["20%"])})

    def session(self, provider, **kwargs):
        kwargs.setdefault("live", True)
        return CampaignSession(
            resolver=self.resolver,
            recorder=self.recorder,
            snapshots=self.snapshots,
            provider=provider,
            templates=self.templates,
            **kwargs,
        )


class TestCampaignSession(SessionTestBase):
    def test_partial_failure_end_to_end(self):
        provider = ScriptedProvider({"B": network_failure()})
        session = self.session(provider).start("promo", ["A", "B", "C"], ["main", "legacy"], 0)
        events = [o.to_event() for o in session.events()]

        self.assertEqual([e["recipientId"] for e in events], ["A", "B", "C"])
        self.assertEqual([e["success"] for e in events], [True, False, True])
        self.assertEqual(events[1]["error"], "Connection reset by peer")
        self.assertNotIn("error", events[0])

        run = session.result
        self.assertEqual(run.state, SendState.COMPLETED)
        campaign = self.recorder.get(session.campaign_id)
        self.assertEqual((campaign.total_sent, campaign.total_success, campaign.total_failed), (3, 2, 1))
        self.assertIsNotNone(campaign.completed_at)
        self.assertEqual(campaign.template_language, "es")

        snap = self.snapshots.get(session.campaign_id)
        self.assertEqual([r.recipient_id for r in snap.recipients], ["A", "C"])
        self.assertEqual(snap.total_sent, campaign.total_success)
        self.assertEqual([r.source_shard for r in snap.recipients], ["main", "legacy"])
        self.assertEqual(snap.recipients[1].initial_status, "responded")
        self.assertEqual(snap.recipients[1].initial_revenue, 12900.0)
        self.assertEqual(snap.sent_at, campaign.created_at)

    def test_successful_recipients_flagged_in_origin_shard(self):
        session = self.session(ScriptedProvider({"B": network_failure()}))
        session.start("promo", ["A", "B", "C"], ["main", "legacy"], 0).run_to_completion()

        a = read_shard_row(self.main, "A")
        self.assertEqual(a["enviado"], 1)
        self.assertEqual(a["plantilla_enviada"], "promo")
        self.assertLess(a["plantilla_at"], 10**11)
        self.assertFalse(read_shard_row(self.main, "B")["enviado"])
        self.assertGreater(read_shard_row(self.legacy, "C")["plantilla_at"], 10**11)

    def test_provider_receives_template(self):
        provider = ScriptedProvider()
        self.session(provider).start("promo", ["A"], ["main"], 0).run_to_completion()
        self.assertEqual(provider.calls, [{"to": "A", "template_name": "promo", "language": "es", "live": True}])

    def test_not_found_recipient_recorded_as_failure(self):
        session = self.session(ScriptedProvider()).start("promo", ["A", "nobody"], ["main"], 0)
        run = session.run_to_completion()
        self.assertEqual((run.campaign.total_sent, run.campaign.total_failed), (2, 1))
        self.assertEqual(run.failures[0].error_kind, "RecipientNotFound")
        self.assertEqual(len(run.snapshot.recipients), 1)

    def test_cancel_still_completes_and_snapshots(self):
        session = self.session(ScriptedProvider()).start("promo", ["A", "B", "C"], ["main", "legacy"], 0)
        for outcome in session.events():
            if outcome.recipient_id == "B":
                session.control.cancel()

        campaign = self.recorder.get(session.campaign_id)
        self.assertEqual(campaign.total_sent, 2)
        self.assertEqual(len(campaign.records), 2)
        self.assertIsNotNone(campaign.completed_at)
        self.assertEqual(session.result.state, SendState.CANCELLED)
        self.assertEqual([r.recipient_id for r in self.snapshots.get(session.campaign_id).recipients], ["A", "B"])

    def test_consumer_stopping_early_still_finishes(self):
        session = self.session(ScriptedProvider()).start("promo", ["A", "B", "C"], ["main", "legacy"], 0)
        events = session.events()
        next(events)
        events.close()
        self.assertEqual(self.recorder.get(session.campaign_id).total_sent, 1)
        self.assertEqual(len(self.snapshots.get(session.campaign_id).recipients), 1)

    def test_auth_error_alerts_once(self):
        denied = SendResult(
            ok=False, provider_name="scripted", error="Error validating access token", error_kind="AuthError", error_code=190
        )
        alerts = []
        session = self.session(ScriptedProvider({"A": denied, "B": denied}), on_auth_error=alerts.append)
        run = session.start("promo", ["A", "B"], ["main"], 0).run_to_completion()
        self.assertEqual(run.campaign.total_failed, 2)
        self.assertEqual(len(alerts), 1)
        self.assertIsInstance(alerts[0], AuthError)
        self.assertEqual(run.snapshot.recipients, [])


    def test_shard_with_missing_driver_does_not_abort_send(self):
        bad = ShardConfig(key="bad", url="mysql+pymysql://u:p@127.0.0.1/x", table="users")
        store = ShardStore({"bad": bad, "main": self.main})
        self.addCleanup(store.close_all)
        self.resolver = ShardResolver(store)
        self.snapshots = SnapshotEngine(self.resolver, self.sessions)
        real_create_engine = store_module.create_engine

        def create_engine(url, **kwargs):
            if url.startswith("mysql"):
                raise ModuleNotFoundError("No module named 'pymysql'")
            return real_create_engine(url, **kwargs)

        with patch.object(store_module, "create_engine", side_effect=create_engine):
            run = self.session(ScriptedProvider()).start("promo", ["A", "B"], ["bad", "main"], 0).run_to_completion()

        self.assertEqual(run.state, SendState.COMPLETED)
        self.assertEqual((run.campaign.total_sent, run.campaign.total_success), (2, 2))
        self.assertEqual([r.source_shard for r in run.snapshot.recipients], ["main", "main"])

    def test_provider_error_code_is_persisted(self):
        rejected = SendResult(
            ok=False, provider_name="scripted", error="(#131026) Message undeliverable", error_kind="ProviderRejected", error_code=131026
        )
        session = self.session(ScriptedProvider({"A": rejected}))
        session.start("promo", ["A"], ["main"], 0).run_to_completion()
        record = self.recorder.get(session.campaign_id).records[0]
        self.assertEqual((record.error_kind, record.error_code), ("ProviderRejected", 131026))

class TestSessionValidation(SessionTestBase):
    def test_unknown_template(self):
        with self.assertRaises(ConfigError):
            self.session(ScriptedProvider()).start("nope", ["A"], ["main"])
        self.assertEqual(self.recorder.list_recent(), [])

    def test_unknown_or_missing_shards(self):
        with self.assertRaises(ConfigError):
            self.session(ScriptedProvider()).start("promo", ["A"], [])
        with self.assertRaises(ConfigError):
            self.session(ScriptedProvider()).start("promo", ["A"], ["main", "atlantis"])

    def test_missing_credentials_fail_before_create(self):
        provider = WhatsAppCloudProvider(access_token="", phone_number_id="")
        with self.assertRaises(ConfigError):
            self.session(provider).start("promo", ["A"], ["main"])
        self.assertEqual(self.recorder.list_recent(), [])

    def test_dry_run_skips_credential_check(self):
        provider = WhatsAppCloudProvider(access_token="", phone_number_id="")
        run = self.session(provider, live=False).start("promo", ["A"], ["main"], 0).run_to_completion()
        self.assertEqual(run.campaign.total_success, 1)

    def test_events_requires_start(self):
        with self.assertRaises(ConfigError):
            next(self.session(ScriptedProvider()).events())

    def test_bad_pace(self):
        with self.assertRaises(ConfigError):
            self.session(ScriptedProvider()).start("promo", ["A"], ["main"], "warp")


if __name__ == "__main__":
    unittest.main()
