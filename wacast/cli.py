# wacast/cli.py
"""
Operator CLI.

  wacast send --template promo --shards main,legacy --recipients numbers.txt --pace fast
  wacast report campaign_1700000000000_ab12cd34e
  wacast global
  wacast snapshots --page 2
  wacast campaigns
  wacast delete campaign_...
  wacast recover --template promo --shards main --hours 6
  wacast ping

Ctrl-C during `send` cancels cooperatively: the current dispatch finishes,
the campaign is completed and the snapshot is still written. A second
Ctrl-C aborts immediately.
"""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
from typing import Any, List, Optional

from .config import PACE_PRESETS
from .discord import send_discord_alert
from .engine.classify import classify_failure
from .engine.service import build_service
from .errors import AuthError, ConfigError, SnapshotNotFound, WacastError
from .util import read_recipients

logger = logging.getLogger("wacast")


def _print(obj: Any) -> None:
    print(json.dumps(obj, indent=2, default=str, ensure_ascii=False))


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="wacast")
    p.add_argument("--verbose", action="store_true")
    p.add_argument("--create-tables", action="store_true", help="Create campaign tables if missing")
    sub = p.add_subparsers(dest="command", required=True)

    s = sub.add_parser("send", help="Run a campaign send")
    s.add_argument("--template", required=True)
    s.add_argument("--shards", required=True, help="Comma-separated shard keys, in search order")
    s.add_argument("--recipients", required=True, help="File with one phone number per line")
    s.add_argument("--pace", default=None, help=f"Milliseconds between sends or one of {', '.join(PACE_PRESETS)}")
    s.add_argument("--order", choices=["asc", "desc"], default="desc", help="Sending order (recorded on the snapshot)")
    s.add_argument("--notes", default="")
    s.add_argument("--created-by", default=None)
    s.add_argument("--dry-run", action="store_true", help="Do not contact the provider")

    r = sub.add_parser("report", help="Analytics for one campaign")
    r.add_argument("campaign_id")
    r.add_argument("--recipients", action="store_true", help="Include per-recipient deltas")

    sub.add_parser("global", help="Totals across all snapshots")

    ls = sub.add_parser("snapshots", help="List snapshots (newest first)")
    ls.add_argument("--page", type=int, default=1)
    ls.add_argument("--limit", type=int, default=20)

    c = sub.add_parser("campaigns", help="Recent campaign history")
    c.add_argument("--limit", type=int, default=50)

    d = sub.add_parser("delete", help="Delete a campaign snapshot")
    d.add_argument("campaign_id")

    rc = sub.add_parser("recover", help="Build a snapshot from recently flagged sends")
    rc.add_argument("--template", required=True)
    rc.add_argument("--shards", required=True)
    rc.add_argument("--hours", type=float, default=24)
    rc.add_argument("--notes", default="")

    pg = sub.add_parser("ping", help="Test shard connections")
    pg.add_argument("--shards", default=None)

    return p.parse_args(argv)


def _split(raw: Optional[str]) -> List[str]:
    return [s.strip() for s in (raw or "").split(",") if s.strip()]


def _cmd_send(service, args) -> int:
    ids = read_recipients(args.recipients)

    def _page_auth(err: AuthError) -> None:
        send_discord_alert(
            "WhatsApp credentials rejected",
            err.message[:1500],
            severity="critical",
            context={"template": args.template, "code": err.code},
        )

    session = service.new_session(
        live=False if args.dry_run else None,
        on_auth_error=_page_auth,
        created_by=args.created_by,
    )
    session.start(args.template, ids, _split(args.shards), args.pace, sending_order=args.order, notes=args.notes)
    print(f"Campaign {session.campaign_id}: {len(ids)} recipients (Ctrl-C to cancel)")

    def _on_sigint(signum, frame):
        print("\nCancelling after the current message... (Ctrl-C again to abort)")
        session.control.cancel()
        signal.signal(signal.SIGINT, signal.default_int_handler)

    previous = signal.signal(signal.SIGINT, _on_sigint)
    try:
        for outcome in session.events():
            if outcome.success:
                print(f"[{outcome.index + 1}/{len(ids)}] ✅ {outcome.recipient_id}")
            else:
                verdict = classify_failure(outcome.error or "", code=outcome.error_code, kind=outcome.error_kind)
                print(f"[{outcome.index + 1}/{len(ids)}] ❌ {outcome.recipient_id}: {verdict.display} ({outcome.error})")
    finally:
        signal.signal(signal.SIGINT, previous)

    if session.result:
        _print(session.result.to_dict())
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        service = build_service(create_tables=args.create_tables)
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 2

    try:
        if args.command == "send":
            return _cmd_send(service, args)
        if args.command == "report":
            report = service.report_for(args.campaign_id)
            out = report.to_dict()
            if not args.recipients:
                out.pop("recipients", None)
            _print(out)
        elif args.command == "global":
            _print(service.global_summary().to_dict())
        elif args.command == "snapshots":
            page = service.list_snapshots(page=args.page, limit=args.limit)
            page["items"] = [
                {"campaign_id": s.campaign_id, "template": s.template_name, "sent_at": s.sent_at, "total_sent": s.total_sent}
                for s in page["items"]
            ]
            _print(page)
        elif args.command == "campaigns":
            _print(
                [
                    {
                        "campaign_id": c.id,
                        "template": c.template_id,
                        "created_at": c.created_at,
                        "completed_at": c.completed_at,
                        "sent": c.total_sent,
                        "ok": c.total_success,
                        "failed": c.total_failed,
                    }
                    for c in service.list_campaigns(limit=args.limit)
                ]
            )
        elif args.command == "delete":
            if not service.delete_snapshot(args.campaign_id):
                print(f"Snapshot {args.campaign_id} not found", file=sys.stderr)
                return 1
            print(f"Deleted snapshot {args.campaign_id}")
        elif args.command == "recover":
            snap = service.recover(args.template, _split(args.shards), since_hours=args.hours, notes=args.notes)
            print(f"Recovered {snap.campaign_id}: {snap.total_sent} recipients")
        elif args.command == "ping":
            _print(service.ping_shards(_split(args.shards) or None))
        return 0
    except SnapshotNotFound as e:
        print(f"Not found: {e}", file=sys.stderr)
        return 1
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 2
    except WacastError as e:
        logger.error("%s", e)
        return 1
    finally:
        service.close()


if __name__ == "__main__":
    sys.exit(main())
