"""
Prefect wrapper for one campaign send.

The core send loop lives in wacast.engine (Prefect-free on purpose). This
flow loads config, runs the session to completion, and emits JSON log lines
for each failure plus a final summary. Auth failures page Discord once.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from prefect import flow, get_run_logger

from wacast.discord import send_discord_alert
from wacast.engine.classify import classify_failure
from wacast.engine.service import build_service
from wacast.errors import AuthError
from wacast.util import read_recipients


@flow(name="campaign-send", persist_result=False)
def campaign_send(
    template_name: str,
    shards: List[str],
    recipients: Optional[List[str]] = None,
    recipients_file: Optional[str] = None,
    pace: str = "normal",
    live: Optional[bool] = None,
    sending_order: str = "desc",
    notes: str = "",
    created_by: Optional[str] = None,
) -> Dict[str, Any]:
    logger = get_run_logger()

    ids = list(recipients or [])
    if recipients_file:
        ids.extend(read_recipients(recipients_file))
    logger.info("campaign-send: template=%s shards=%s recipients=%d", template_name, shards, len(ids))

    service = build_service()

    def _page_auth(err: AuthError) -> None:
        send_discord_alert(
            "WhatsApp credentials rejected",
            f"Campaign sends are failing with an auth error:\n```{err.message[:1500]}```",
            severity="critical",
            context={"template": template_name, "code": err.code},
        )

    session = service.new_session(live=live, on_auth_error=_page_auth, created_by=created_by)
    try:
        session.start(template_name, ids, shards, pace, sending_order=sending_order, notes=notes)
        for outcome in session.events():
            if outcome.success:
                continue
            verdict = classify_failure(outcome.error or "", code=outcome.error_code, kind=outcome.error_kind)
            logger.warning(
                json.dumps(
                    {
                        "event": "campaign_send_failed",
                        "campaign_id": session.campaign_id,
                        "recipient": outcome.recipient_id,
                        "kind": outcome.error_kind,
                        "code": outcome.error_code,
                        "category": verdict.category,
                        "error": outcome.error,
                    },
                    sort_keys=True,
                )
            )
    finally:
        service.close()

    summary = session.result.to_dict() if session.result else {"campaign_id": session.campaign_id}
    logger.info(json.dumps({"event": "campaign_send_done", **summary}, sort_keys=True))
    send_discord_alert(
        f"Campaign {summary.get('campaign_id')} {summary.get('state', 'stopped')}",
        f"sent={summary.get('total_sent', 0)} ok={summary.get('total_success', 0)} failed={summary.get('total_failed', 0)}",
        severity="info",
        context={"template": template_name},
    )
    return summary


if __name__ == "__main__":
    import sys

    campaign_send(template_name=sys.argv[1], shards=sys.argv[2].split(","), recipients_file=sys.argv[3])
