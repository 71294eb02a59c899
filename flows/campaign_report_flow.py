"""
Prefect wrappers for campaign analytics.

campaign-report  diff one snapshot against current shard state
campaign-global  totals and averages across all snapshots
"""

from __future__ import annotations

import json
from typing import Any, Dict

from prefect import flow, get_run_logger

from wacast.config import load_economic_parameters
from wacast.engine.service import build_service


@flow(name="campaign-report", persist_result=False)
def campaign_report(campaign_id: str) -> Dict[str, Any]:
    logger = get_run_logger()
    params = load_economic_parameters()  # fail fast before touching shards
    service = build_service()
    try:
        report = service.report_for(campaign_id, params)
    finally:
        service.close()

    logger.info(
        json.dumps(
            {
                "event": "campaign_report",
                "campaign_id": campaign_id,
                "total_sent": report.funnel.total_sent,
                "responded": report.funnel.responded,
                "newly_paid": report.funnel.newly_paid,
                "new_upsell": report.funnel.new_upsell,
                "not_found": report.funnel.not_found,
                **report.summary(),
            },
            sort_keys=True,
        )
    )
    for label, n in report.transition_histogram().items():
        logger.info(f"[{campaign_id}] {label}: {n}")
    return report.to_dict()


@flow(name="campaign-global", persist_result=False)
def campaign_global() -> Dict[str, Any]:
    logger = get_run_logger()
    params = load_economic_parameters()
    service = build_service()
    try:
        summary = service.global_summary(params)
    finally:
        service.close()
    payload = summary.to_dict()
    logger.info(json.dumps({"event": "campaign_global", **payload}, sort_keys=True, default=str))
    return payload


if __name__ == "__main__":
    import sys

    print(json.dumps(campaign_report(sys.argv[1]), indent=2, default=str))
