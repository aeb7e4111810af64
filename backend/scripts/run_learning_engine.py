#!/usr/bin/env python3
"""Run learning-engine operations from the command line.

Examples:
  python backend/scripts/run_learning_engine.py init-db
  python backend/scripts/run_learning_engine.py order 5012 --source orders
  python backend/scripts/run_learning_engine.py harvest h-2026-02-21-peas
  python backend/scripts/run_learning_engine.py nightly --now 2026-03-01T02:00:00
  python backend/scripts/run_learning_engine.py --pretty backfill
  python backend/scripts/run_learning_engine.py dismiss --all
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from datetime import datetime

# Add backend/ to path when run as a script.
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from alerts.engine import dismiss_alerts
from core.errors import FatalJobError, LearningEngineError
from db.session import AsyncSessionLocal, Base, engine
from integrations.normalization import ORDER_SOURCES, PRIMARY_SOURCE
from workers.backfill import run_backfill
from workers.nightly import run_nightly_recompute
from workers.realtime import process_harvest_event, process_order_event


async def _init_db() -> dict:
    import db.models  # noqa: F401  (registers tables on Base.metadata)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return {"success": True, "tables": sorted(Base.metadata.tables)}


async def _run(args: argparse.Namespace) -> dict:
    if args.command == "init-db":
        return await _init_db()

    now = datetime.fromisoformat(args.now) if getattr(args, "now", None) else None
    async with AsyncSessionLocal() as db:
        if args.command == "order":
            return await process_order_event(db, args.order_id, args.source, now=now)
        if args.command == "harvest":
            return await process_harvest_event(db, args.harvest_id, now=now)
        if args.command == "nightly":
            return await run_nightly_recompute(db, now=now)
        if args.command == "backfill":
            return await run_backfill(db, now=now)
        if args.command == "dismiss":
            dismissed = await dismiss_alerts(db, alert_ids=args.alert_ids or None, dismiss_all=args.all)
            return {"success": True, "dismissed": dismissed}
    raise ValueError(f"Unknown command {args.command!r}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="CropCast learning engine operations")
    parser.add_argument("--pretty", action="store_true", help="Pretty-print JSON output")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create every table on the configured database")

    order = sub.add_parser("order", help="Process one order from the ledger")
    order.add_argument("order_id")
    order.add_argument("--source", choices=ORDER_SOURCES, default=PRIMARY_SOURCE)
    order.add_argument("--now", help="ISO timestamp used when the order has no createdAt")

    harvest = sub.add_parser("harvest", help="Process one harvest from the ledger")
    harvest.add_argument("harvest_id")
    harvest.add_argument("--now", help="ISO timestamp used when the harvest has no harvestedAt")

    nightly = sub.add_parser("nightly", help="Run the nightly recompute")
    nightly.add_argument("--now", help="ISO timestamp to evaluate recency against")

    backfill = sub.add_parser("backfill", help="Rebuild all derived records")
    backfill.add_argument("--now", help="ISO timestamp to evaluate recency against")

    dismiss = sub.add_parser("dismiss", help="Dismiss pending alerts")
    dismiss.add_argument("alert_ids", nargs="*")
    dismiss.add_argument("--all", action="store_true", help="Dismiss every pending alert")
    return parser


def main() -> int:
    args = build_parser().parse_args()
    try:
        summary = asyncio.run(_run(args))
    except FatalJobError as exc:
        summary = {"success": False, "error": str(exc), "progress": exc.progress, "log": exc.log}
    except (LearningEngineError, ValueError) as exc:
        summary = {"success": False, "error": str(exc)}

    print(json.dumps(summary, indent=2 if args.pretty else None, sort_keys=True, default=str))
    return 0 if summary.get("success", summary.get("skipped")) else 1


if __name__ == "__main__":
    raise SystemExit(main())
