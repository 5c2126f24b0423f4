"""
Command-line entry point for the Tixr sync jobs.

Usage::

    python -m integrations.tixr.loader --envfile secrets/.env.tixr events status-and-changes
    python -m integrations.tixr.loader orders live
    python -m integrations.tixr.loader orders 12345
    python -m integrations.tixr.loader attendance --event-id 12345
    python -m integrations.tixr.loader sales
    python -m integrations.tixr.loader users --seed-event 12345
    python -m integrations.tixr.loader verify-classification

Every run is recorded in ``meta_job_runs`` unless ``--dry-run`` is given.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
from datetime import datetime
from typing import Any, Dict, Optional, Sequence

# Ensure the project root is in PYTHONPATH for direct invocation.
sys.path.append(os.path.join(os.path.dirname(__file__), "..", ".."))

from integrations.common import (  # noqa: E402  pylint: disable=wrong-import-position
    get_client_from_config,
    setup_integrations_logger,
    utcnow,
)

from .client import TixrApiClient, TixrApiError  # noqa: E402
from .config import ConfigError, TixrSyncConfig  # noqa: E402
from .jobs import EVENT_MODES, ORDER_MODES, JobError, JobTally, TixrSyncJobs  # noqa: E402
from .store import StoreError, TixrStore  # noqa: E402

logger = setup_integrations_logger("tixr")


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """CLI argument parsing."""
    parser = argparse.ArgumentParser(description="Tixr API to ClickHouse sync")
    parser.add_argument(
        "--envfile",
        required=False,
        help="Path to the dotenv file containing Tixr and ClickHouse credentials",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Read from Tixr and ClickHouse but skip every write",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose logging (LOG_LEVEL=DEBUG)",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    events = commands.add_parser("events", help="Sync events, refresh statuses, detect changes")
    events.add_argument("mode", nargs="?", default="sync", choices=EVENT_MODES)

    orders = commands.add_parser("orders", help="Sync COMPLETE orders per event")
    orders.add_argument(
        "mode",
        help="full, live, event ID, user ID, or an event id as a shortcut",
    )
    orders.add_argument("target", nargs="?", help="Event or user id for the event/user modes")

    attendance = commands.add_parser("attendance", help="Reconcile ticket check-ins of past events")
    attendance.add_argument("--event-id", type=int, help="Only this event")

    commands.add_parser("sales", help="Recompute per-event sales totals")

    users = commands.add_parser("users", help="Enrich fans that were never enriched")
    users.add_argument(
        "--seed-event",
        type=int,
        help="Register the fans of this event before enriching",
    )

    commands.add_parser(
        "verify-classification",
        help="Report how stored order rows fall into reporting categories",
    )

    args = parser.parse_args(argv)
    if args.command == "orders":
        if args.mode.isdigit() and args.target is None:
            args.mode, args.target = "event", args.mode
        if args.mode not in ORDER_MODES:
            parser.error(f"orders mode must be one of {', '.join(ORDER_MODES)} or an event id")
        if args.mode in ("event", "user") and not args.target:
            parser.error(f"orders {args.mode} requires an id")
    return args


async def _run(args: argparse.Namespace, config: TixrSyncConfig, store: TixrStore) -> JobTally:
    async with TixrApiClient.from_config(config, logger=logger) as client:
        jobs = TixrSyncJobs.from_config(config, client, store, logger=logger)
        if args.command == "events":
            return await jobs.sync_events(args.mode)
        if args.command == "orders":
            return await jobs.sync_orders(args.mode, args.target)
        if args.command == "attendance":
            return await jobs.sync_attendance(args.event_id)
        if args.command == "sales":
            return await jobs.sync_sales()
        if args.command == "users":
            return await jobs.enrich_users(args.seed_event)

        report = await jobs.verify_classification()
        tally = JobTally(job="verify-classification", processed=report.scanned)
        tally.details["summary"] = report.summary
        tally.details["uncategorized_signatures"] = len(report.uncategorized)
        _print_report(report.summary, report.uncategorized)
        return tally


def _print_report(summary: Dict[str, int], uncategorized: Sequence[Dict[str, Any]]) -> None:
    print("Classification breakdown:")
    for category, count in sorted(summary.items(), key=lambda item: item[1], reverse=True):
        print(f"  {category:<24} {count}")
    if not uncategorized:
        print("All order rows fit a reporting category.")
        return
    print("Uncategorized signatures:")
    print(f"  {'COUNT':<6} | {'PRICE':<6} | {'CATEGORY':<15} | {'SOURCE':<15} | NAME")
    for item in uncategorized:
        print(
            f"  {item['count']:<6} | {item['price']:<6} | {item['category'][:14]:<15} | "
            f"{item['ref'][:14]:<15} | {item['name']}"
        )


def main(argv: Sequence[str] | None = None) -> None:
    args = parse_args(argv)

    if args.verbose:
        os.environ["LOG_LEVEL"] = "DEBUG"

    started_at = utcnow()
    # Defaults in case configuration loading fails early
    job_name = f"{os.getenv('JOB_NAME', 'tixr_sync')}:{args.command}"
    dry_run = bool(args.dry_run)
    store: Optional[TixrStore] = None

    try:
        config = TixrSyncConfig.load(args.envfile)
        dry_run = bool(args.dry_run or config.dry_run)
        job_name = f"{config.job_name}:{args.command}"
        store = TixrStore(get_client_from_config(config), dry_run=dry_run, logger=logger)

        logger.info(
            "Starting Tixr sync run",
            metrics={"job": job_name, "command": args.command, "dry_run": dry_run},
        )
        tally = asyncio.run(_run(args, config, store))
        metrics = tally.as_metrics()
        _record_job_run(
            store,
            job=job_name,
            status="ok" if not tally.failed else "partial",
            started_at=started_at,
            finished_at=utcnow(),
            metrics=metrics,
        )
        logger.info("[tixr] Sync completed", metrics=metrics)

    except (ConfigError, TixrApiError, StoreError, JobError) as exc:
        error_payload: Dict[str, Any]
        if isinstance(exc, (TixrApiError, StoreError)):
            error_payload = {"error_type": exc.__class__.__name__, **exc.as_dict()}
        else:
            error_payload = {
                "error_type": exc.__class__.__name__,
                "message": str(exc),
            }
        logger.error(
            "[tixr] Configuration, API or datastore error",
            metrics={"error": str(exc), **{k: v for k, v in error_payload.items() if k != "message"}},
        )
        _safe_record_failure(store, job_name, started_at, dry_run=dry_run, error_info=error_payload)
        raise SystemExit(1)
    except Exception as exc:  # pylint: disable=broad-except
        logger.exception(
            "[tixr] Unexpected failure during sync",
            metrics={"error": str(exc)},
        )
        _safe_record_failure(
            store,
            job_name,
            started_at,
            dry_run=dry_run,
            error_info={"error_type": exc.__class__.__name__, "message": str(exc)},
        )
        raise SystemExit(1)


def _record_job_run(
    store: TixrStore,
    *,
    job: str,
    status: str,
    started_at: datetime,
    finished_at: datetime,
    metrics: Dict[str, Any],
    error: Optional[Dict[str, Any]] = None,
) -> None:
    store.record_job_run(
        job=job,
        status=status,
        started_at=started_at,
        finished_at=finished_at,
        metrics=metrics,
        error=error,
    )


def _safe_record_failure(
    store: Optional[TixrStore],
    job: str,
    started_at: datetime,
    *,
    dry_run: bool,
    error_info: Dict[str, Any],
) -> None:
    """Record the failed run when a store exists; never raises over the original error."""
    if dry_run or store is None:
        logger.warning(
            "Skipping failure recording",
            metrics={"job": job, "dry_run": dry_run, "error": error_info.get("message")},
        )
        return
    try:
        _record_job_run(
            store,
            job=job,
            status="error",
            started_at=started_at,
            finished_at=utcnow(),
            metrics={"error_details": error_info},
            error=error_info,
        )
    except StoreError as exc:
        logger.error(
            "Failed to record job failure",
            metrics={"job": job, "error": str(exc)},
        )


if __name__ == "__main__":
    main()
