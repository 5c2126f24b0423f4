"""
Sync jobs reconciling the Tixr API with the ClickHouse tables.

Each job enumerates its work from the datastore or the API, fans the per-unit
lookups out through :class:`BoundedExecutor` and persists only what changed.
A failing unit (one event, one serial, one user) is counted and logged; the
run carries on.  Failing to enumerate the work at all propagates to the caller.

Store calls are blocking and are pushed to a worker thread.
"""

from __future__ import annotations

import asyncio
import functools
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Mapping, Optional, Sequence

from integrations.common.logging import (
    StructuredLogger,
    log_data_operation,
    log_execution_time,
    setup_integrations_logger,
)
from integrations.common.time import to_utc_iso, utcnow
from integrations.tixr.attendance import (
    SerialKey,
    SerialTask,
    TicketAttendance,
    collect_serial_tasks,
    compute_order_update,
    from_snapshot,
    parse_serials,
    replay_transactions,
    serial_key,
    summarize_checkins,
)
from integrations.tixr.classifier import ReportingCategory, classify, to_decimal
from integrations.tixr.client import TixrApiClient
from integrations.tixr.executor import BoundedExecutor, ProgressTracker
from integrations.tixr.reconcile import detect_changes
from integrations.tixr.sales import aggregate_event_sales
from integrations.tixr.store import StoreError, TixrStore
from integrations.tixr.transform import (
    LIVE,
    PAST,
    compute_event_status,
    fan_user_id,
    should_sync_event,
    transform_event,
    transform_events,
    transform_fan,
    transform_order,
    transform_orders,
)

if TYPE_CHECKING:
    from integrations.tixr.config import TixrSyncConfig

logger = setup_integrations_logger("tixr")

EVENT_MODES = ("sync", "status", "check-changes", "status-and-changes")
ORDER_MODES = ("full", "live", "event", "user")

EVENT_BATCH_SIZE = 100
ORDER_BATCH_SIZE = 500
ATTENDANCE_BATCH_SIZE = 100
USER_BATCH_SIZE = 1000

EVENT_SYNC_COLUMNS = ("event_id", "event_name", "event_status", "event_date", "event_order_updated")
EVENT_COMPARE_COLUMNS = ("event_id", "event_name", "event_date", "event_flyer", "event_status")
ATTENDANCE_COLUMNS = (
    "order_id",
    "order_sale_id",
    "event_id",
    "order_serials",
    "order_category",
    "order_gross",
    "order_ref_type",
    "order_sales_item_name",
    "order_checkin_state",
    "order_checkin_count",
    "order_checkin_time",
)
SALES_COLUMNS = (
    "order_id",
    "order_sale_id",
    "order_status",
    "order_quantity",
    "order_gross",
    "order_net",
    "order_category",
    "order_ref_type",
    "order_sales_item_name",
)
VERIFY_COLUMNS = ("order_sales_item_name", "order_category", "order_gross", "order_ref_type")


class JobError(RuntimeError):
    """Raised when a job cannot determine what to work on."""


@dataclass
class JobTally:
    """Counters for one job run, written to ``meta_job_runs``."""

    job: str
    processed: int = 0
    written: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)

    MAX_ERRORS = 20

    def fail(self, unit: Any, exc: BaseException) -> None:
        self.failed += 1
        if len(self.errors) < self.MAX_ERRORS:
            payload = exc.as_dict() if hasattr(exc, "as_dict") else {"message": str(exc)}
            self.errors.append({"unit": str(unit), "error_type": exc.__class__.__name__, **payload})

    def as_metrics(self) -> Dict[str, Any]:
        return {
            "job": self.job,
            "rows_processed": self.written,
            "processed": self.processed,
            "written": self.written,
            "skipped": self.skipped,
            "failed": self.failed,
            "errors": list(self.errors),
            **self.details,
        }


@dataclass
class ClassificationReport:
    scanned: int
    summary: Dict[str, int]
    uncategorized: List[Dict[str, Any]]


class TixrSyncJobs:
    """Job runner bound to one API client and one store."""

    def __init__(
        self,
        client: TixrApiClient,
        store: TixrStore,
        *,
        api_concurrency: int = 30,
        event_concurrency: int = 5,
        custom_event_id_max: int = 10000,
        logger: Optional[StructuredLogger] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.client = client
        self.store = store
        self.api_concurrency = api_concurrency
        self.event_concurrency = event_concurrency
        self.custom_event_id_max = custom_event_id_max
        self.logger = logger or setup_integrations_logger("tixr")
        self._clock = clock

    @classmethod
    def from_config(
        cls,
        config: "TixrSyncConfig",
        client: TixrApiClient,
        store: TixrStore,
        **kwargs: Any,
    ) -> "TixrSyncJobs":
        return cls(
            client,
            store,
            api_concurrency=config.api_concurrency,
            event_concurrency=config.event_concurrency,
            custom_event_id_max=config.custom_event_id_max,
            **kwargs,
        )

    async def _db(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        return await asyncio.to_thread(func, *args, **kwargs)

    def _now(self) -> datetime:
        return self._clock()

    # --------------------------------------------------------------------- #
    # Events
    # --------------------------------------------------------------------- #
    @log_execution_time(logger)
    async def sync_events(self, mode: str = "sync") -> JobTally:
        if mode not in EVENT_MODES:
            raise ValueError(f"Unknown events mode {mode!r}; expected one of {EVENT_MODES}")
        tally = JobTally(job=f"events:{mode}")
        if mode == "sync":
            await self._full_event_sync(tally)
        if mode in ("status", "status-and-changes"):
            await self._refresh_statuses(tally)
        if mode in ("check-changes", "status-and-changes"):
            await self._check_event_changes(tally)
        return tally

    async def _fresh_event_rows(self) -> List[Dict[str, Any]]:
        events = await self.client.list_events()
        return transform_events(events, now=self._now())

    async def _full_event_sync(self, tally: JobTally) -> None:
        rows = await self._fresh_event_rows()
        tally.processed += len(rows)
        statuses = Counter(row["event_status"] for row in rows)
        self.logger.info(
            "Transformed events",
            metrics={"events": len(rows), LIVE: statuses.get(LIVE, 0), PAST: statuses.get(PAST, 0)},
        )
        tally.written += await self._db(self.store.upsert, "events", rows, batch_size=EVENT_BATCH_SIZE)
        tally.details["statuses"] = dict(statuses)

    async def _refresh_statuses(self, tally: JobTally) -> None:
        """Flip stored LIVE events whose cutoff has passed to PAST."""
        now = self._now()
        live = await self._db(
            self.store.select_all,
            "events",
            ("event_id", "event_date"),
            {"event_status": LIVE},
        )
        tally.processed += len(live)
        expired = [
            row["event_id"]
            for row in live
            if compute_event_status(row.get("event_date"), now=now) == PAST
        ]
        if not expired:
            self.logger.info("All event statuses are current", metrics={"live_events": len(live)})
        else:
            await self._db(
                self.store.update,
                "events",
                {"event_status": PAST, "event_updated": to_utc_iso(now)},
                {"event_id__in": expired},
            )
            tally.written += len(expired)
            self.logger.info("Moved events to PAST", metrics={"events": len(expired)})
        tally.details["status_updates"] = len(expired)

    async def _check_event_changes(self, tally: JobTally) -> None:
        fresh = await self._fresh_event_rows()
        persisted = await self._db(self.store.select_all, "events", EVENT_COMPARE_COLUMNS)
        changes = detect_changes(persisted, fresh, protected_below=self.custom_event_id_max)
        tally.processed += len(fresh)

        for change in changes.status_changed:
            self.logger.info(
                "Event status changed",
                metrics={"event_id": change.key, "old": change.old, "new": change.new},
            )
        if changes.to_upsert:
            tally.written += await self._db(
                self.store.upsert, "events", changes.to_upsert, batch_size=EVENT_BATCH_SIZE
            )
        if changes.removed:
            await self._db(self.store.delete, "events", {"event_id__in": changes.removed})
            self.logger.info("Removed events missing from Tixr", metrics={"event_ids": changes.removed})

        summary = changes.summary()
        tally.details["changes"] = summary
        self.logger.info(
            "Event change detection complete",
            metrics={**summary, "up_to_date": changes.is_empty},
        )

    async def refresh_event(self, event_id: Any) -> Optional[Dict[str, Any]]:
        """Re-fetch one event and upsert it; ``None`` when Tixr does not know it."""
        event = await self.client.get_event(event_id)
        if not event:
            return None
        row = transform_event(event, now=self._now())
        if row is None:
            return None
        await self._db(self.store.upsert, "events", [row], batch_size=EVENT_BATCH_SIZE)
        return row

    async def remove_event(self, event_id: Any) -> None:
        await self._db(self.store.delete, "events", {"event_id": int(event_id)})

    # --------------------------------------------------------------------- #
    # Orders
    # --------------------------------------------------------------------- #
    @log_execution_time(logger)
    async def sync_orders(self, mode: str = "full", target: Any = None) -> JobTally:
        if mode not in ORDER_MODES:
            raise ValueError(f"Unknown orders mode {mode!r}; expected one of {ORDER_MODES}")
        tally = JobTally(job=f"orders:{mode}")
        if mode == "user":
            if target is None:
                raise JobError("A user id is required for the user mode")
            await self._sync_user_orders(target, tally)
            return tally

        events = await self._events_for_order_sync(mode, target)
        now = self._now()
        due = [event for event in events if should_sync_event(event, now=now)]
        tally.skipped += len(events) - len(due)
        if not due:
            self.logger.info("All events are up to date", metrics={"events": len(events)})
            return tally

        self.logger.info(
            "Syncing orders",
            metrics={"events": len(due), "concurrency": self.event_concurrency},
        )
        tasks = [
            (event["event_id"], functools.partial(self.sync_event_orders, event["event_id"]))
            for event in due
        ]
        outcomes = await BoundedExecutor(self.event_concurrency).run(
            tasks, progress=ProgressTracker(len(tasks), label="events", logger=self.logger)
        )
        for outcome in outcomes:
            tally.processed += 1
            if outcome.ok:
                tally.written += outcome.value
            else:
                tally.fail(outcome.key, outcome.error)
                self.logger.error(
                    "Order sync failed for event",
                    metrics={"event_id": outcome.key, "error": str(outcome.error)},
                )
        return tally

    async def _events_for_order_sync(self, mode: str, target: Any) -> List[Dict[str, Any]]:
        if mode == "event":
            if target is None:
                raise JobError("An event id is required for the event mode")
            rows = await self._db(
                self.store.select, "events", EVENT_SYNC_COLUMNS, {"event_id": int(target)}
            )
            if not rows:
                raise JobError(f"Event {target} is not in the events table")
            return rows
        where = {"event_status": LIVE} if mode == "live" else None
        return await self._db(self.store.select_all, "events", EVENT_SYNC_COLUMNS, where)

    @log_data_operation(logger, "load", "tixr_api", "clickhouse")
    async def sync_event_orders(self, event_id: Any) -> int:
        """Fetch, transform and upsert the COMPLETE orders of one event."""
        orders = await self.client.list_event_orders(event_id)
        rows = transform_orders(orders)
        written = 0
        if rows:
            written = await self._db(
                self.store.upsert, "events_orders", rows, batch_size=ORDER_BATCH_SIZE
            )
        await self._db(
            self.store.update,
            "events",
            {"event_order_updated": to_utc_iso(self._now())},
            {"event_id": int(event_id)},
        )
        self.logger.info(
            "Event orders synced",
            metrics={"event_id": event_id, "orders": len(orders), "rows": written},
        )
        return written

    async def _sync_user_orders(self, user_id: Any, tally: JobTally) -> None:
        orders = await self.client.list_user_orders(user_id)
        rows = transform_orders(orders)
        tally.processed += len(orders)
        if rows:
            tally.written += await self._db(
                self.store.upsert, "events_orders", rows, batch_size=ORDER_BATCH_SIZE
            )

    @log_data_operation(logger, "load", "tixr_api", "clickhouse")
    async def refresh_order(self, order_id: Any) -> Optional[int]:
        """Re-fetch one order and upsert its rows; ``None`` when Tixr does not know it."""
        order = await self.client.get_order(order_id)
        if not order:
            return None
        rows = transform_order(order)
        if rows:
            await self._db(self.store.upsert, "events_orders", rows, batch_size=ORDER_BATCH_SIZE)
        return len(rows)

    # --------------------------------------------------------------------- #
    # Attendance
    # --------------------------------------------------------------------- #
    @log_execution_time(logger)
    async def sync_attendance(self, event_id: Any = None) -> JobTally:
        tally = JobTally(job="attendance")
        if event_id is not None:
            event_ids = [int(event_id)]
        else:
            past = await self._db(
                self.store.select_all, "events", ("event_id",), {"event_status": PAST}
            )
            event_ids = [row["event_id"] for row in past]
        if not event_ids:
            self.logger.info("No events to check attendance for")
            return tally

        orders = await self._db(
            self.store.select_all, "events_orders", ATTENDANCE_COLUMNS, {"event_id__in": event_ids}
        )
        tasks, total_serials = collect_serial_tasks(orders)
        self.logger.info(
            "Checking attendance",
            metrics={
                "events": len(event_ids),
                "orders": len(orders),
                "serials": total_serials,
                "unique_serials": len(tasks),
                "concurrency": self.api_concurrency,
            },
        )
        results = await self._lookup_serials(tasks, tally)

        updates = []
        for row in orders:
            update = compute_order_update(row, results)
            if update is not None:
                updates.append(update)
        tally.processed += len(orders)

        if updates:
            applied = await self._apply_attendance_updates(updates, tally)
            tally.written += len(applied)
            touched = sorted({update["event_id"] for update in applied}, key=str)
            if touched:
                await self._db(
                    self.store.update,
                    "events",
                    {"event_attendance_updated": to_utc_iso(self._now())},
                    {"event_id__in": touched},
                )
        else:
            self.logger.info("All orders are already up to date")

        recap = summarize_checkins(orders, results)
        tally.details["recap"] = {str(category): recap.get(category, 0) for category in ReportingCategory}
        tally.details["unique_checkins"] = sum(recap.values())
        self.logger.info("Attendance recap", metrics=tally.details["recap"])
        return tally

    async def _lookup_attendance(self, task: SerialTask) -> TicketAttendance:
        snapshot = await self.client.get_attendance(task.event_id, task.serial)
        return from_snapshot(snapshot)

    async def _lookup_serials(
        self, tasks: Sequence[SerialTask], tally: JobTally
    ) -> Dict[SerialKey, TicketAttendance]:
        outcomes = await BoundedExecutor(self.api_concurrency).run(
            [(task.key, functools.partial(self._lookup_attendance, task)) for task in tasks],
            progress=ProgressTracker(len(tasks), label="serials", logger=self.logger),
        )
        results: Dict[SerialKey, TicketAttendance] = {}
        for outcome in outcomes:
            if outcome.ok:
                results[outcome.key] = outcome.value
            else:
                tally.fail(outcome.key, outcome.error)
        if tally.failed:
            self.logger.warning(
                "Some attendance lookups failed; their orders keep the stored values",
                metrics={"failed": tally.failed, "total": len(tasks)},
            )
        return results

    def _apply_update_batch(
        self, batch: Sequence[Mapping[str, Any]], tally: JobTally
    ) -> List[Mapping[str, Any]]:
        """Write one batch of attendance diffs as newer versions of the order rows."""
        rows = [
            {
                "order_id": update["order_id"],
                "order_sale_id": update["order_sale_id"],
                "order_checkin_state": update["order_checkin_state"],
                "order_checkin_count": update["order_checkin_count"],
                "order_checkin_time": update["order_checkin_time"],
            }
            for update in batch
        ]
        try:
            self.store.upsert("events_orders", rows, batch_size=len(rows), only_existing=True)
        except StoreError as exc:
            for update in batch:
                tally.fail(update["order_id"], exc)
            self.logger.error(
                "Attendance update batch failed",
                metrics={"orders": len(batch), "error": str(exc)},
            )
            return []
        return list(batch)

    async def _apply_attendance_updates(
        self, updates: Sequence[Mapping[str, Any]], tally: JobTally
    ) -> List[Mapping[str, Any]]:
        applied: List[Mapping[str, Any]] = []
        for start in range(0, len(updates), ATTENDANCE_BATCH_SIZE):
            batch = updates[start : start + ATTENDANCE_BATCH_SIZE]
            applied.extend(await self._db(self._apply_update_batch, batch, tally))
            self.logger.info(
                "Attendance updates applied",
                metrics={"applied": len(applied), "total": len(updates)},
            )
        return applied

    async def recompute_ticket(self, event_id: Any, serial: str) -> Dict[str, int]:
        """Replay the transaction log of every serial in the orders holding ``serial``."""
        rows = await self._db(
            self.store.select,
            "events_orders",
            ATTENDANCE_COLUMNS,
            {"event_id": int(event_id), "order_serials__has": serial},
        )
        if not rows:
            return {"orders": 0, "updated": 0}

        keys: Dict[SerialKey, str] = {}
        for row in rows:
            for item in parse_serials(row.get("order_serials")):
                keys.setdefault(serial_key(event_id, item), item)

        async def _replay(item: str) -> TicketAttendance:
            return replay_transactions(await self.client.get_attendance_transactions(event_id, item))

        tally = JobTally(job="ticket")
        outcomes = await BoundedExecutor(self.api_concurrency).run(
            [(key, functools.partial(_replay, item)) for key, item in keys.items()]
        )
        results: Dict[SerialKey, Optional[TicketAttendance]] = {}
        for outcome in outcomes:
            if outcome.ok:
                results[outcome.key] = outcome.value
            else:
                tally.fail(outcome.key, outcome.error)
                self.logger.warning(
                    "Transaction lookup failed",
                    metrics={"event_id": event_id, "serial": outcome.key[1], "error": str(outcome.error)},
                )

        updates = [u for u in (compute_order_update(row, results) for row in rows) if u]
        applied = await self._db(self._apply_update_batch, updates, tally) if updates else []
        return {"orders": len(rows), "updated": len(applied)}

    # --------------------------------------------------------------------- #
    # Sales
    # --------------------------------------------------------------------- #
    @log_execution_time(logger)
    async def sync_sales(self) -> JobTally:
        tally = JobTally(job="sales")
        events = await self._db(
            self.store.select_all, "events", ("event_id", "event_status", "is_custom")
        )
        existing = await self._db(self.store.select_all, "events_sales", ("event_id",))
        with_sales = {int(row["event_id"]) for row in existing}

        due = []
        for event in events:
            if event.get("is_custom"):
                continue
            status = event.get("event_status")
            if status == LIVE or (status == PAST and int(event["event_id"]) not in with_sales):
                due.append(int(event["event_id"]))
        tally.skipped += len(events) - len(due)
        if not due:
            self.logger.info("All event sales are up to date")
            return tally

        async def _aggregate(event_id: int) -> Dict[str, Any]:
            orders = await self._db(
                self.store.select_all, "events_orders", SALES_COLUMNS, {"event_id": event_id}
            )
            return aggregate_event_sales(event_id, orders)

        outcomes = await BoundedExecutor(self.event_concurrency).run(
            [(event_id, functools.partial(_aggregate, event_id)) for event_id in due]
        )
        rows = []
        for outcome in outcomes:
            tally.processed += 1
            if outcome.ok:
                rows.append(outcome.value)
            else:
                tally.fail(outcome.key, outcome.error)
                self.logger.error(
                    "Sales aggregation failed for event",
                    metrics={"event_id": outcome.key, "error": str(outcome.error)},
                )
        if not rows:
            return tally

        tally.written += await self._db(self.store.upsert, "events_sales", rows)
        await self._db(
            self.store.update,
            "events",
            {"event_sales_updated": to_utc_iso(self._now())},
            {"event_id__in": [row["event_id"] for row in rows]},
        )
        self.logger.info("Event sales saved", metrics={"events": len(rows)})
        return tally

    # --------------------------------------------------------------------- #
    # Users
    # --------------------------------------------------------------------- #
    @log_execution_time(logger)
    async def enrich_users(self, seed_event: Any = None) -> JobTally:
        tally = JobTally(job="users")
        if seed_event is not None:
            await self._seed_users(seed_event, tally)

        pending = await self._db(
            self.store.select_all, "events_users", ("user_id",), {"last_enriched_at__isnull": True}
        )
        user_ids = [row["user_id"] for row in pending]
        if not user_ids:
            self.logger.info("All users are enriched")
            return tally

        self.logger.info(
            "Enriching users",
            metrics={"users": len(user_ids), "concurrency": self.api_concurrency},
        )
        progress = ProgressTracker(len(user_ids), label="users", logger=self.logger)
        executor = BoundedExecutor(self.api_concurrency)
        for start in range(0, len(user_ids), USER_BATCH_SIZE):
            batch = user_ids[start : start + USER_BATCH_SIZE]
            outcomes = await executor.run(
                [(uid, functools.partial(self.client.get_fan, uid)) for uid in batch],
                progress=progress,
            )
            now = self._now()
            rows = []
            for outcome in outcomes:
                tally.processed += 1
                if not outcome.ok:
                    tally.fail(outcome.key, outcome.error)
                    continue
                row = transform_fan(outcome.value, now=now) if outcome.value else None
                if row is None:
                    tally.skipped += 1
                    continue
                rows.append(row)
            if rows:
                try:
                    tally.written += await self._db(self.store.upsert, "events_users", rows)
                except StoreError as exc:
                    tally.fail(f"users[{start}:{start + len(batch)}]", exc)
                    self.logger.error(
                        "Saving enriched users failed",
                        metrics={"batch_start": start, "error": str(exc)},
                    )
        return tally

    async def _seed_users(self, event_id: Any, tally: JobTally) -> None:
        """Register the fans of one event so the enrichment pass picks them up."""
        fans = await self.client.list_event_fans(event_id)
        seeds = {}
        for fan in fans:
            user_id = fan_user_id(fan)
            if user_id is not None:
                seeds[user_id] = {"user_id": user_id}
        if seeds:
            await self._db(self.store.upsert, "events_users", list(seeds.values()))
        tally.details["seeded_users"] = len(seeds)

    # --------------------------------------------------------------------- #
    # Classification report
    # --------------------------------------------------------------------- #
    async def verify_classification(self) -> ClassificationReport:
        """Group stored order rows by signature and classify each signature once."""
        rows = await self._db(self.store.select_all, "events_orders", VERIFY_COLUMNS)
        groups: Dict[tuple, Dict[str, Any]] = {}
        for row in rows:
            name = str(row.get("order_sales_item_name") or "").strip()
            category = str(row.get("order_category") or "").strip()
            ref = str(row.get("order_ref_type") or "").strip()
            gross = to_decimal(row.get("order_gross"))
            signature = (name, category, "PAID" if gross > 0 else "FREE", ref)
            group = groups.setdefault(
                signature,
                {"name": name, "category": category, "ref": ref, "gross": gross, "count": 0},
            )
            group["count"] += 1

        summary: Counter = Counter()
        uncategorized = []
        for group in sorted(groups.values(), key=lambda g: g["count"], reverse=True):
            result = classify(group["name"], group["category"], group["ref"], group["gross"])
            summary[str(result)] += group["count"]
            if result is ReportingCategory.UNCATEGORIZED:
                uncategorized.append(
                    {
                        "count": group["count"],
                        "price": "PAID" if group["gross"] > 0 else "FREE",
                        "category": group["category"] or "[NO CAT]",
                        "ref": group["ref"] or "[NO REF]",
                        "name": group["name"] or "[NO NAME]",
                    }
                )
        report = ClassificationReport(
            scanned=len(rows), summary=dict(summary), uncategorized=uncategorized
        )
        self.logger.info(
            "Classification breakdown",
            metrics={"scanned": report.scanned, **report.summary},
        )
        for item in uncategorized:
            self.logger.warning("Uncategorized signature", metrics=item)
        return report
