"""
Per-ticket attendance state and per-order check-in aggregation.

A ticket's state comes either from the attendance snapshot endpoint or from
replaying its transaction log.  An order row stores three derived fields:

* ``order_checkin_state``: per-serial states joined with ``,`` in the order the
  serials appear in ``order_serials``;
* ``order_checkin_count``: sum of per-serial check-in counts (re-entries count);
* ``order_checkin_time``: earliest first check-in across serials (UTC ISO).
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from integrations.common.time import parse_timestamp, to_utc_iso
from integrations.tixr.classifier import ReportingCategory, classify_row

SerialKey = Tuple[str, str]


class TicketState(str, Enum):
    IN_HAND = "IN_HAND"
    CHECKED_IN = "CHECKED_IN"
    CHECKED_OUT = "CHECKED_OUT"
    VOID = "VOID"

    def __str__(self) -> str:
        return self.value


UNKNOWN_STATE = "UNKNOWN"

_CHECK_IN_ACTIONS = {"CHECKED_IN", "REENTERED"}


@dataclass(frozen=True)
class TicketAttendance:
    state: str
    count: int = 0
    first_check_in: Optional[str] = None

    @classmethod
    def not_found(cls) -> "TicketAttendance":
        """A serial the attendance API does not know yet is still in hand."""
        return cls(TicketState.IN_HAND.value, 0, None)

    @property
    def checked_in(self) -> bool:
        return self.state == TicketState.CHECKED_IN.value


@dataclass(frozen=True)
class OrderAttendance:
    state: str
    count: int
    first_check_in: Optional[str]


@dataclass(frozen=True)
class SerialTask:
    event_id: str
    serial: str

    @property
    def key(self) -> SerialKey:
        return (self.event_id, self.serial)


def serial_key(event_id: Any, serial: str) -> SerialKey:
    return (str(event_id), serial)


def parse_serials(value: Any) -> List[str]:
    """Split a comma-joined serial list, dropping blanks and keeping order."""
    if not value:
        return []
    if isinstance(value, (list, tuple)):
        parts = [str(item) for item in value]
    else:
        parts = str(value).split(",")
    return [part.strip() for part in parts if part and part.strip()]


def _txn_sort_key(txn: Mapping[str, Any]) -> float:
    raw = txn.get("date")
    if raw in (None, ""):
        return 0.0
    try:
        return parse_timestamp(raw).timestamp()
    except (TypeError, ValueError):
        return 0.0


def replay_transactions(transactions: Optional[Iterable[Mapping[str, Any]]]) -> TicketAttendance:
    """Fold a ticket's transaction log into its current attendance.

    Transactions are ordered by ``date`` (stable for equal timestamps). Once a
    ticket is voided it stays voided and later entries are ignored.
    """
    items = [txn for txn in (transactions or []) if isinstance(txn, Mapping)]
    if not items:
        return TicketAttendance.not_found()

    state = TicketState.IN_HAND.value
    count = 0
    first: Optional[str] = None
    for txn in sorted(items, key=_txn_sort_key):
        if state == TicketState.VOID.value:
            break
        action = str(txn.get("action") or "").upper()
        if action in _CHECK_IN_ACTIONS:
            state = TicketState.CHECKED_IN.value
            count += 1
            if first is None:
                first = to_utc_iso(txn.get("date"))
        elif action == TicketState.CHECKED_OUT.value:
            state = TicketState.CHECKED_OUT.value
        elif action == TicketState.VOID.value:
            state = TicketState.VOID.value
    return TicketAttendance(state, count, first)


def from_snapshot(record: Optional[Mapping[str, Any]]) -> TicketAttendance:
    """Build attendance from the snapshot endpoint payload (``None`` means 404)."""
    if record is None:
        return TicketAttendance.not_found()
    try:
        count = int(record.get("ins") or 0)
    except (TypeError, ValueError):
        count = 0
    return TicketAttendance(
        state=str(record.get("state") or UNKNOWN_STATE),
        count=count,
        first_check_in=to_utc_iso(record.get("first_check_in_date")),
    )


def aggregate_order(
    serials: List[str],
    results: Mapping[str, Optional[TicketAttendance]],
) -> Optional[OrderAttendance]:
    """Combine per-serial results into one token per serial.

    Returns ``None`` unless every serial resolved; a failed lookup leaves the
    stored order values in place.
    """
    resolved = [results.get(s) for s in serials]
    if not resolved or any(r is None for r in resolved):
        return None
    times = [r.first_check_in for r in resolved if r.first_check_in]
    return OrderAttendance(
        state=",".join(r.state for r in resolved),
        count=sum(r.count for r in resolved),
        first_check_in=min(times, key=lambda t: parse_timestamp(t)) if times else None,
    )


def _stored_count(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def compute_order_update(
    row: Mapping[str, Any],
    results: Mapping[SerialKey, Optional[TicketAttendance]],
) -> Optional[Dict[str, Any]]:
    """Return the write payload for ``row`` or ``None`` when nothing changed."""
    serials = parse_serials(row.get("order_serials"))
    if not serials:
        return None

    event_id = row.get("event_id")
    per_serial = {s: results.get(serial_key(event_id, s)) for s in serials}
    fresh = aggregate_order(serials, per_serial)
    if fresh is None:
        return None

    unchanged = (
        (row.get("order_checkin_state") or None) == (fresh.state or None)
        and _stored_count(row.get("order_checkin_count")) == fresh.count
        and to_utc_iso(row.get("order_checkin_time")) == fresh.first_check_in
    )
    if unchanged:
        return None

    return {
        "order_id": row.get("order_id"),
        "order_sale_id": row.get("order_sale_id"),
        "event_id": event_id,
        "order_checkin_state": fresh.state,
        "order_checkin_count": fresh.count,
        "order_checkin_time": fresh.first_check_in,
    }


def collect_serial_tasks(rows: Iterable[Mapping[str, Any]]) -> Tuple[List[SerialTask], int]:
    """Return unique ``(event, serial)`` lookups in first-seen order plus the raw serial total."""
    seen: Dict[SerialKey, SerialTask] = {}
    total = 0
    for row in rows:
        event_id = str(row.get("event_id"))
        for serial in parse_serials(row.get("order_serials")):
            total += 1
            key = (event_id, serial)
            if key not in seen:
                seen[key] = SerialTask(event_id, serial)
    return list(seen.values()), total


def summarize_checkins(
    rows: Iterable[Mapping[str, Any]],
    results: Mapping[SerialKey, Optional[TicketAttendance]],
) -> Counter:
    """Count checked-in tickets per reporting category, each ticket once."""
    recap: Counter = Counter()
    counted = set()
    for row in rows:
        category: Optional[ReportingCategory] = None
        for serial in parse_serials(row.get("order_serials")):
            key = serial_key(row.get("event_id"), serial)
            if key in counted:
                continue
            result = results.get(key)
            if result is None or not result.checked_in:
                continue
            counted.add(key)
            if category is None:
                category = classify_row(row)
            recap[category] += 1
    return recap
