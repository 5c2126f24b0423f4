"""Change detection between persisted entities and a fresh API snapshot."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

EVENT_COMPARE_FIELDS = ("event_name", "event_date", "event_flyer")
EVENT_STATUS_FIELD = "event_status"


@dataclass
class StatusChange:
    key: Any
    old: Any
    new: Any


@dataclass
class ChangeSet:
    new: List[Dict[str, Any]] = field(default_factory=list)
    updated: List[Dict[str, Any]] = field(default_factory=list)
    removed: List[Any] = field(default_factory=list)
    status_changed: List[StatusChange] = field(default_factory=list)

    @property
    def to_upsert(self) -> List[Dict[str, Any]]:
        return self.new + self.updated

    @property
    def is_empty(self) -> bool:
        return not (self.new or self.updated or self.removed)

    def summary(self) -> Dict[str, int]:
        return {
            "new": len(self.new),
            "updated": len(self.updated),
            "removed": len(self.removed),
            "status_changed": len(self.status_changed),
        }


def _normalize_key(value: Any) -> Any:
    try:
        return int(value)
    except (TypeError, ValueError):
        return value


def _comparable(value: Any) -> Any:
    # The datastore returns dates as objects, the transform produces strings.
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return value


def detect_changes(
    persisted: Iterable[Mapping[str, Any]],
    fresh: Iterable[Mapping[str, Any]],
    *,
    key: str = "event_id",
    compare_fields: Sequence[str] = EVENT_COMPARE_FIELDS,
    status_field: Optional[str] = EVENT_STATUS_FIELD,
    protected_below: Optional[int] = None,
) -> ChangeSet:
    """Partition ``fresh`` against ``persisted`` by ``key``.

    A persisted entity absent from ``fresh`` is removed unless its key is an
    integer below ``protected_below``. An updated entity is emitted with its
    full fresh payload, including fields outside ``compare_fields``.
    """
    remaining: Dict[Any, Mapping[str, Any]] = {
        _normalize_key(row.get(key)): row for row in persisted
    }
    changes = ChangeSet()

    for row in fresh:
        row_key = _normalize_key(row.get(key))
        stored = remaining.pop(row_key, None)
        if stored is None:
            changes.new.append(dict(row))
            continue

        differs = any(
            _comparable(stored.get(name)) != _comparable(row.get(name)) for name in compare_fields
        )
        status_differs = bool(status_field) and stored.get(status_field) != row.get(status_field)
        if status_differs:
            changes.status_changed.append(
                StatusChange(row_key, stored.get(status_field), row.get(status_field))
            )
        if differs or status_differs:
            changes.updated.append(dict(row))

    for row_key in remaining:
        if (
            protected_below is not None
            and isinstance(row_key, int)
            and row_key < protected_below
        ):
            continue
        changes.removed.append(row_key)

    return changes
