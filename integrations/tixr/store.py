"""
ClickHouse-backed datastore used by the sync jobs and the webhook service.

Tables are ``ReplacingMergeTree`` keyed by the entity identity with a ``_ver``
version column, so an upsert is a plain insert of the merged row with a newer
version.  Field updates go through the same path: the stored row is read
back, the new values are laid over it and the result is inserted again.
Only deletes are ``ALTER TABLE`` mutations.

Filters are dictionaries whose keys are column names with an optional
operator suffix::

    {"event_id": 42}                    # event_id = 42
    {"event_id__in": [1, 2]}            # event_id IN (1, 2)
    {"last_enriched_at__isnull": True}  # last_enriched_at IS NULL
    {"order_serials__has": "ABC123"}    # ABC123 is one of the comma-joined serials
"""

from __future__ import annotations

import json
import re
import time
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from integrations.common.ch import ClickHouseClient
from integrations.common.logging import StructuredLogger, setup_integrations_logger

TABLE_KEYS: Dict[str, Tuple[str, ...]] = {
    "events": ("event_id",),
    "events_orders": ("order_id", "order_sale_id"),
    "events_sales": ("event_id",),
    "events_users": ("user_id",),
}

JOB_RUNS_TABLE = "meta_job_runs"
VERSION_COLUMN = "_ver"

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_OPERATORS = ("in", "isnull", "has")


class StoreError(RuntimeError):
    """Raised when a datastore operation fails."""

    def __init__(self, message: str, *, table: str, operation: str) -> None:
        super().__init__(message)
        self.table = table
        self.operation = operation

    def as_dict(self) -> Dict[str, Any]:
        return {"message": str(self), "table": self.table, "operation": self.operation}


def _identifier(name: str) -> str:
    if not _IDENTIFIER.match(name or ""):
        raise ValueError(f"Invalid identifier: {name!r}")
    return name


def build_where(where: Optional[Mapping[str, Any]], prefix: str = "w") -> Tuple[str, Dict[str, Any]]:
    """Render a filter mapping into a SQL condition and its bound parameters."""
    if not where:
        return "", {}

    clauses: List[str] = []
    params: Dict[str, Any] = {}
    for index, (raw_key, value) in enumerate(where.items()):
        column, _, op = raw_key.partition("__")
        column = _identifier(column)
        param = f"{prefix}{index}"
        if op == "":
            if value is None:
                clauses.append(f"{column} IS NULL")
                continue
            clauses.append(f"{column} = %({param})s")
            params[param] = value
        elif op == "in":
            values = tuple(value or ())
            if not values:
                clauses.append("0")
                continue
            clauses.append(f"{column} IN %({param})s")
            params[param] = values
        elif op == "isnull":
            clauses.append(f"{column} IS NULL" if value else f"{column} IS NOT NULL")
        elif op == "has":
            clauses.append(
                f"has(arrayMap(x -> trimBoth(x), splitByChar(',', ifNull({column}, ''))), %({param})s)"
            )
            params[param] = str(value)
        else:
            raise ValueError(f"Unsupported filter operator {op!r}; expected one of {_OPERATORS}")

    return " WHERE " + " AND ".join(clauses), params


def _chunks(rows: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    for start in range(0, len(rows), size):
        yield rows[start : start + size]


class TixrStore:
    """Read/write helpers over the Tixr tables.

    With ``dry_run`` enabled, reads still go to ClickHouse but writes are only
    logged.
    """

    def __init__(
        self,
        client: Optional[ClickHouseClient],
        *,
        dry_run: bool = False,
        logger: Optional[StructuredLogger] = None,
        page_size: int = 1000,
    ) -> None:
        self.client = client
        self.dry_run = dry_run
        self.logger = logger or setup_integrations_logger("tixr")
        self.page_size = page_size

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #
    def select(
        self,
        table: str,
        columns: Sequence[str] = ("*",),
        where: Optional[Mapping[str, Any]] = None,
        *,
        order_by: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        table = _identifier(table)
        cols = ", ".join("*" if c == "*" else _identifier(c) for c in columns)
        clause, params = build_where(where)
        query = f"SELECT {cols} FROM {table} FINAL{clause}"
        if order_by:
            query += " ORDER BY " + ", ".join(_identifier(c) for c in order_by)
        if limit is not None:
            query += f" LIMIT {int(limit)} OFFSET {int(offset)}"
        try:
            return self._require_client("select", table).query_dicts(query, params or None)
        except StoreError:
            raise
        except Exception as exc:  # pylint: disable=broad-except
            raise StoreError(f"select from {table} failed: {exc}", table=table, operation="select") from exc

    def select_all(
        self,
        table: str,
        columns: Sequence[str] = ("*",),
        where: Optional[Mapping[str, Any]] = None,
        *,
        order_by: Optional[Sequence[str]] = None,
        page_size: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Page through ``select`` until a short page comes back."""
        size = page_size or self.page_size
        ordering = list(order_by or TABLE_KEYS.get(table, ()))
        rows: List[Dict[str, Any]] = []
        offset = 0
        while True:
            page = self.select(
                table, columns, where, order_by=ordering or None, limit=size, offset=offset
            )
            rows.extend(page)
            if len(page) < size:
                break
            offset += size
        return rows

    # ------------------------------------------------------------------ #
    # Writes
    # ------------------------------------------------------------------ #
    def upsert(
        self,
        table: str,
        rows: Sequence[Mapping[str, Any]],
        *,
        batch_size: int = 500,
        only_existing: bool = False,
    ) -> int:
        """Insert-or-replace ``rows`` keyed by the table's identity columns.

        Columns absent from a row keep their stored value.  With
        ``only_existing`` rows that have no stored counterpart are dropped,
        which turns the call into a keyed field update.
        """
        table = _identifier(table)
        if not rows:
            return 0
        keys = TABLE_KEYS.get(table)
        if not keys:
            raise StoreError(f"No conflict key configured for {table}", table=table, operation="upsert")

        written = 0
        for batch in _chunks(list(rows), batch_size):
            merged = self._merge_with_existing(table, keys, batch, only_existing=only_existing)
            if not merged:
                continue
            if self.dry_run:
                self.logger.info(
                    "Dry-run: skipping upsert",
                    metrics={"table": table, "rows": len(merged)},
                )
                written += len(merged)
                continue
            version = int(time.time() * 1000)
            columns = sorted({c for row in merged for c in row} | {VERSION_COLUMN})
            data = [
                [version if c == VERSION_COLUMN else row.get(c) for c in columns] for row in merged
            ]
            try:
                self._require_client("upsert", table).insert(table, data, column_names=columns)
            except StoreError:
                raise
            except Exception as exc:  # pylint: disable=broad-except
                raise StoreError(
                    f"upsert into {table} failed: {exc}", table=table, operation="upsert"
                ) from exc
            written += len(merged)
        return written

    def _merge_with_existing(
        self,
        table: str,
        keys: Tuple[str, ...],
        batch: Sequence[Mapping[str, Any]],
        *,
        only_existing: bool = False,
    ) -> List[Dict[str, Any]]:
        incoming: Dict[Tuple[Any, ...], Dict[str, Any]] = {}
        for row in batch:
            missing = [k for k in keys if row.get(k) is None]
            if missing:
                raise StoreError(
                    f"Row is missing key columns {missing}", table=table, operation="upsert"
                )
            key = tuple(str(row[k]) for k in keys)
            incoming[key] = {**incoming.get(key, {}), **row}

        if self.client is None:
            return list(incoming.values())
        first_key = keys[0]
        existing = self.select(
            table,
            where={f"{first_key}__in": sorted({row[first_key] for row in incoming.values()}, key=str)},
        )
        stored = {tuple(str(r.get(k)) for k in keys): r for r in existing}
        merged: List[Dict[str, Any]] = []
        for key, row in incoming.items():
            if only_existing and key not in stored:
                continue
            base = dict(stored.get(key, {}))
            base.pop(VERSION_COLUMN, None)
            base.update(row)
            merged.append(base)
        return merged

    def update(
        self,
        table: str,
        fields: Mapping[str, Any],
        where: Mapping[str, Any],
    ) -> int:
        """Apply ``fields`` to every row matching ``where`` as a newer version."""
        table = _identifier(table)
        if not fields:
            return 0
        if not where:
            raise StoreError("Refusing unfiltered update", table=table, operation="update")
        keys = TABLE_KEYS.get(table)
        if not keys:
            raise StoreError(f"No conflict key configured for {table}", table=table, operation="update")
        matched = self.select_all(table, keys, where)
        if not matched:
            return 0
        rows = [{**{k: row[k] for k in keys}, **fields} for row in matched]
        return self.upsert(table, rows, only_existing=True)

    def delete(self, table: str, where: Mapping[str, Any]) -> None:
        table = _identifier(table)
        if not where:
            raise StoreError("Refusing unfiltered delete", table=table, operation="delete")
        clause, params = build_where(where)
        self._command("delete", table, f"ALTER TABLE {table} DELETE{clause}", params)

    def record_job_run(
        self,
        *,
        job: str,
        status: str,
        started_at: datetime,
        finished_at: datetime,
        metrics: Mapping[str, Any],
        error: Optional[Mapping[str, Any]] = None,
    ) -> None:
        """Persist a ``meta_job_runs`` entry."""
        if self.dry_run or self.client is None:
            self.logger.info("Skipping job run recording (dry-run mode)", metrics={"job": job})
            return
        payload = {
            "job": job,
            "started_at": started_at.replace(tzinfo=None),
            "finished_at": finished_at.replace(tzinfo=None),
            "rows_processed": int(metrics.get("rows_processed", 0) or 0),
            "status": status,
            "message": json.dumps({"status": status, "error": dict(error or {})}, ensure_ascii=False),
            "metrics": json.dumps(dict(metrics), ensure_ascii=False, default=str),
        }
        columns = list(payload)
        try:
            self.client.insert(JOB_RUNS_TABLE, [[payload[c] for c in columns]], column_names=columns)
        except Exception as exc:  # pylint: disable=broad-except
            raise StoreError(
                f"recording job run failed: {exc}", table=JOB_RUNS_TABLE, operation="insert"
            ) from exc

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #
    def _require_client(self, operation: str, table: str) -> ClickHouseClient:
        if self.client is None:
            raise StoreError("No ClickHouse client configured", table=table, operation=operation)
        return self.client

    def _command(self, operation: str, table: str, query: str, params: Dict[str, Any]) -> None:
        if self.dry_run:
            self.logger.info(
                f"Dry-run: skipping {operation}",
                metrics={"table": table, "query": query},
            )
            return
        try:
            self._require_client(operation, table).command(query, params or None)
        except StoreError:
            raise
        except Exception as exc:  # pylint: disable=broad-except
            raise StoreError(
                f"{operation} on {table} failed: {exc}", table=table, operation=operation
            ) from exc
