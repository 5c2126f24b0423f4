from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import httpx
import pytest
import pytz

from integrations.tixr.attendance import parse_serials
from integrations.tixr.client import TixrApiClient
from integrations.tixr.config import TixrSyncConfig
from integrations.tixr.store import TABLE_KEYS

NOW = datetime(2024, 6, 15, 16, 0, 0, tzinfo=pytz.UTC)


def _matches(row: Mapping[str, Any], where: Optional[Mapping[str, Any]]) -> bool:
    for raw_key, value in (where or {}).items():
        column, _, op = raw_key.partition("__")
        current = row.get(column)
        if op == "":
            if value is None:
                if current is not None:
                    return False
            elif str(current) != str(value):
                return False
        elif op == "in":
            if str(current) not in {str(v) for v in value}:
                return False
        elif op == "isnull":
            if (current is None) != bool(value):
                return False
        elif op == "has":
            if str(value) not in parse_serials(current):
                return False
        else:
            raise ValueError(op)
    return True


class FakeStore:
    """In-memory stand-in for :class:`TixrStore` with the same call surface."""

    def __init__(self, tables: Optional[Dict[str, List[Dict[str, Any]]]] = None) -> None:
        self.tables: Dict[str, List[Dict[str, Any]]] = {
            name: [dict(row) for row in rows] for name, rows in (tables or {}).items()
        }
        self.deletes: List[tuple] = []
        self.upserts: List[tuple] = []
        self.job_runs: List[Dict[str, Any]] = []
        self.fail_on: Dict[str, Exception] = {}

    def _raise_if_failing(self, operation: str) -> None:
        if operation in self.fail_on:
            raise self.fail_on[operation]

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
        self._raise_if_failing("select")
        rows = [dict(row) for row in self.tables.get(table, []) if _matches(row, where)]
        if "*" not in columns:
            rows = [{c: row.get(c) for c in columns} for row in rows]
        if limit is not None:
            rows = rows[offset : offset + limit]
        return rows

    def select_all(self, table, columns=("*",), where=None, *, order_by=None, page_size=None):
        return self.select(table, columns, where)

    def upsert(
        self,
        table: str,
        rows: Sequence[Mapping[str, Any]],
        *,
        batch_size: int = 500,
        only_existing: bool = False,
    ) -> int:
        self._raise_if_failing("upsert")
        keys = TABLE_KEYS[table]
        stored = self.tables.setdefault(table, [])
        self.upserts.append((table, [dict(row) for row in rows], batch_size))
        written = 0
        for row in rows:
            for existing in stored:
                if all(str(existing.get(k)) == str(row.get(k)) for k in keys):
                    existing.update(row)
                    written += 1
                    break
            else:
                if not only_existing:
                    stored.append(dict(row))
                    written += 1
        return written

    def update(self, table: str, fields: Mapping[str, Any], where: Mapping[str, Any]) -> int:
        self._raise_if_failing("update")
        keys = TABLE_KEYS[table]
        matched = [row for row in self.tables.get(table, []) if _matches(row, where)]
        if not matched:
            return 0
        rows = [{**{k: row[k] for k in keys}, **fields} for row in matched]
        return self.upsert(table, rows, only_existing=True)

    def upserted(self, table: str) -> List[Dict[str, Any]]:
        """Every row written to ``table``, in call order."""
        return [row for name, rows, _ in self.upserts if name == table for row in rows]

    def delete(self, table: str, where: Mapping[str, Any]) -> None:
        self._raise_if_failing("delete")
        self.deletes.append((table, dict(where)))
        self.tables[table] = [row for row in self.tables.get(table, []) if not _matches(row, where)]

    def record_job_run(self, **kwargs: Any) -> None:
        self.job_runs.append(kwargs)


class FakeTixrClient:
    """Async API double keyed by ids; ``errors`` maps a key to the exception to raise."""

    def __init__(self) -> None:
        self.events: List[Dict[str, Any]] = []
        self.event_orders: Dict[Any, List[Dict[str, Any]]] = {}
        self.orders: Dict[Any, Dict[str, Any]] = {}
        self.fans: Dict[str, Dict[str, Any]] = {}
        self.event_fans: Dict[Any, List[Dict[str, Any]]] = {}
        self.attendance: Dict[tuple, Optional[Dict[str, Any]]] = {}
        self.transactions: Dict[tuple, List[Dict[str, Any]]] = {}
        self.errors: Dict[Any, Exception] = {}
        self.calls: List[tuple] = []

    def _check(self, key: Any) -> None:
        if key in self.errors:
            raise self.errors[key]

    async def list_events(self):
        self.calls.append(("list_events",))
        self._check("list_events")
        return list(self.events)

    async def get_event(self, event_id):
        self.calls.append(("get_event", event_id))
        self._check(("event", str(event_id)))
        for event in self.events:
            if str(event.get("id")) == str(event_id):
                return event
        return None

    async def list_event_orders(self, event_id):
        self.calls.append(("list_event_orders", event_id))
        self._check(("orders", str(event_id)))
        return list(self.event_orders.get(str(event_id), []))

    async def get_order(self, order_id):
        self.calls.append(("get_order", order_id))
        return self.orders.get(str(order_id))

    async def list_user_orders(self, user_id):
        self.calls.append(("list_user_orders", user_id))
        return [order for order in self.orders.values() if str(order.get("user_id")) == str(user_id)]

    async def list_event_fans(self, event_id):
        self.calls.append(("list_event_fans", event_id))
        return list(self.event_fans.get(str(event_id), []))

    async def get_fan(self, user_id):
        self.calls.append(("get_fan", user_id))
        self._check(("fan", str(user_id)))
        return self.fans.get(str(user_id))

    async def get_attendance(self, event_id, serial):
        self.calls.append(("get_attendance", event_id, serial))
        self._check(("attendance", str(event_id), serial))
        return self.attendance.get((str(event_id), serial))

    async def get_attendance_transactions(self, event_id, serial):
        self.calls.append(("get_attendance_transactions", event_id, serial))
        self._check(("transactions", str(event_id), serial))
        return list(self.transactions.get((str(event_id), serial), []))

    async def aclose(self):
        return None


class SleepRecorder:
    def __init__(self) -> None:
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def fake_store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def fake_client() -> FakeTixrClient:
    return FakeTixrClient()


@pytest.fixture
def make_api_client() -> Callable[..., TixrApiClient]:
    """Build a real client whose HTTP traffic goes to ``handler``."""

    def _factory(handler: Callable[[httpx.Request], httpx.Response], **kwargs: Any) -> TixrApiClient:
        options: Dict[str, Any] = {
            "base_url": "https://studio.tixr.test",
            "cpk": "public-key-1234",
            "secret_key": "s3cret",
            "group_id": "77",
            "transport": httpx.MockTransport(handler),
            "sleep": SleepRecorder(),
        }
        options.update(kwargs)
        return TixrApiClient(**options)

    return _factory


def make_config(**overrides: Any) -> TixrSyncConfig:
    base = TixrSyncConfig(
        tixr_cpk="public-key-1234",
        tixr_secret_key="s3cret",
        tixr_group_id="77",
        tixr_base_url="https://studio.tixr.test",
        tixr_signing_prefix="/v1",
        clickhouse_host="localhost",
        clickhouse_port=8123,
        clickhouse_db="default",
        clickhouse_user="default",
        clickhouse_password="secret",
        clickhouse_secure=False,
        clickhouse_verify_ssl=False,
        tz="America/Montreal",
        api_concurrency=4,
        event_concurrency=2,
        api_timeout=10.0,
        api_max_retries=3,
        page_delay_seconds=0.0,
        custom_event_id_max=10000,
        dry_run=False,
        job_name="tixr_sync",
    )
    return replace(base, **overrides)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def config_factory() -> Callable[..., Any]:
    return make_config
