from __future__ import annotations

import json
from unittest.mock import MagicMock

import pytest

from integrations.tixr import loader
from integrations.tixr.config import ConfigError
from integrations.tixr.jobs import JobError, JobTally


def test_parse_args_numeric_orders_mode_is_event_shortcut():
    args = loader.parse_args(["orders", "12345"])
    assert (args.command, args.mode, args.target) == ("orders", "event", "12345")


def test_parse_args_defaults_and_flags():
    events = loader.parse_args(["events"])
    assert events.mode == "sync"
    assert events.dry_run is False

    attendance = loader.parse_args(["--dry-run", "--envfile", "x.env", "attendance", "--event-id", "5"])
    assert attendance.dry_run is True
    assert attendance.envfile == "x.env"
    assert attendance.event_id == 5

    users = loader.parse_args(["users", "--seed-event", "9"])
    assert users.seed_event == 9

    orders = loader.parse_args(["orders", "user", "u-1"])
    assert (orders.mode, orders.target) == ("user", "u-1")


@pytest.mark.parametrize(
    "argv",
    [
        ["orders", "weekly"],
        ["orders", "event"],
        ["orders", "user"],
        ["events", "bogus"],
        [],
    ],
)
def test_parse_args_rejects_invalid_commands(argv):
    with pytest.raises(SystemExit):
        loader.parse_args(argv)


@pytest.fixture
def wired(monkeypatch, config_factory):
    """Patch configuration and ClickHouse so ``main`` runs without external services."""
    config = config_factory()
    ch_client = MagicMock()
    monkeypatch.setattr(loader.TixrSyncConfig, "load", classmethod(lambda cls, env_file=None: config))
    monkeypatch.setattr(loader, "get_client_from_config", lambda cfg: ch_client)
    return ch_client


def _inserted_job_run(ch_client):
    table, data = ch_client.insert.call_args.args
    columns = ch_client.insert.call_args.kwargs["column_names"]
    assert table == "meta_job_runs"
    return dict(zip(columns, data[0]))


def test_main_records_successful_run(monkeypatch, wired):
    async def fake_run(args, config, store):
        return JobTally(job="sales", processed=3, written=2)

    monkeypatch.setattr(loader, "_run", fake_run)

    loader.main(["sales"])

    row = _inserted_job_run(wired)
    assert row["job"] == "tixr_sync:sales"
    assert row["status"] == "ok"
    assert row["rows_processed"] == 2
    assert json.loads(row["metrics"])["processed"] == 3


def test_main_marks_partial_runs(monkeypatch, wired):
    async def fake_run(args, config, store):
        tally = JobTally(job="attendance")
        tally.fail(("10", "A1"), RuntimeError("timeout"))
        return tally

    monkeypatch.setattr(loader, "_run", fake_run)

    loader.main(["attendance"])

    assert _inserted_job_run(wired)["status"] == "partial"


def test_main_records_failure_and_exits(monkeypatch, wired):
    async def fake_run(args, config, store):
        raise JobError("Event 404 is not in the events table")

    monkeypatch.setattr(loader, "_run", fake_run)

    with pytest.raises(SystemExit) as exc:
        loader.main(["orders", "404"])

    assert exc.value.code == 1
    row = _inserted_job_run(wired)
    assert row["status"] == "error"
    assert json.loads(row["message"])["error"]["error_type"] == "JobError"


def test_dry_run_skips_job_recording(monkeypatch, wired):
    async def fake_run(args, config, store):
        assert store.dry_run is True
        return JobTally(job="sales")

    monkeypatch.setattr(loader, "_run", fake_run)

    loader.main(["--dry-run", "sales"])

    wired.insert.assert_not_called()


def test_config_error_exits_without_store(monkeypatch):
    def broken(cls, env_file=None):
        raise ConfigError("Missing required environment variables: TIXR_CPK")

    monkeypatch.setattr(loader.TixrSyncConfig, "load", classmethod(broken))
    connect = MagicMock()
    monkeypatch.setattr(loader, "get_client_from_config", connect)

    with pytest.raises(SystemExit) as exc:
        loader.main(["events"])

    assert exc.value.code == 1
    connect.assert_not_called()


def test_print_report(capsys):
    loader._print_report(
        {"GA_PAID": 10, "UNCATEGORIZED": 1},
        [{"count": 1, "price": "FREE", "category": "[NO CAT]", "ref": "[NO REF]", "name": "Refund"}],
    )

    out = capsys.readouterr().out
    assert out.index("GA_PAID") < out.index("UNCATEGORIZED")
    assert "Refund" in out
