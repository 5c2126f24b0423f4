"""Thin ClickHouse client wrapper with retry and env-based defaults."""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Optional, Sequence, TYPE_CHECKING

import clickhouse_connect
from clickhouse_connect.driver.exceptions import ClickHouseError

from integrations.common.retry import RetryPolicy, exponential_backoff, retry_sync

if TYPE_CHECKING:
    from integrations.tixr.config import TixrSyncConfig


logger = logging.getLogger(__name__)

_ENV_ALIASES = {
    "host": ("CLICKHOUSE_HOST", "CH_HOST"),
    "port": ("CLICKHOUSE_PORT", "CLICKHOUSE_HTTP_PORT", "CH_PORT"),
    "user": ("CLICKHOUSE_USER", "CH_USER", "CLICKHOUSE_USERNAME"),
    "password": ("CLICKHOUSE_PASSWORD", "CH_PASSWORD"),
    "database": ("CLICKHOUSE_DB", "CLICKHOUSE_DATABASE", "CH_DATABASE"),
    "secure": ("CLICKHOUSE_SECURE", "CH_SECURE"),
    "verify": ("CLICKHOUSE_VERIFY_SSL", "CH_VERIFY_SSL"),
}


def _read_env(key: str) -> Optional[str]:
    """Return the first non-empty environment value for the provided alias key."""
    for env_name in _ENV_ALIASES.get(key, ()):
        value = os.getenv(env_name)
        if value is not None and value.strip() != "":
            return value
    return None


def _parse_bool(value: Optional[str], *, default: bool = False) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"true", "1", "yes", "y", "on"}:
        return True
    if normalized in {"false", "0", "no", "n", "off"}:
        return False
    return default


class ClickHouseClient:
    """A small convenience wrapper around ``clickhouse_connect``.

    Every query, insert and command goes through the shared retry helper;
    the connection is re-established between attempts.
    """

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        database: Optional[str] = None,
        secure: Optional[bool] = None,
        verify: Optional[bool] = None,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        connect_timeout: int = 10,
        send_receive_timeout: int = 30,
    ) -> None:
        env_secure = _parse_bool(_read_env("secure"), default=False)
        env_verify = _parse_bool(_read_env("verify"), default=env_secure)

        self.host = host or _read_env("host") or "localhost"
        self.secure = env_secure if secure is None else secure
        self.verify = env_verify if verify is None else verify

        default_port = "8443" if self.secure else "8123"
        port_env = _read_env("port")
        resolved_port = port_env if port_env is not None else default_port
        self.port = port if port is not None else int(resolved_port)
        self.username = username or _read_env("user") or "default"
        self.password = password or _read_env("password") or ""
        self.database = database or _read_env("database") or "default"

        self.connect_timeout = connect_timeout
        self.send_receive_timeout = send_receive_timeout
        self.policy = RetryPolicy(
            max_attempts=max_retries,
            backoff=exponential_backoff(retry_delay),
        )

        self.client = None
        retry_sync(self._connect, self.policy, label="clickhouse.connect")

    # ------------------------------------------------------------------ #
    # Connection helpers
    # ------------------------------------------------------------------ #
    def _connect(self) -> None:
        self.client = clickhouse_connect.get_client(
            host=self.host,
            port=self.port,
            username=self.username,
            password=self.password,
            database=self.database,
            secure=self.secure,
            verify=self.verify,
            connect_timeout=self.connect_timeout,
            send_receive_timeout=self.send_receive_timeout,
        )
        self.client.command("SELECT 1")
        scheme = "https" if self.secure else "http"
        logger.info("Connected to ClickHouse at %s://%s:%s", scheme, self.host, self.port)

    def _call_with_retry(self, label: str, func_name: str, *args, **kwargs):
        """Call ``self.client.<func_name>`` and reconnect between failed attempts."""
        state = {"attempt": 0}

        def _once():
            if state["attempt"]:
                self._connect()
            state["attempt"] += 1
            try:
                return getattr(self.client, func_name)(*args, **kwargs)
            except ClickHouseError as exc:
                logger.warning("ClickHouseError (%s): %r", exc.__class__.__name__, exc)
                raise

        return retry_sync(_once, self.policy, label=label)

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    def execute(
        self, query: str, parameters: Optional[Dict[str, Any]] = None
    ) -> Any:
        """Execute a SELECT-style query with retries."""
        if parameters:
            return self._call_with_retry("clickhouse.query", "query", query, parameters=parameters)
        return self._call_with_retry("clickhouse.query", "query", query)

    def query_dicts(
        self, query: str, parameters: Optional[Dict[str, Any]] = None
    ) -> List[Dict[str, Any]]:
        """Execute a query and return rows as ``{column: value}`` dictionaries."""
        result = self.execute(query, parameters)
        columns = list(result.column_names)
        return [dict(zip(columns, row)) for row in result.result_rows]

    def insert(
        self,
        table: str,
        data: Sequence[Sequence[Any]],
        column_names: Optional[List[str]] = None,
    ) -> None:
        """Insert data into ClickHouse with retries."""
        kwargs: Dict[str, Any] = {}
        if column_names:
            kwargs["column_names"] = column_names
        logger.debug("Insert into %s rows=%s columns=%s", table, len(data), column_names)
        self._call_with_retry("clickhouse.insert", "insert", table, data, **kwargs)
        logger.info("Inserted %s rows into %s", len(data), table)

    def command(
        self, query: str, parameters: Optional[Dict[str, Any]] = None
    ) -> Any:
        """Execute a command (DDL/DML) with retries."""
        if parameters:
            return self._call_with_retry("clickhouse.command", "command", query, parameters=parameters)
        return self._call_with_retry("clickhouse.command", "command", query)


def get_client_from_config(cfg: "TixrSyncConfig") -> ClickHouseClient:
    """Return a client configured from a ``TixrSyncConfig`` instance."""
    return ClickHouseClient(
        host=cfg.clickhouse_host,
        port=cfg.clickhouse_port,
        username=cfg.clickhouse_user,
        password=cfg.clickhouse_password,
        database=cfg.clickhouse_db,
        secure=cfg.clickhouse_secure,
        verify=cfg.clickhouse_verify_ssl,
    )
