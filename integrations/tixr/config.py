"""
Environment configuration for the Tixr sync integration.

The loader and the webhook service read the same dotenv file (e.g.
``secrets/.env.tixr``) for API credentials, ClickHouse connection parameters
and runtime tuning knobs.  Validation lives here so both entry points fail the
same way on an incomplete environment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional, Tuple

from dotenv import load_dotenv

ENV_ALIASES = {
    "TIXR_CPK": ("TIXR_CPK", "TIXR_PUBLIC_KEY"),
    "TIXR_SECRET_KEY": ("TIXR_SECRET_KEY", "TIXR_PRIVATE_KEY"),
    "TIXR_GROUP_ID": ("TIXR_GROUP_ID", "TIXR_GROUP"),
    "TIXR_BASE_URL": ("TIXR_BASE_URL", "TIXR_API_BASE_URL"),
    "TIXR_SIGNING_PREFIX": ("TIXR_SIGNING_PREFIX",),
    "CLICKHOUSE_HOST": ("CLICKHOUSE_HOST", "CH_HOST"),
    "CLICKHOUSE_PORT": ("CLICKHOUSE_PORT", "CH_PORT", "CLICKHOUSE_HTTP_PORT"),
    "CLICKHOUSE_DB": ("CLICKHOUSE_DB", "CLICKHOUSE_DATABASE", "CH_DATABASE"),
    "CLICKHOUSE_USER": ("CLICKHOUSE_USER", "CH_USER", "CLICKHOUSE_USERNAME"),
    "CLICKHOUSE_PASSWORD": ("CLICKHOUSE_PASSWORD", "CH_PASSWORD"),
    "CLICKHOUSE_SECURE": ("CLICKHOUSE_SECURE", "CH_SECURE"),
    "CLICKHOUSE_VERIFY_SSL": ("CLICKHOUSE_VERIFY_SSL", "CH_VERIFY_SSL"),
    "TZ": ("TZ", "DEFAULT_TZ"),
    "API_CONCURRENCY": ("API_CONCURRENCY", "TIXR_API_CONCURRENCY"),
    "EVENT_CONCURRENCY": ("EVENT_CONCURRENCY", "TIXR_EVENT_CONCURRENCY"),
    "API_TIMEOUT": ("API_TIMEOUT", "TIXR_API_TIMEOUT"),
    "API_MAX_RETRIES": ("API_MAX_RETRIES", "TIXR_API_MAX_RETRIES"),
    "PAGE_DELAY_SECONDS": ("PAGE_DELAY_SECONDS", "TIXR_PAGE_DELAY_SECONDS"),
    "CUSTOM_EVENT_ID_MAX": ("CUSTOM_EVENT_ID_MAX",),
    "DRY_RUN": ("DRY_RUN", "TIXR_DRY_RUN"),
    "WEBHOOK_SECRET": ("WEBHOOK_SECRET", "TIXR_WEBHOOK_SECRET"),
    "ALLOWED_IPS": ("ALLOWED_IPS", "WEBHOOK_ALLOWED_IPS"),
    "JOB_NAME": ("JOB_NAME", "TIXR_JOB_NAME"),
}

DEFAULTS = {
    "TIXR_BASE_URL": "https://studio.tixr.com",
    "TIXR_SIGNING_PREFIX": "/v1",
    "CLICKHOUSE_PORT": "8123",
    "CLICKHOUSE_DB": "default",
    "CLICKHOUSE_SECURE": "false",
    "CLICKHOUSE_VERIFY_SSL": "false",
    "TZ": "America/Montreal",
    "API_CONCURRENCY": "30",
    "EVENT_CONCURRENCY": "5",
    "API_TIMEOUT": "10",
    "API_MAX_RETRIES": "3",
    "PAGE_DELAY_SECONDS": "0.25",
    "CUSTOM_EVENT_ID_MAX": "10000",
    "DRY_RUN": "false",
    "JOB_NAME": "tixr_sync",
}


class ConfigError(RuntimeError):
    """Raised when the integration configuration is incomplete or invalid."""


@dataclass(frozen=True)
class TixrSyncConfig:
    """Typed representation of the integration configuration."""

    # Tixr API settings
    tixr_cpk: str
    tixr_secret_key: str
    tixr_group_id: str
    tixr_base_url: str
    tixr_signing_prefix: str

    # ClickHouse settings
    clickhouse_host: str
    clickhouse_port: int
    clickhouse_db: str
    clickhouse_user: str
    clickhouse_password: str
    clickhouse_secure: bool
    clickhouse_verify_ssl: bool

    # Runtime settings
    tz: str
    api_concurrency: int
    event_concurrency: int
    api_timeout: float
    api_max_retries: int
    page_delay_seconds: float
    custom_event_id_max: int
    dry_run: bool
    job_name: str
    webhook_secret: Optional[str] = None
    allowed_ips: Tuple[str, ...] = field(default_factory=tuple)

    REQUIRED_KEYS = (
        "TIXR_CPK",
        "TIXR_SECRET_KEY",
        "TIXR_GROUP_ID",
        "TIXR_BASE_URL",
        "CLICKHOUSE_HOST",
        "CLICKHOUSE_USER",
        "CLICKHOUSE_PASSWORD",
    )

    @classmethod
    def load(
        cls, env_file: Optional[str] = None, *, override: bool = True
    ) -> "TixrSyncConfig":
        """
        Load configuration from environment variables (optionally reading a dotenv file).

        A missing or unreadable ``env_file`` is not an error: values are then
        taken from ``os.environ`` only.

        Raises:
            ConfigError: if a required variable is missing or a value fails to parse.
        """
        if env_file:
            try:
                if os.path.exists(env_file):
                    load_dotenv(env_file, override=override)
            except OSError:
                pass

        def _read_env(key: str) -> Optional[str]:
            for alias in ENV_ALIASES.get(key, (key,)):
                value = os.getenv(alias)
                if value is not None and value.strip() != "":
                    return value.strip()
            return DEFAULTS.get(key)

        missing = [key for key in cls.REQUIRED_KEYS if not _read_env(key)]
        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}"
            )

        def parse_bool(key: str) -> bool:
            value = _read_env(key) or ""
            val = value.lower()
            if val in ("true", "1", "yes", "on"):
                return True
            if val in ("false", "0", "no", "off"):
                return False
            raise ConfigError(f"Invalid boolean value for {key}: {value}")

        def parse_int(key: str, *, minimum: int = 0) -> int:
            value = _read_env(key) or ""
            try:
                parsed = int(value)
            except ValueError as exc:
                raise ConfigError(f"{key} must be an integer, got: {value}") from exc
            if parsed < minimum:
                raise ConfigError(f"{key} must be >= {minimum}, got: {parsed}")
            return parsed

        def parse_float(key: str) -> float:
            value = _read_env(key) or ""
            try:
                parsed = float(value)
            except ValueError as exc:
                raise ConfigError(f"{key} must be a number, got: {value}") from exc
            if parsed < 0:
                raise ConfigError(f"{key} must not be negative, got: {parsed}")
            return parsed

        prefix = _read_env("TIXR_SIGNING_PREFIX") or ""
        if prefix and not prefix.startswith("/"):
            prefix = f"/{prefix}"

        allowed_raw = _read_env("ALLOWED_IPS") or ""
        allowed_ips = tuple(ip.strip() for ip in allowed_raw.split(",") if ip.strip())

        config = cls(
            tixr_cpk=_read_env("TIXR_CPK"),
            tixr_secret_key=_read_env("TIXR_SECRET_KEY"),
            tixr_group_id=_read_env("TIXR_GROUP_ID"),
            tixr_base_url=_read_env("TIXR_BASE_URL").rstrip("/"),
            tixr_signing_prefix=prefix.rstrip("/"),
            clickhouse_host=_read_env("CLICKHOUSE_HOST"),
            clickhouse_port=parse_int("CLICKHOUSE_PORT", minimum=1),
            clickhouse_db=_read_env("CLICKHOUSE_DB"),
            clickhouse_user=_read_env("CLICKHOUSE_USER"),
            clickhouse_password=_read_env("CLICKHOUSE_PASSWORD"),
            clickhouse_secure=parse_bool("CLICKHOUSE_SECURE"),
            clickhouse_verify_ssl=parse_bool("CLICKHOUSE_VERIFY_SSL"),
            tz=_read_env("TZ"),
            api_concurrency=parse_int("API_CONCURRENCY", minimum=1),
            event_concurrency=parse_int("EVENT_CONCURRENCY", minimum=1),
            api_timeout=parse_float("API_TIMEOUT"),
            api_max_retries=parse_int("API_MAX_RETRIES", minimum=1),
            page_delay_seconds=parse_float("PAGE_DELAY_SECONDS"),
            custom_event_id_max=parse_int("CUSTOM_EVENT_ID_MAX"),
            dry_run=parse_bool("DRY_RUN"),
            job_name=_read_env("JOB_NAME"),
            webhook_secret=_read_env("WEBHOOK_SECRET"),
            allowed_ips=allowed_ips,
        )

        config.apply_runtime_env()
        return config

    def apply_runtime_env(self) -> None:
        """
        Propagate config values to environment variables expected by shared utilities.

        ``ClickHouseClient`` falls back to ``CLICKHOUSE_*`` variables and the time
        helpers rely on ``DEFAULT_TZ``.
        """
        os.environ["DEFAULT_TZ"] = self.tz

        os.environ["CLICKHOUSE_HOST"] = self.clickhouse_host
        os.environ["CLICKHOUSE_PORT"] = str(self.clickhouse_port)
        os.environ["CLICKHOUSE_USER"] = self.clickhouse_user
        os.environ["CLICKHOUSE_PASSWORD"] = self.clickhouse_password
        os.environ["CLICKHOUSE_DB"] = self.clickhouse_db
        os.environ["CLICKHOUSE_SECURE"] = "true" if self.clickhouse_secure else "false"
        os.environ["CLICKHOUSE_VERIFY_SSL"] = (
            "true" if self.clickhouse_verify_ssl else "false"
        )

    @property
    def webhook_insecure(self) -> bool:
        """True when the webhook accepts requests without any verification."""
        return not self.webhook_secret and not self.allowed_ips
