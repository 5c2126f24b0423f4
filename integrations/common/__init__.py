"""Public exports for the ``integrations.common`` convenience package."""

from .ch import ClickHouseClient, get_client_from_config
from .logging import (
    Metrics,
    StructuredLogger,
    get_logger,
    log_data_operation,
    log_execution_time,
    setup_integrations_logger,
)
from .retry import RetryPolicy, exponential_backoff, linear_backoff, retry_async, retry_sync
from .time import (
    next_day_cutoff,
    parse_timestamp,
    to_date,
    to_local,
    to_utc_iso,
    utcnow,
)

__all__ = [
    # ClickHouse helpers
    "ClickHouseClient",
    "get_client_from_config",
    # Retry helpers
    "RetryPolicy",
    "exponential_backoff",
    "linear_backoff",
    "retry_async",
    "retry_sync",
    # Time helpers
    "utcnow",
    "to_local",
    "to_date",
    "to_utc_iso",
    "parse_timestamp",
    "next_day_cutoff",
    # Logging helpers
    "StructuredLogger",
    "Metrics",
    "get_logger",
    "log_execution_time",
    "log_data_operation",
    "setup_integrations_logger",
]
