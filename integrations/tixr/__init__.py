"""
Tixr REST API integration package.

Syncs events, orders, attendance check-ins, sales totals and fan profiles from
the Tixr Studio API into ClickHouse, through polling jobs and webhooks.
"""

from .client import TixrApiClient, TixrApiError
from .config import ConfigError, TixrSyncConfig
from .jobs import TixrSyncJobs
from .store import StoreError, TixrStore

__all__ = [
    "ConfigError",
    "StoreError",
    "TixrApiClient",
    "TixrApiError",
    "TixrStore",
    "TixrSyncConfig",
    "TixrSyncJobs",
]
