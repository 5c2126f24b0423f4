from __future__ import annotations

import os

import pytest

from integrations.tixr.config import ENV_ALIASES, ConfigError, TixrSyncConfig

REQUIRED = {
    "TIXR_CPK": "public-key-1234",
    "TIXR_SECRET_KEY": "s3cret",
    "TIXR_GROUP_ID": "77",
    "CLICKHOUSE_HOST": "ch.local",
    "CLICKHOUSE_USER": "etl",
    "CLICKHOUSE_PASSWORD": "pw",
}


@pytest.fixture
def clean_env(monkeypatch):
    """Clear every alias and pin the variables ``apply_runtime_env`` overwrites."""
    for aliases in ENV_ALIASES.values():
        for alias in aliases:
            monkeypatch.delenv(alias, raising=False)
    for key in (
        "DEFAULT_TZ",
        "CLICKHOUSE_HOST",
        "CLICKHOUSE_PORT",
        "CLICKHOUSE_USER",
        "CLICKHOUSE_PASSWORD",
        "CLICKHOUSE_DB",
        "CLICKHOUSE_SECURE",
        "CLICKHOUSE_VERIFY_SSL",
    ):
        monkeypatch.setenv(key, "placeholder")
        monkeypatch.delenv(key)
    for key, value in REQUIRED.items():
        monkeypatch.setenv(key, value)
    return monkeypatch


def test_defaults_are_applied(clean_env):
    config = TixrSyncConfig.load()

    assert config.tixr_base_url == "https://studio.tixr.com"
    assert config.tixr_signing_prefix == "/v1"
    assert config.clickhouse_port == 8123
    assert config.api_concurrency == 30
    assert config.event_concurrency == 5
    assert config.page_delay_seconds == 0.25
    assert config.custom_event_id_max == 10000
    assert config.dry_run is False
    assert config.webhook_insecure is True


def test_runtime_env_is_propagated(clean_env):
    clean_env.setenv("TZ", "Europe/Paris")
    TixrSyncConfig.load()

    assert os.environ["DEFAULT_TZ"] == "Europe/Paris"
    assert os.environ["CLICKHOUSE_HOST"] == "ch.local"
    assert os.environ["CLICKHOUSE_SECURE"] == "false"


def test_missing_required_variables(clean_env):
    clean_env.delenv("TIXR_SECRET_KEY")
    clean_env.delenv("CLICKHOUSE_HOST")

    with pytest.raises(ConfigError, match="TIXR_SECRET_KEY, CLICKHOUSE_HOST"):
        TixrSyncConfig.load()


def test_aliases_are_accepted(clean_env):
    clean_env.delenv("TIXR_CPK")
    clean_env.setenv("TIXR_PUBLIC_KEY", "alias-key")
    clean_env.setenv("CH_PORT", "9440")

    config = TixrSyncConfig.load()

    assert config.tixr_cpk == "alias-key"
    assert config.clickhouse_port == 9440


@pytest.mark.parametrize(
    "key, value, message",
    [
        ("DRY_RUN", "maybe", "Invalid boolean"),
        ("API_CONCURRENCY", "0", "must be >= 1"),
        ("API_TIMEOUT", "fast", "must be a number"),
        ("PAGE_DELAY_SECONDS", "-1", "must not be negative"),
    ],
)
def test_invalid_values(clean_env, key, value, message):
    clean_env.setenv(key, value)
    with pytest.raises(ConfigError, match=message):
        TixrSyncConfig.load()


def test_signing_prefix_and_base_url_are_normalized(clean_env):
    clean_env.setenv("TIXR_SIGNING_PREFIX", "v2/")
    clean_env.setenv("TIXR_BASE_URL", "https://studio.tixr.com/")

    config = TixrSyncConfig.load()

    assert config.tixr_signing_prefix == "/v2"
    assert config.tixr_base_url == "https://studio.tixr.com"


def test_webhook_settings(clean_env):
    clean_env.setenv("WEBHOOK_SECRET", "hook")
    clean_env.setenv("ALLOWED_IPS", " 10.0.0.1, ,192.168.1.5 ")

    config = TixrSyncConfig.load()

    assert config.webhook_secret == "hook"
    assert config.allowed_ips == ("10.0.0.1", "192.168.1.5")
    assert config.webhook_insecure is False


def test_env_file_is_read(clean_env, tmp_path):
    env_file = tmp_path / ".env.tixr"
    env_file.write_text("TIXR_GROUP_ID=999\nDRY_RUN=yes\n", encoding="utf-8")
    # Pin the keys so monkeypatch restores what load_dotenv overwrites.
    clean_env.setenv("DRY_RUN", "false")

    config = TixrSyncConfig.load(str(env_file))

    assert config.tixr_group_id == "999"
    assert config.dry_run is True


def test_missing_env_file_is_not_an_error(clean_env, tmp_path):
    config = TixrSyncConfig.load(str(tmp_path / "absent.env"))
    assert config.tixr_group_id == "77"
