"""Tests for the environment driven ClientConfig."""

from pathlib import Path

import pytest

from fotolokashen_sync.config import (
    DEFAULT_BACKEND_URL,
    DEFAULT_CLIENT_ID,
    DEFAULT_REDIRECT_URI,
    ClientConfig,
)


def test_empty_environment_uses_defaults() -> None:
    config = ClientConfig.from_env({})

    assert config.backend_url == DEFAULT_BACKEND_URL
    assert config.client_id == DEFAULT_CLIENT_ID
    assert config.redirect_uri == DEFAULT_REDIRECT_URI
    assert config.scopes == "read write"
    assert config.refresh_lead_seconds == 300.0
    assert config.max_concurrent_uploads == 3
    assert config.max_retries == 3
    assert config.offline_mode is True
    assert config.debug_logging is False
    assert config.compression.target_bytes == 1_500_000
    assert config.compression.max_dimension_pixels == 3000


def test_environment_overrides(tmp_path: Path) -> None:
    config = ClientConfig.from_env(
        {
            "FOTOLOKASHEN_BACKEND_URL": "https://staging.example/",
            "FOTOLOKASHEN_OAUTH_CLIENT_ID": "fotolokashen-cli",
            "FOTOLOKASHEN_STORAGE_DIR": str(tmp_path),
            "FOTOLOKASHEN_MAX_CONCURRENT_UPLOADS": "5",
            "FOTOLOKASHEN_REFRESH_LEAD_SECONDS": "60",
            "FOTOLOKASHEN_COMPRESSION_QUALITY_FLOOR": "0.5",
            "FOTOLOKASHEN_UPLOAD_TARGET_BYTES": "500000",
            "FOTOLOKASHEN_OFFLINE_MODE": "off",
            "FOTOLOKASHEN_DEBUG_LOGGING": "yes",
        }
    )

    assert config.backend_url == "https://staging.example"
    assert config.client_id == "fotolokashen-cli"
    assert config.auth_dir == tmp_path / "auth"
    assert config.queue_dir == tmp_path / "queue"
    assert config.max_concurrent_uploads == 5
    assert config.refresh_lead_seconds == 60.0
    assert config.compression.quality_floor == 0.5
    assert config.compression.target_bytes == 500_000
    assert config.offline_mode is False
    assert config.debug_logging is True


def test_bad_number_names_the_variable() -> None:
    with pytest.raises(ValueError, match="FOTOLOKASHEN_MAX_RETRIES"):
        ClientConfig.from_env({"FOTOLOKASHEN_MAX_RETRIES": "three"})


def test_inconsistent_compression_settings_rejected() -> None:
    with pytest.raises(ValueError):
        ClientConfig.from_env({"FOTOLOKASHEN_COMPRESSION_QUALITY_FLOOR": "0.95"})


def test_describe_hides_store_key() -> None:
    config = ClientConfig.from_env({"FOTOLOKASHEN_STORE_KEY": "super-secret"})

    summary = config.describe()

    assert summary["store_key"] == "set"
    assert "super-secret" not in repr(config)
    assert "super-secret" not in str(summary)
