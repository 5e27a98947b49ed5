"""Tests for configuration loading."""

import logging
import os
from unittest.mock import patch

import pytest

from connsecret.config import (
    DEFAULT_ATLAS_DOMAIN,
    DEFAULT_CRD_GROUP,
    DEFAULT_WORKER_COUNT,
    Config,
    ConfigurationError,
)


class TestConfig:
    """Tests for Config class."""

    def test_defaults(self) -> None:
        """Test the default configuration is valid."""
        config = Config()

        assert config.namespace == ""
        assert config.crd_group == DEFAULT_CRD_GROUP
        assert config.worker_count == DEFAULT_WORKER_COUNT
        assert config.atlas_domain == DEFAULT_ATLAS_DOMAIN
        assert config.remote_lookup_enabled is False
        assert config.atlas_credentials_ref is None

    def test_invalid_namespace(self) -> None:
        """Test that an invalid namespace name raises error."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(namespace="Not_Valid")

        assert "WATCH_NAMESPACE" in str(exc_info.value)

    def test_worker_count_bounds(self) -> None:
        """Test that out-of-range worker count raises error."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(worker_count=0)

        assert "WORKER_COUNT" in str(exc_info.value)

    def test_resync_interval_bounds(self) -> None:
        """Test that a too-short resync interval raises error."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(resync_interval_seconds=10)  # Too low

        assert "RESYNC_INTERVAL" in str(exc_info.value)

    def test_backoff_max_below_base(self) -> None:
        """Test that the backoff ceiling must not be below the base."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(retry_backoff_base_seconds=10, retry_backoff_max_seconds=5)

        assert "RETRY_BACKOFF_MAX" in str(exc_info.value)

    def test_all_errors_reported_together(self) -> None:
        """Test that every problem is collected into one error."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(worker_count=100, max_retries=0, log_level="LOUD")

        message = str(exc_info.value)
        assert "WORKER_COUNT" in message
        assert "MAX_RETRIES" in message
        assert "LOG_LEVEL" in message

    def test_credentials_secret_format(self) -> None:
        """Test the API credentials secret must be namespace/name."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(atlas_credentials_secret="just-a-name")

        assert "ATLAS_CREDENTIALS_SECRET" in str(exc_info.value)

    def test_credentials_ref(self) -> None:
        """Test the credentials secret reference is split and enables remote lookup."""
        config = Config(atlas_credentials_secret="operator/atlas-api-key")

        assert config.remote_lookup_enabled is True
        assert config.atlas_credentials_ref == ("operator", "atlas-api-key")

    def test_atlas_domain_must_be_url(self) -> None:
        """Test that ATLAS_DOMAIN must be an http(s) URL."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(atlas_domain="cloud.mongodb.com")

        assert "ATLAS_DOMAIN" in str(exc_info.value)

    def test_log_level_number(self) -> None:
        """Test the numeric log level."""
        assert Config(log_level="DEBUG").log_level_number == logging.DEBUG

    def test_from_env(self) -> None:
        """Test loading configuration from environment."""
        env = {
            "WATCH_NAMESPACE": "apps",
            "WORKER_COUNT": "8",
            "RESYNC_INTERVAL": "120",
            "ATLAS_CREDENTIALS_SECRET": "operator/atlas-api-key",
            "ENABLE_JSON_LOGGING": "false",
            "LOG_LEVEL": "debug",
        }

        with patch.dict(os.environ, env, clear=True):
            config = Config.from_env()

        assert config.namespace == "apps"
        assert config.worker_count == 8
        assert config.resync_interval_seconds == 120
        assert config.atlas_credentials_ref == ("operator", "atlas-api-key")
        assert config.json_logging is False
        assert config.log_level == "DEBUG"

    def test_from_env_non_integer(self) -> None:
        """Test that a non-integer value raises a readable error."""
        with patch.dict(os.environ, {"WORKER_COUNT": "many"}, clear=True):
            with pytest.raises(ConfigurationError) as exc_info:
                Config.from_env()

        assert "WORKER_COUNT must be an integer" in str(exc_info.value)
