"""Tests for operator startup helpers."""

from __future__ import annotations

import json
import logging
import os
from unittest.mock import patch

import pytest

from connsecret.config import Config
from connsecret.main import JsonFormatter, main, setup_logging
from connsecret.security import CredentialRedactionFilter


def operator_handlers() -> list[logging.Handler]:
    return [
        h
        for h in logging.getLogger().handlers
        if any(isinstance(f, CredentialRedactionFilter) for f in h.filters)
    ]


class TestJsonFormatter:
    """Tests for structured log output."""

    def test_extra_fields_included(self) -> None:
        """Test fields passed through extra= appear at the top level."""
        record = logging.LogRecord("connsecret", logging.INFO, __file__, 1, "hello %s", ("x",), None)
        record.secret = "p-cluster1-admin"

        payload = json.loads(JsonFormatter().format(record))

        assert payload["message"] == "hello x"
        assert payload["level"] == "INFO"
        assert payload["logger"] == "connsecret"
        assert payload["secret"] == "p-cluster1-admin"
        assert "msg" not in payload
        assert payload["timestamp"].endswith("Z")


class TestSetupLogging:
    """Tests for logging configuration."""

    @pytest.fixture(autouse=True)
    def restore_root(self):
        level = logging.getLogger().level
        yield
        for handler in operator_handlers():
            logging.getLogger().removeHandler(handler)
        logging.getLogger().setLevel(level)

    def test_json_with_redaction(self) -> None:
        """Test the handler formats JSON and redacts credentials."""
        setup_logging(Config(log_level="DEBUG"))

        assert logging.getLogger().level == logging.DEBUG
        handlers = operator_handlers()
        assert len(handlers) == 1
        assert isinstance(handlers[0].formatter, JsonFormatter)

    def test_text_logs(self) -> None:
        """Test JSON logging can be turned off."""
        setup_logging(Config(json_logging=False))
        assert not isinstance(operator_handlers()[0].formatter, JsonFormatter)

    def test_kubernetes_client_quieted(self) -> None:
        """Test client library loggers are raised to WARNING."""
        setup_logging(Config(log_level="DEBUG"))
        assert logging.getLogger("kubernetes").level == logging.WARNING
        assert logging.getLogger("urllib3").level == logging.WARNING


class TestMain:
    """Tests for the async entry point."""

    @pytest.mark.asyncio
    async def test_configuration_error_exits_1(self) -> None:
        """Test invalid configuration returns exit code 1 before touching the cluster."""
        with (
            patch.dict(os.environ, {"WORKER_COUNT": "0"}, clear=True),
            patch("connsecret.main.setup_logging"),
            patch("connsecret.main.load_kubernetes_config") as load,
        ):
            assert await main() == 1

        load.assert_not_called()

    @pytest.mark.asyncio
    async def test_startup_error_exits_1(self) -> None:
        """Test a failure to load cluster credentials returns exit code 1."""
        with (
            patch.dict(os.environ, {}, clear=True),
            patch("connsecret.main.setup_logging"),
            patch(
                "connsecret.main.load_kubernetes_config", side_effect=RuntimeError("no cluster")
            ),
        ):
            assert await main() == 1
