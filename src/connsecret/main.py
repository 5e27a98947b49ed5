"""Main entry point for the connection secret operator.

Startup order:
1. Load and validate configuration (exit 1 on error)
2. Configure logging, with credential redaction on the handler
3. Load Kubernetes client configuration (in-cluster, then kubeconfig)
4. Wire cache, registry, reconciler and controller; run until signalled
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime
from typing import Any

from kubernetes import client
from kubernetes import config as kube_config
from kubernetes.config.config_exception import ConfigException

from .builder import CredentialReader
from .config import Config, ConfigurationError
from .controller import Controller
from .fanout import build_registry
from .garbage import GarbageCollector
from .indexer import ResourceCache
from .projects import AtlasProjectService, ProjectResolver
from .reconciler import ConnectionSecretReconciler
from .resolver import PairResolver
from .security import CredentialRedactionFilter
from .store import SecretStore
from .upsert import UpsertEngine

# Attributes every LogRecord carries; anything else came in through extra=
_RESERVED_LOG_ATTRS = frozenset(
    (
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    )
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_LOG_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(config: Config | None = None) -> None:
    """Configure logging: JSON to stdout unless disabled, credentials redacted."""
    handler = logging.StreamHandler(sys.stdout)
    if config is None or config.json_logging:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
    handler.addFilter(CredentialRedactionFilter())

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(config.log_level_number if config else logging.INFO)

    # Reduce noise from the Kubernetes client
    logging.getLogger("kubernetes").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def load_kubernetes_config() -> None:
    """In-cluster service account first, local kubeconfig second."""
    try:
        kube_config.load_incluster_config()
    except ConfigException:
        kube_config.load_kube_config()


def build_controller(config: Config, core_api: Any, custom_api: Any) -> Controller:
    """Wire every component of the operator together."""
    cache = ResourceCache()
    registry = build_registry(cache)
    projects = ProjectResolver(cache, AtlasProjectService.from_config(config, core_api))
    store = SecretStore(core_api)
    garbage = GarbageCollector(store, projects)
    reconciler = ConnectionSecretReconciler(
        resolver=PairResolver(cache),
        projects=projects,
        credentials=CredentialReader(core_api),
        store=store,
        upserter=UpsertEngine(store),
        garbage=garbage,
    )
    return Controller(
        config=config,
        core_api=core_api,
        custom_api=custom_api,
        cache=cache,
        registry=registry,
        reconciler=reconciler,
        garbage=garbage,
        projects=projects,
    )


async def main() -> int:
    """Run the operator.

    Returns:
        Exit code (0 for clean shutdown, 1 for configuration or startup failure).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    setup_logging(config)
    logger.info(
        "Starting connection secret operator",
        extra={
            "namespace": config.namespace or "*",
            "crd_group": config.crd_group,
            "crd_version": config.crd_version,
            "remote_lookup": config.remote_lookup_enabled,
        },
    )

    try:
        load_kubernetes_config()
        controller = build_controller(config, client.CoreV1Api(), client.CustomObjectsApi())
    except Exception as e:
        logger.error(
            "Failed to initialize controller",
            extra={"error": str(e), "error_type": type(e).__name__},
        )
        return 1

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        controller.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        await controller.run()
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1

    logger.info("Operator stopped")
    return 0


def run() -> None:
    """Entry point for the operator CLI."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
