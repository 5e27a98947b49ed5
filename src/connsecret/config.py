"""Configuration management with validation.

All settings come from environment variables and are validated at load
time, so a misconfigured operator fails before it touches any secret.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_WORKER_COUNT = 4
MIN_WORKER_COUNT = 1
MAX_WORKER_COUNT = 32

DEFAULT_RESYNC_INTERVAL_SECONDS = 300
MIN_RESYNC_INTERVAL_SECONDS = 30
MAX_RESYNC_INTERVAL_SECONDS = 3600

DEFAULT_NOT_READY_REQUEUE_SECONDS = 10
MAX_NOT_READY_REQUEUE_SECONDS = 600

DEFAULT_MAX_RETRIES = 5
MAX_MAX_RETRIES = 20

DEFAULT_RETRY_BACKOFF_BASE_SECONDS = 1
DEFAULT_RETRY_BACKOFF_MAX_SECONDS = 300

DEFAULT_ATLAS_DOMAIN = "https://cloud.mongodb.com/"
DEFAULT_ATLAS_REQUEST_TIMEOUT_SECONDS = 30
MAX_ATLAS_REQUEST_TIMEOUT_SECONDS = 300

DEFAULT_CRD_GROUP = "atlas.mongodb.com"
DEFAULT_CRD_VERSION = "v1"

# Conflicting writes on the same secret before an upsert gives up for this round
UPSERT_CONFLICT_RETRIES = 3

# Input validation patterns
VALID_NAMESPACE_PATTERN = r"^[a-z0-9]([-a-z0-9]{0,61}[a-z0-9])?$"
VALID_SECRET_REF_PATTERN = r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?/[a-z0-9]([-.a-z0-9]*[a-z0-9])?$"
VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class Config:
    """Operator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Watch scope ("" watches every namespace)
    namespace: str = ""

    # Custom resource coordinates
    crd_group: str = DEFAULT_CRD_GROUP
    crd_version: str = DEFAULT_CRD_VERSION

    # Concurrency and timing
    worker_count: int = DEFAULT_WORKER_COUNT
    resync_interval_seconds: int = DEFAULT_RESYNC_INTERVAL_SECONDS
    not_ready_requeue_seconds: int = DEFAULT_NOT_READY_REQUEUE_SECONDS

    # Retry policy for transient failures
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_backoff_base_seconds: int = DEFAULT_RETRY_BACKOFF_BASE_SECONDS
    retry_backoff_max_seconds: int = DEFAULT_RETRY_BACKOFF_MAX_SECONDS

    # Remote project service (disabled when no credentials secret is given)
    atlas_domain: str = DEFAULT_ATLAS_DOMAIN
    atlas_credentials_secret: str | None = None
    atlas_request_timeout_seconds: int = DEFAULT_ATLAS_REQUEST_TIMEOUT_SECONDS

    # Logging
    json_logging: bool = True
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if self.namespace and not re.match(VALID_NAMESPACE_PATTERN, self.namespace):
            errors.append(f"WATCH_NAMESPACE must be a valid namespace name: {self.namespace}")

        if not self.crd_group:
            errors.append("CRD_GROUP is required")
        if not self.crd_version:
            errors.append("CRD_VERSION is required")

        if not (MIN_WORKER_COUNT <= self.worker_count <= MAX_WORKER_COUNT):
            errors.append(
                f"WORKER_COUNT must be between {MIN_WORKER_COUNT} and {MAX_WORKER_COUNT}"
            )

        if not (
            MIN_RESYNC_INTERVAL_SECONDS
            <= self.resync_interval_seconds
            <= MAX_RESYNC_INTERVAL_SECONDS
        ):
            errors.append(
                f"RESYNC_INTERVAL must be between {MIN_RESYNC_INTERVAL_SECONDS} "
                f"and {MAX_RESYNC_INTERVAL_SECONDS} seconds"
            )

        if not (1 <= self.not_ready_requeue_seconds <= MAX_NOT_READY_REQUEUE_SECONDS):
            errors.append(
                f"NOT_READY_REQUEUE must be between 1 and {MAX_NOT_READY_REQUEUE_SECONDS} seconds"
            )

        if not (1 <= self.max_retries <= MAX_MAX_RETRIES):
            errors.append(f"MAX_RETRIES must be between 1 and {MAX_MAX_RETRIES}")

        if self.retry_backoff_base_seconds < 1:
            errors.append("RETRY_BACKOFF_BASE must be at least 1 second")
        elif self.retry_backoff_max_seconds < self.retry_backoff_base_seconds:
            errors.append("RETRY_BACKOFF_MAX must not be lower than RETRY_BACKOFF_BASE")

        if not self.atlas_domain.startswith(("https://", "http://")):
            errors.append(f"ATLAS_DOMAIN must be an http(s) URL: {self.atlas_domain}")

        if self.atlas_credentials_secret and not re.match(
            VALID_SECRET_REF_PATTERN, self.atlas_credentials_secret
        ):
            errors.append(
                "ATLAS_CREDENTIALS_SECRET must be in <namespace>/<name> form: "
                f"{self.atlas_credentials_secret}"
            )

        if not (1 <= self.atlas_request_timeout_seconds <= MAX_ATLAS_REQUEST_TIMEOUT_SECONDS):
            errors.append(
                f"ATLAS_REQUEST_TIMEOUT must be between 1 and "
                f"{MAX_ATLAS_REQUEST_TIMEOUT_SECONDS} seconds"
            )

        if self.log_level not in VALID_LOG_LEVELS:
            errors.append(f"LOG_LEVEL must be one of {list(VALID_LOG_LEVELS)}: {self.log_level}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def remote_lookup_enabled(self) -> bool:
        """Whether project names and deployment lists may be fetched remotely."""
        return bool(self.atlas_credentials_secret)

    @property
    def atlas_credentials_ref(self) -> tuple[str, str] | None:
        """Split ATLAS_CREDENTIALS_SECRET into (namespace, name)."""
        if not self.atlas_credentials_secret:
            return None
        namespace, name = self.atlas_credentials_secret.split("/", 1)
        return namespace, name

    @property
    def log_level_number(self) -> int:
        """Numeric logging level for the configured LOG_LEVEL."""
        return logging.getLevelName(self.log_level)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            WATCH_NAMESPACE: Namespace to watch (default: all namespaces)
            CRD_GROUP: API group of the custom resources (default: atlas.mongodb.com)
            CRD_VERSION: API version of the custom resources (default: v1)
            WORKER_COUNT: Concurrent reconcile workers (default: 4)
            RESYNC_INTERVAL: Seconds between full resyncs and orphan sweeps (default: 300)
            NOT_READY_REQUEUE: Seconds before re-checking a not-ready pair (default: 10)
            MAX_RETRIES: Consecutive transient failures before a request is dropped (default: 5)
            RETRY_BACKOFF_BASE: Base backoff in seconds (default: 1)
            RETRY_BACKOFF_MAX: Backoff ceiling in seconds (default: 300)
            ATLAS_DOMAIN: Base URL of the project service (default: https://cloud.mongodb.com/)
            ATLAS_CREDENTIALS_SECRET: <namespace>/<name> of the API key secret (default: unset)
            ATLAS_REQUEST_TIMEOUT: Timeout for remote lookups in seconds (default: 30)
            ENABLE_JSON_LOGGING: Emit JSON logs (default: true)
            LOG_LEVEL: Root log level (default: INFO)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        return cls(
            namespace=os.environ.get("WATCH_NAMESPACE", ""),
            crd_group=os.environ.get("CRD_GROUP", DEFAULT_CRD_GROUP),
            crd_version=os.environ.get("CRD_VERSION", DEFAULT_CRD_VERSION),
            worker_count=get_int("WORKER_COUNT", DEFAULT_WORKER_COUNT),
            resync_interval_seconds=get_int("RESYNC_INTERVAL", DEFAULT_RESYNC_INTERVAL_SECONDS),
            not_ready_requeue_seconds=get_int(
                "NOT_READY_REQUEUE", DEFAULT_NOT_READY_REQUEUE_SECONDS
            ),
            max_retries=get_int("MAX_RETRIES", DEFAULT_MAX_RETRIES),
            retry_backoff_base_seconds=get_int(
                "RETRY_BACKOFF_BASE", DEFAULT_RETRY_BACKOFF_BASE_SECONDS
            ),
            retry_backoff_max_seconds=get_int(
                "RETRY_BACKOFF_MAX", DEFAULT_RETRY_BACKOFF_MAX_SECONDS
            ),
            atlas_domain=os.environ.get("ATLAS_DOMAIN", DEFAULT_ATLAS_DOMAIN),
            atlas_credentials_secret=os.environ.get("ATLAS_CREDENTIALS_SECRET") or None,
            atlas_request_timeout_seconds=get_int(
                "ATLAS_REQUEST_TIMEOUT", DEFAULT_ATLAS_REQUEST_TIMEOUT_SECONDS
            ),
            json_logging=get_bool("ENABLE_JSON_LOGGING", True),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        )
