"""Create-or-update of connection secrets.

The stored secret is re-read right before every write and replaced with the
read resourceVersion, so concurrent reconciles of the same secret are settled
by the API server's optimistic concurrency. A lost race is retried with a
fresh read, a bounded number of times.

An upsert that finds identical content issues no write and records no event.
"""

from __future__ import annotations

import logging
from enum import Enum

from kubernetes.client.rest import ApiException

from .builder import SecretRecord
from .config import UPSERT_CONFLICT_RETRIES
from .store import HTTP_CONFLICT, SecretStore

logger = logging.getLogger(__name__)

ENSURED_EVENT_REASON = "ConnectionSecretsEnsured"


class UpsertConflictError(Exception):
    """Raised when every upsert attempt lost a write race.

    Transient: the request is retried with backoff.
    """

    pass


class UpsertAction(str, Enum):
    """What an upsert did to the store."""

    CREATED = "Created"
    UPDATED = "Updated"
    UNCHANGED = "Unchanged"


def secret_reference(record: SecretRecord) -> dict[str, str]:
    return {"apiVersion": "v1", "kind": "Secret", "name": record.name}


def _same_content(current: SecretRecord, desired: SecretRecord) -> bool:
    return (
        current.data == desired.data
        and current.labels == desired.labels
        and current.owner == desired.owner
    )


class UpsertEngine:
    """Writes a SecretRecord to the store."""

    def __init__(self, store: SecretStore, max_attempts: int = UPSERT_CONFLICT_RETRIES) -> None:
        self._store = store
        self._max_attempts = max_attempts

    def upsert(self, desired: SecretRecord) -> UpsertAction:
        """Create the secret, or overwrite it in place.

        No write is issued when the stored content already matches.

        Raises:
            UpsertConflictError: If every attempt hit a 409 Conflict.
            ApiException: On any other API failure.
        """
        for attempt in range(1, self._max_attempts + 1):
            current = self._store.get(desired.namespace, desired.name)
            try:
                if current is None:
                    self._store.create(desired)
                    action = UpsertAction.CREATED
                elif _same_content(current.record, desired):
                    action = UpsertAction.UNCHANGED
                else:
                    self._store.replace(desired, current.resource_version)
                    action = UpsertAction.UPDATED
            except ApiException as e:
                if e.status != HTTP_CONFLICT:
                    raise
                logger.info(
                    "Secret write conflict, re-reading",
                    extra={
                        "secret": desired.name,
                        "namespace": desired.namespace,
                        "attempt": attempt,
                        "max_attempts": self._max_attempts,
                    },
                )
                continue

            logger.info(
                "Connection secret ensured",
                extra={
                    "secret": desired.name,
                    "namespace": desired.namespace,
                    "action": action.value,
                },
            )
            return action

        raise UpsertConflictError(
            f"secret {desired.namespace}/{desired.name} kept conflicting "
            f"after {self._max_attempts} attempts"
        )

    def announce(self, record: SecretRecord, secret_names: list[str]) -> None:
        """Record a ConnectionSecretsEnsured event naming every touched secret.

        The event goes on the owning user, or on the secret when it has no owner.
        """
        self._store.emit_event(
            record.namespace,
            record.owner or secret_reference(record),
            ENSURED_EVENT_REASON,
            f"Connection Secrets were created/updated: {', '.join(secret_names)}",
        )
