"""One reconcile unit: request in, secret created/updated/deleted out.

Steps, all synchronous and retried as a whole:
1. Decode the request name (internal or legacy encoding)
2. Resolve the deployment/user pair through the secondary indexes
3. Evaluate the validity gate (expiration, scope, readiness)
4. Delete the secret, or build it and upsert it

Every path ends in a ReconcileResult whose Outcome tells the controller
whether and when to requeue. No exception escapes reconcile().
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum

from kubernetes.client.rest import ApiException

from .builder import CredentialReadError, CredentialReader, build_secret
from .fanout import ReconcileRequest
from .garbage import GarbageCollector
from .identifiers import (
    IdentifierError,
    InternalRequest,
    LegacyRequest,
    ResourceIdentifierSet,
    classify_request,
    decode_legacy,
)
from .models import AtlasDatabaseUser, AtlasDeployment
from .projects import ProjectLookupError, ProjectResolver
from .provenance import get_provenance_logger
from .resolver import (
    AmbiguousPair,
    DeploymentMissing,
    NothingToResolve,
    PairResolved,
    PairResolver,
    ResourcePair,
    UserMissing,
)
from .store import SecretStore
from .upsert import UpsertAction, UpsertConflictError, UpsertEngine
from .validity import Expired, InvalidExpiration, NotReady, OutOfScope, Valid, evaluate

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    """Reconcile outcomes and their requeue semantics."""

    UPSERTED = "Upserted"  # steady, no requeue
    DELETED = "Deleted"  # steady, no requeue
    IGNORED = "Ignored"  # nothing to do, no requeue
    IN_PROGRESS = "InProgress"  # requeue after a fixed delay
    TERMINATED = "Terminated"  # permanent error, no requeue
    RETRY = "Retry"  # transient error, requeue with backoff


@dataclass
class ReconcileResult:
    """Result of reconciling one request."""

    request: ReconcileRequest
    outcome: Outcome
    message: str = ""
    secrets: list[str] = field(default_factory=list)
    error: str | None = None
    error_type: str | None = None
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.outcome not in (Outcome.RETRY, Outcome.TERMINATED)


class ConnectionSecretReconciler:
    """Reconciles a single connection secret request."""

    def __init__(
        self,
        resolver: PairResolver,
        projects: ProjectResolver,
        credentials: CredentialReader,
        store: SecretStore,
        upserter: UpsertEngine,
        garbage: GarbageCollector,
    ) -> None:
        self._resolver = resolver
        self._projects = projects
        self._credentials = credentials
        self._store = store
        self._upserter = upserter
        self._garbage = garbage

    def reconcile(self, request: ReconcileRequest) -> ReconcileResult:
        """Reconcile one request and log its provenance record."""
        started = time.monotonic()
        try:
            result = self._reconcile(request)
        except (CredentialReadError, ProjectLookupError, UpsertConflictError, ApiException) as e:
            logger.warning(
                "Reconcile failed, will retry",
                extra={"request": str(request), "error": str(e), "error_type": type(e).__name__},
            )
            result = ReconcileResult(
                request=request,
                outcome=Outcome.RETRY,
                message=str(e),
                error=str(e),
                error_type=type(e).__name__,
            )
        except Exception as e:
            logger.exception("Unexpected reconcile error", extra={"request": str(request)})
            result = ReconcileResult(
                request=request,
                outcome=Outcome.RETRY,
                message=str(e),
                error=str(e),
                error_type=type(e).__name__,
            )

        result.duration_seconds = time.monotonic() - started
        get_provenance_logger().log_reconcile(result)
        return result

    def _reconcile(self, request: ReconcileRequest) -> ReconcileResult:
        try:
            identity = classify_request(request.namespace, request.name)
        except IdentifierError as e:
            return self._terminated(request, e)

        match identity:
            case InternalRequest(ids=ids):
                pass
            case LegacyRequest(namespace=namespace, name=name):
                stored = self._store.get(namespace, name)
                if stored is None:
                    return ReconcileResult(request, Outcome.IGNORED, "secret no longer exists")
                try:
                    ids = decode_legacy(stored.record.name, stored.record.labels)
                except IdentifierError as e:
                    return self._terminated(request, e)

        resolved = self._resolver.resolve(ids, request.namespace)
        match resolved:
            case NothingToResolve():
                return ReconcileResult(request, Outcome.IGNORED, "neither side of the pair exists")
            case DeploymentMissing(pair=pair) | UserMissing(pair=pair):
                return self._delete(request, ids, pair, type(resolved).__name__)
            case AmbiguousPair(kind=kind, count=count):
                message = f"found {count} {kind} resources for {ids.internal_name()}"
                logger.error(
                    "Ambiguous pair", extra={"request": str(request), "kind": kind, "count": count}
                )
                return ReconcileResult(
                    request, Outcome.TERMINATED, message, error=message, error_type="AmbiguousPair"
                )
            case PairResolved(pair=pair):
                return self._reconcile_pair(request, ids, pair)

        raise AssertionError(f"unhandled resolve result: {resolved!r}")

    def _reconcile_pair(
        self, request: ReconcileRequest, ids: ResourceIdentifierSet, pair: ResourcePair
    ) -> ReconcileResult:
        deployment = pair.deployment
        user = pair.user
        if deployment is None or user is None:
            raise TypeError(f"resolved pair is incomplete: {pair!r}")

        verdict = evaluate(deployment, user)
        match verdict:
            case Expired(delete_after=delete_after):
                return self._delete(request, ids, pair, f"user expired at {delete_after.isoformat()}")
            case OutOfScope(deployment_name=name):
                return self._delete(request, ids, pair, f"deployment {name} is out of user scope")
            case InvalidExpiration(value=value, error=error):
                message = f"invalid deleteAfterDate {value!r}: {error}"
                return ReconcileResult(
                    request,
                    Outcome.TERMINATED,
                    message,
                    error=message,
                    error_type="InvalidExpiration",
                )
            case NotReady():
                return ReconcileResult(request, Outcome.IN_PROGRESS, verdict.message)
            case Valid():
                return self._ensure(request, ids, deployment, user)

        raise AssertionError(f"unhandled verdict: {verdict!r}")

    def _ensure(
        self,
        request: ReconcileRequest,
        ids: ResourceIdentifierSet,
        deployment: AtlasDeployment,
        user: AtlasDatabaseUser,
    ) -> ReconcileResult:
        ids = ids.with_project_name(self._projects.project_name(ids, deployment))
        password = self._credentials.read_password(user)
        record = build_secret(ids, deployment, user, password)
        action = self._upserter.upsert(record)

        touched = [record.name]
        project_id = ids.project_id
        previous_username = user.status.username
        if previous_username and previous_username != user.username:
            touched += self._garbage.remove_stale_by_username(
                user.namespace, project_id, previous_username
            )
        touched += self._garbage.remove_out_of_scope(user, project_id)
        if action is not UpsertAction.UNCHANGED:
            self._upserter.announce(record, touched)

        return ReconcileResult(
            request, Outcome.UPSERTED, f"secret {action.value.lower()}", secrets=touched
        )

    def _delete(
        self,
        request: ReconcileRequest,
        ids: ResourceIdentifierSet,
        pair: ResourcePair,
        reason: str,
    ) -> ReconcileResult:
        deleted = self._garbage.delete_for_pair(
            request.namespace, ids, pair.deployment or pair.user
        )
        return ReconcileResult(
            request,
            Outcome.DELETED,
            reason,
            secrets=[deleted] if deleted else [],
        )

    @staticmethod
    def _terminated(request: ReconcileRequest, error: Exception) -> ReconcileResult:
        logger.error(
            "Cannot decode request",
            extra={"request": str(request), "error": str(error), "error_type": type(error).__name__},
        )
        return ReconcileResult(
            request,
            Outcome.TERMINATED,
            str(error),
            error=str(error),
            error_type=type(error).__name__,
        )
