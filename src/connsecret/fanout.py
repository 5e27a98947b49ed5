"""Watch fan-out: which pairs must be re-evaluated after a change.

A change to a deployment, user or project becomes one reconcile request per
matching (deployment, user) pair, bounded by the user's cluster scopes. Each
request is addressed in the internal encoding and placed in the user's
namespace. Secret events map one-to-one onto legacy-encoded requests.

The registry mapping kinds to their projection is built once at startup and
handed to the controller; nothing here is global.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from .identifiers import create_internal_format
from .indexer import ResourceCache
from .models import (
    DATABASE_USER_KIND,
    DEPLOYMENT_KIND,
    PROJECT_KIND,
    AtlasDatabaseUser,
    AtlasDeployment,
    AtlasProject,
    AtlasResource,
)
from .validity import in_scope

logger = logging.getLogger(__name__)

# Watch event types as delivered by kubernetes.watch.Watch
EVENT_ADDED = "ADDED"
EVENT_MODIFIED = "MODIFIED"
EVENT_DELETED = "DELETED"


@dataclass(frozen=True)
class ReconcileRequest:
    """One unit of work: a namespace and an encoded name."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


Projector = Callable[[ResourceCache, AtlasResource], set[ReconcileRequest]]


def should_trigger(event_type: str, old: AtlasResource | None, new: AtlasResource | None) -> bool:
    """Trigger predicate for watched custom resources.

    Create and delete always trigger. An update triggers when the generation
    changed or the resource just became ready.
    """
    if event_type in (EVENT_ADDED, EVENT_DELETED):
        return True
    if old is None or new is None:
        return True
    if old.metadata.generation != new.metadata.generation:
        return True
    return not old.is_ready and new.is_ready


def pair_request(project_id: str, deployment: AtlasDeployment, user: AtlasDatabaseUser) -> ReconcileRequest:
    return ReconcileRequest(
        namespace=user.namespace,
        name=create_internal_format(project_id, deployment.deployment_name, user.username),
    )


def _pairs(
    project_id: str,
    deployments: Iterable[AtlasDeployment],
    users: Iterable[AtlasDatabaseUser],
) -> set[ReconcileRequest]:
    users = list(users)
    requests = set()
    for deployment in deployments:
        if not deployment.deployment_name:
            continue
        for user in users:
            if user.username and in_scope(user, deployment.deployment_name):
                requests.add(pair_request(project_id, deployment, user))
    return requests


def fan_out_deployment(cache: ResourceCache, deployment: AtlasResource) -> set[ReconcileRequest]:
    """One request per user of the deployment's project whose scope allows it."""
    if not isinstance(deployment, AtlasDeployment):
        raise TypeError(f"expected {DEPLOYMENT_KIND}, got {type(deployment).__name__}")
    project_id = cache.project_id_for(deployment)
    if not project_id:
        return set()
    return _pairs(project_id, [deployment], cache.users_for_project(project_id))


def fan_out_user(cache: ResourceCache, user: AtlasResource) -> set[ReconcileRequest]:
    """One request per deployment of the user's project within its scope."""
    if not isinstance(user, AtlasDatabaseUser):
        raise TypeError(f"expected {DATABASE_USER_KIND}, got {type(user).__name__}")
    project_id = cache.project_id_for(user)
    if not project_id:
        return set()
    return _pairs(project_id, cache.deployments_for_project(project_id), [user])


def fan_out_project(cache: ResourceCache, project: AtlasResource) -> set[ReconcileRequest]:
    """Every pair of a project, e.g. once the project receives its ID."""
    if not isinstance(project, AtlasProject):
        raise TypeError(f"expected {PROJECT_KIND}, got {type(project).__name__}")
    project_id = project.project_id
    if not project_id:
        return set()
    return _pairs(
        project_id, cache.deployments_for_project(project_id), cache.users_for_project(project_id)
    )


def fan_out_secret(namespace: str, name: str) -> set[ReconcileRequest]:
    """A connection secret event re-evaluates that secret only."""
    return {ReconcileRequest(namespace=namespace, name=name)}


class WatchRegistry:
    """Kinds the controller watches and how each projects onto requests."""

    def __init__(self, cache: ResourceCache) -> None:
        self._cache = cache
        self._projectors: dict[str, Projector] = {}

    def register(self, kind: str, projector: Projector) -> None:
        if kind in self._projectors:
            raise ValueError(f"kind {kind!r} is already registered")
        self._projectors[kind] = projector

    @property
    def kinds(self) -> list[str]:
        return list(self._projectors)

    def fan_out(
        self,
        kind: str,
        event_type: str,
        old: AtlasResource | None,
        new: AtlasResource | None,
    ) -> set[ReconcileRequest]:
        """Requests triggered by one watch event.

        Both the previous and current versions are projected, so a pair that
        dropped out (scope shrank, username changed) is reconciled into a
        delete.
        """
        projector = self._projectors.get(kind)
        if projector is None:
            raise KeyError(f"kind {kind!r} is not registered")
        if not should_trigger(event_type, old, new):
            return set()

        requests: set[ReconcileRequest] = set()
        for resource in (old, new):
            if resource is not None:
                requests |= projector(self._cache, resource)

        if requests:
            logger.debug(
                "Fan-out",
                extra={"kind": kind, "event": event_type, "requests": len(requests)},
            )
        return requests

    def all_requests(self) -> set[ReconcileRequest]:
        """Every pair currently known to the cache (used by resync)."""
        requests: set[ReconcileRequest] = set()
        for project_id in self._cache.project_ids():
            requests |= _pairs(
                project_id,
                self._cache.deployments_for_project(project_id),
                self._cache.users_for_project(project_id),
            )
        return requests


def build_registry(cache: ResourceCache) -> WatchRegistry:
    """The registry of every kind the controller watches."""
    registry = WatchRegistry(cache)
    registry.register(DEPLOYMENT_KIND, fan_out_deployment)
    registry.register(DATABASE_USER_KIND, fan_out_user)
    registry.register(PROJECT_KIND, fan_out_project)
    return registry
