"""Resource pair resolution.

Joins a decoded request to its deployment and database user through the
secondary indexes. The outcome is a closed set of variants, checked in strict
precedence:

1. Neither side found       -> NothingToResolve
2. Deployment not found     -> DeploymentMissing
3. User not found           -> UserMissing
4. More than one either side -> AmbiguousPair (never pick one)
5. Exactly one of each      -> PairResolved
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TypeVar

from .identifiers import ResourceIdentifierSet
from .indexer import ResourceCache
from .models import DATABASE_USER_KIND, DEPLOYMENT_KIND, AtlasDatabaseUser, AtlasDeployment


@dataclass(frozen=True)
class ResourcePair:
    """Join result; either side is None when that side is missing."""

    project_id: str
    deployment: AtlasDeployment | None = None
    user: AtlasDatabaseUser | None = None


@dataclass(frozen=True)
class NothingToResolve:
    """Neither side exists; safe to ignore."""


@dataclass(frozen=True)
class DeploymentMissing:
    """The user exists but the deployment does not."""

    pair: ResourcePair


@dataclass(frozen=True)
class UserMissing:
    """The deployment exists but the user does not."""

    pair: ResourcePair


@dataclass(frozen=True)
class AmbiguousPair:
    """More than one resource matched one side of the key."""

    kind: str
    count: int


@dataclass(frozen=True)
class PairResolved:
    """Exactly one deployment and one user."""

    pair: ResourcePair


ResolveResult = NothingToResolve | DeploymentMissing | UserMissing | AmbiguousPair | PairResolved

T = TypeVar("T")


class PairResolver:
    """Looks up both sides of a request in the resource cache."""

    def __init__(self, cache: ResourceCache) -> None:
        self._cache = cache

    def resolve(self, ids: ResourceIdentifierSet, namespace: str) -> ResolveResult:
        """Resolve a request.

        Args:
            ids: Decoded request identifiers.
            namespace: Namespace of the request; users are looked up here only.
        """
        deployments = self._cache.deployments_by_key(ids.project_id, ids.cluster_name)
        users = self._cache.users_by_key(ids.project_id, ids.database_username, namespace)
        return classify_pair(ids.project_id, deployments, users)


def classify_pair(
    project_id: str,
    deployments: list[AtlasDeployment],
    users: list[AtlasDatabaseUser],
) -> ResolveResult:
    """Classify lookup results into a ResolveResult."""
    if not deployments and not users:
        return NothingToResolve()
    if not deployments:
        return DeploymentMissing(ResourcePair(project_id=project_id, user=_first(users)))
    if not users:
        return UserMissing(ResourcePair(project_id=project_id, deployment=_first(deployments)))
    if len(deployments) > 1:
        return AmbiguousPair(kind=DEPLOYMENT_KIND, count=len(deployments))
    if len(users) > 1:
        return AmbiguousPair(kind=DATABASE_USER_KIND, count=len(users))
    return PairResolved(
        ResourcePair(project_id=project_id, deployment=deployments[0], user=users[0])
    )


def _first(items: list[T]) -> T | None:
    # Single-side-missing only needs a representative for the project name lookup
    return items[0] if len(items) == 1 else None
