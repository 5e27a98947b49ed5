"""Tests for pair resolution."""

from __future__ import annotations

from connsecret.identifiers import ResourceIdentifierSet
from connsecret.indexer import ResourceCache
from connsecret.models import AtlasDatabaseUser, AtlasDeployment
from connsecret.resolver import (
    AmbiguousPair,
    DeploymentMissing,
    NothingToResolve,
    PairResolved,
    PairResolver,
    UserMissing,
)
from kube_mock import make_deployment, make_user

IDS = ResourceIdentifierSet("pid1", "cluster1", "admin")


def add_deployment(cache: ResourceCache, **kwargs) -> None:
    kwargs.setdefault("external_project_id", "pid1")
    cache.upsert_deployment(AtlasDeployment.model_validate(make_deployment(**kwargs)))


def add_user(cache: ResourceCache, **kwargs) -> None:
    kwargs.setdefault("external_project_id", "pid1")
    cache.upsert_user(AtlasDatabaseUser.model_validate(make_user(**kwargs)))


class TestPairResolver:
    """Tests for outcome classification and its precedence."""

    def test_nothing_to_resolve(self) -> None:
        """Test both sides missing is safe to ignore."""
        assert PairResolver(ResourceCache()).resolve(IDS, "default") == NothingToResolve()

    def test_deployment_missing(self) -> None:
        """Test only the user existing reports the deployment missing."""
        cache = ResourceCache()
        add_user(cache)

        result = PairResolver(cache).resolve(IDS, "default")

        assert isinstance(result, DeploymentMissing)
        assert result.pair.deployment is None
        assert result.pair.user is not None
        assert result.pair.project_id == "pid1"

    def test_user_missing(self) -> None:
        """Test only the deployment existing reports the user missing."""
        cache = ResourceCache()
        add_deployment(cache)

        result = PairResolver(cache).resolve(IDS, "default")

        assert isinstance(result, UserMissing)
        assert result.pair.deployment is not None

    def test_user_in_other_namespace_is_missing(self) -> None:
        """Test a user outside the request namespace does not count."""
        cache = ResourceCache()
        add_deployment(cache)
        add_user(cache, namespace="other")

        assert isinstance(PairResolver(cache).resolve(IDS, "default"), UserMissing)

    def test_resolved_across_namespaces(self) -> None:
        """Test a deployment in another namespace pairs with the user."""
        cache = ResourceCache()
        add_deployment(cache, namespace="infra")
        add_user(cache, namespace="apps")

        result = PairResolver(cache).resolve(IDS, "apps")

        assert isinstance(result, PairResolved)
        assert result.pair.deployment.namespace == "infra"
        assert result.pair.user.namespace == "apps"

    def test_ambiguous_user(self) -> None:
        """Test two users with the same key are ambiguous, never picked."""
        cache = ResourceCache()
        add_deployment(cache)
        add_user(cache, name="first")
        add_user(cache, name="second")

        assert PairResolver(cache).resolve(IDS, "default") == AmbiguousPair(
            kind="AtlasDatabaseUser", count=2
        )

    def test_ambiguous_deployment(self) -> None:
        """Test two deployments with the same key are ambiguous."""
        cache = ResourceCache()
        add_deployment(cache, namespace="a")
        add_deployment(cache, namespace="b")
        add_user(cache)

        assert PairResolver(cache).resolve(IDS, "default") == AmbiguousPair(
            kind="AtlasDeployment", count=2
        )

    def test_missing_side_takes_precedence_over_ambiguity(self) -> None:
        """Test duplicate users with no deployment report the deployment missing."""
        cache = ResourceCache()
        add_user(cache, name="first")
        add_user(cache, name="second")

        result = PairResolver(cache).resolve(IDS, "default")

        assert isinstance(result, DeploymentMissing)
        assert result.pair.user is None
