"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for kube_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from connsecret.builder import CredentialReader  # noqa: E402
from connsecret.garbage import GarbageCollector  # noqa: E402
from connsecret.indexer import ResourceCache  # noqa: E402
from connsecret.models import AtlasDatabaseUser, AtlasDeployment, AtlasProject  # noqa: E402
from connsecret.projects import ProjectResolver  # noqa: E402
from connsecret.reconciler import ConnectionSecretReconciler  # noqa: E402
from connsecret.resolver import PairResolver  # noqa: E402
from connsecret.store import SecretStore  # noqa: E402
from connsecret.upsert import UpsertEngine  # noqa: E402
from kube_mock import MockCoreV1Api, b64, make_project  # noqa: E402


class OperatorHarness:
    """Every operator component wired to an in-memory Core API."""

    def __init__(self, remote=None) -> None:
        self.core = MockCoreV1Api()
        self.cache = ResourceCache()
        self.projects = ProjectResolver(self.cache, remote)
        self.store = SecretStore(self.core)
        self.garbage = GarbageCollector(self.store, self.projects)
        self.reconciler = ConnectionSecretReconciler(
            resolver=PairResolver(self.cache),
            projects=self.projects,
            credentials=CredentialReader(self.core),
            store=self.store,
            upserter=UpsertEngine(self.store),
            garbage=self.garbage,
        )

    def add_project(self, obj: dict) -> AtlasProject:
        project = AtlasProject.model_validate(obj)
        self.cache.upsert_project(project)
        return project

    def add_deployment(self, obj: dict) -> AtlasDeployment:
        deployment = AtlasDeployment.model_validate(obj)
        self.cache.upsert_deployment(deployment)
        return deployment

    def add_user(self, obj: dict, password: str | None = "pw1") -> AtlasDatabaseUser:
        user = AtlasDatabaseUser.model_validate(obj)
        self.cache.upsert_user(user)
        ref = user.spec.password_secret_ref
        if ref is not None and password is not None:
            self.core.put_secret(user.namespace, ref.name, {"password": b64(password)})
        return user


@pytest.fixture
def harness() -> OperatorHarness:
    """Operator components with project P (id pid1) already known."""
    h = OperatorHarness()
    h.add_project(make_project())
    return h
