"""Kubernetes API mock for integration testing.

In-memory implementations of the two Kubernetes client APIs the operator
uses, plus factories for the custom resources it consumes.

Key Features:
- Secrets with resourceVersion optimistic concurrency (409 on stale writes)
- Label selector filtering
- Event recording for assertions
- Failure injection per API method
- A before-write hook to simulate a concurrent writer

Usage:
    from kube_mock import MockCoreV1Api, make_deployment, make_user

    core = MockCoreV1Api()
    core.put_secret("default", "admin-password", {"password": b64("pw1")})
    store = SecretStore(core)

    # ... run the operator code ...

    assert "p-cluster1-admin" in core.secret_names("default")
"""

from .core import MockCoreV1Api, matches_selector, parse_label_selector
from .custom import (
    MockCustomObjectsApi,
    b64,
    make_deployment,
    make_project,
    make_user,
    ready_condition,
    secret_data,
    unb64,
)

__all__ = [
    "MockCoreV1Api",
    "MockCustomObjectsApi",
    "b64",
    "make_deployment",
    "make_project",
    "make_user",
    "matches_selector",
    "parse_label_selector",
    "ready_condition",
    "secret_data",
    "unb64",
]
