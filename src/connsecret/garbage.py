"""Deletion of connection secrets that should no longer exist.

Every deletion path ends in delete_connection_secret(), which treats an
already-absent secret as success.

Paths:
    pair loss       - the pair broke, expired or left scope
    orphan reaping  - the deployment is gone from its project entirely
    stale username  - the user was renamed; old secrets keep the old name
    scope sweep     - the user's scope shrank
"""

from __future__ import annotations

import logging

from .identifiers import (
    CLUSTER_LABEL_KEY,
    ResourceIdentifierSet,
    create_k8s_format,
    normalize_identifier,
    project_label_selector,
)
from .models import AtlasDatabaseUser, AtlasResource
from .projects import ProjectResolver
from .store import SecretStore
from .validity import in_scope

logger = logging.getLogger(__name__)

DELETED_EVENT_REASON = "Deleted"


def delete_connection_secret(
    store: SecretStore,
    namespace: str,
    name: str,
    involved: dict[str, str] | None = None,
) -> bool:
    """Delete one connection secret by name.

    Returns:
        True if a secret was removed, False if it was already absent.
    """
    deleted = store.delete(namespace, name)
    if deleted:
        logger.info("Connection secret deleted", extra={"secret": name, "namespace": namespace})
        store.emit_event(
            namespace,
            involved or {"apiVersion": "v1", "kind": "Secret", "name": name},
            DELETED_EVENT_REASON,
            f"Connection Secret was deleted: {name}",
        )
    else:
        logger.debug(
            "Connection secret already absent", extra={"secret": name, "namespace": namespace}
        )
    return deleted


class GarbageCollector:
    """Finds and deletes connection secrets that no longer have a valid pair."""

    def __init__(self, store: SecretStore, projects: ProjectResolver) -> None:
        self._store = store
        self._projects = projects

    def delete_for_pair(
        self,
        namespace: str,
        ids: ResourceIdentifierSet,
        resource: AtlasResource | None = None,
    ) -> str | None:
        """Delete the secret addressed by a request.

        The project name is resolved first so the deterministic name can be
        recomputed.

        Returns:
            The deleted secret name, or None if nothing was there.

        Raises:
            ProjectLookupError: If the project name cannot be resolved.
        """
        project_name = self._projects.project_name(ids, resource)
        name = create_k8s_format(project_name, ids.cluster_name, ids.database_username)
        if delete_connection_secret(self._store, namespace, name):
            return name
        return None

    def reap_orphans(
        self,
        namespace: str,
        project_id: str,
        deployment_names: list[str] | None = None,
    ) -> list[str]:
        """Delete secrets whose cluster no longer exists in the project.

        Args:
            namespace: Namespace to sweep.
            project_id: Project whose secrets are considered.
            deployment_names: Authoritative cluster names; looked up when None.

        Returns:
            Names of deleted secrets.
        """
        if deployment_names is None:
            deployment_names = self._projects.deployment_names(project_id)
        live = {normalize_identifier(n) for n in deployment_names}

        deleted = []
        for stored in self._store.list(namespace, project_label_selector(project_id)):
            cluster = stored.record.labels.get(CLUSTER_LABEL_KEY, "")
            if normalize_identifier(cluster) in live:
                continue
            if delete_connection_secret(self._store, namespace, stored.record.name):
                deleted.append(stored.record.name)

        if deleted:
            logger.info(
                "Orphan connection secrets reaped",
                extra={"namespace": namespace, "project_id": project_id, "deleted": deleted},
            )
        return deleted

    def remove_stale_by_username(
        self,
        namespace: str,
        project_id: str,
        stale_username: str,
    ) -> list[str]:
        """Delete a project's secrets still carrying a previous username."""
        deleted = []
        for stored in self._store.list(namespace, project_label_selector(project_id)):
            if stored.record.data.get("username") != stale_username:
                continue
            if delete_connection_secret(self._store, namespace, stored.record.name):
                deleted.append(stored.record.name)
        return deleted

    def remove_out_of_scope(self, user: AtlasDatabaseUser, project_id: str) -> list[str]:
        """Delete a user's secrets for clusters its scope no longer allows."""
        if not user.cluster_scopes():
            return []
        deleted = []
        for stored in self._store.list(user.namespace, project_label_selector(project_id)):
            if stored.record.data.get("username") != user.username:
                continue
            cluster = stored.record.labels.get(CLUSTER_LABEL_KEY, "")
            if in_scope(user, cluster):
                continue
            if delete_connection_secret(self._store, user.namespace, stored.record.name):
                deleted.append(stored.record.name)
        return deleted
