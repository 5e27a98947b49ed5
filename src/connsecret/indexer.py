"""In-memory resource cache with the secondary indexes used for pairing.

The watch loops keep this cache current. Reconcile workers read it from
executor threads, so every access goes through one lock.

Indexes:
    deployments by "<projectID>-<clusterName>"   (all namespaces)
    users       by "<projectID>-<username>"       (per namespace)
    deployments and users by project ID           (fan-out, orphan sweep)

A resource whose project ID cannot be determined yet (local project not seen,
or not created remotely) is cached but not indexed. It is picked up when the
project appears, because every project change re-indexes.

A resync replaces the cache with a fresh list. Watch events applied while
that list is being taken win over it, so a deletion seen mid-relist stays
deleted.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from collections.abc import Iterable
from typing import TypeVar

from .identifiers import deployment_index_key, user_index_key
from .models import (
    DATABASE_USER_KIND,
    DEPLOYMENT_KIND,
    PROJECT_KIND,
    AtlasDatabaseUser,
    AtlasDeployment,
    AtlasProject,
    AtlasResource,
)

logger = logging.getLogger(__name__)

ObjectKey = tuple[str, str]
R = TypeVar("R", bound=AtlasResource)


def object_key(resource: AtlasResource) -> ObjectKey:
    return resource.namespace, resource.name


class ResourceCache:
    """Thread-safe cache of deployments, users and projects."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._deployments: dict[ObjectKey, AtlasDeployment] = {}
        self._users: dict[ObjectKey, AtlasDatabaseUser] = {}
        self._projects: dict[ObjectKey, AtlasProject] = {}

        self._deployments_by_key: dict[str, set[ObjectKey]] = defaultdict(set)
        self._users_by_key: dict[str, set[ObjectKey]] = defaultdict(set)
        self._deployments_by_project: dict[str, set[ObjectKey]] = defaultdict(set)
        self._users_by_project: dict[str, set[ObjectKey]] = defaultdict(set)

        # Objects changed by watch events while a relist is in flight
        self._relist_changes: set[tuple[str, ObjectKey]] | None = None

    # -------------------------------------------------------------------------
    # Project ID resolution
    # -------------------------------------------------------------------------

    def project_id_for(self, resource: AtlasResource) -> str | None:
        """Project ID of a deployment or user.

        An external reference wins; otherwise the referenced local
        AtlasProject must exist and carry a status ID.
        """
        with self._lock:
            external = resource.external_project_id
            if external:
                return external
            ref = resource.project_ref_key()
            if ref is None:
                return None
            project = self._projects.get(ref)
            if project is None:
                return None
            return project.project_id

    def project(self, namespace: str, name: str) -> AtlasProject | None:
        with self._lock:
            return self._projects.get((namespace, name))

    def project_by_id(self, project_id: str) -> AtlasProject | None:
        """Local AtlasProject whose status carries the given ID, if any."""
        with self._lock:
            for project in self._projects.values():
                if project.project_id == project_id:
                    return project
            return None

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def upsert_deployment(self, deployment: AtlasDeployment) -> AtlasDeployment | None:
        """Store a deployment, returning the previous version if there was one."""
        with self._lock:
            key = object_key(deployment)
            self._record_change(DEPLOYMENT_KIND, key)
            previous = self._deployments.get(key)
            self._unindex_deployment(key)
            self._deployments[key] = deployment
            self._index_deployment(key)
            return previous

    def remove_deployment(self, namespace: str, name: str) -> AtlasDeployment | None:
        with self._lock:
            key = (namespace, name)
            self._record_change(DEPLOYMENT_KIND, key)
            self._unindex_deployment(key)
            return self._deployments.pop(key, None)

    def upsert_user(self, user: AtlasDatabaseUser) -> AtlasDatabaseUser | None:
        """Store a user, returning the previous version if there was one."""
        with self._lock:
            key = object_key(user)
            self._record_change(DATABASE_USER_KIND, key)
            previous = self._users.get(key)
            self._unindex_user(key)
            self._users[key] = user
            self._index_user(key)
            return previous

    def remove_user(self, namespace: str, name: str) -> AtlasDatabaseUser | None:
        with self._lock:
            key = (namespace, name)
            self._record_change(DATABASE_USER_KIND, key)
            self._unindex_user(key)
            return self._users.pop(key, None)

    def upsert_project(self, project: AtlasProject) -> AtlasProject | None:
        with self._lock:
            key = object_key(project)
            self._record_change(PROJECT_KIND, key)
            previous = self._projects.get(key)
            self._projects[key] = project
            self._reindex()
            return previous

    def remove_project(self, namespace: str, name: str) -> AtlasProject | None:
        with self._lock:
            key = (namespace, name)
            self._record_change(PROJECT_KIND, key)
            previous = self._projects.pop(key, None)
            self._reindex()
            return previous

    def begin_relist(self) -> None:
        """Start recording changes that a pending replace_all() must keep.

        A list snapshot is older than any watch event applied after this
        call, so those objects keep their cached state (or stay removed).
        """
        with self._lock:
            self._relist_changes = set()

    def end_relist(self) -> None:
        with self._lock:
            self._relist_changes = None

    def replace_all(
        self,
        deployments: Iterable[AtlasDeployment],
        users: Iterable[AtlasDatabaseUser],
        projects: Iterable[AtlasProject],
    ) -> None:
        """Replace the whole cache contents (initial list or resync).

        Objects changed since begin_relist() are taken from the cache
        instead of the given snapshot.
        """
        with self._lock:
            new_deployments = {object_key(d): d for d in deployments}
            new_users = {object_key(u): u for u in users}
            new_projects = {object_key(p): p for p in projects}

            changes = self._relist_changes or set()
            _keep_changed(new_deployments, self._deployments, changes, DEPLOYMENT_KIND)
            _keep_changed(new_users, self._users, changes, DATABASE_USER_KIND)
            _keep_changed(new_projects, self._projects, changes, PROJECT_KIND)
            self._relist_changes = None

            self._deployments = new_deployments
            self._users = new_users
            self._projects = new_projects
            self._reindex()
            logger.debug(
                "Resource cache replaced",
                extra={
                    "deployments": len(self._deployments),
                    "users": len(self._users),
                    "projects": len(self._projects),
                    "kept_from_watch": len(changes),
                },
            )

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def deployments_by_key(self, project_id: str, cluster_name: str) -> list[AtlasDeployment]:
        """Deployments matching project ID and cluster name, across namespaces."""
        with self._lock:
            keys = self._deployments_by_key.get(deployment_index_key(project_id, cluster_name), ())
            return [self._deployments[k] for k in sorted(keys)]

    def users_by_key(self, project_id: str, username: str, namespace: str) -> list[AtlasDatabaseUser]:
        """Users matching project ID and username within one namespace."""
        with self._lock:
            keys = self._users_by_key.get(user_index_key(project_id, username), ())
            return [self._users[k] for k in sorted(keys) if k[0] == namespace]

    def deployments_for_project(self, project_id: str) -> list[AtlasDeployment]:
        with self._lock:
            keys = self._deployments_by_project.get(project_id, ())
            return [self._deployments[k] for k in sorted(keys)]

    def users_for_project(self, project_id: str) -> list[AtlasDatabaseUser]:
        with self._lock:
            keys = self._users_by_project.get(project_id, ())
            return [self._users[k] for k in sorted(keys)]

    def deployment_names_for_project(self, project_id: str) -> list[str]:
        return [d.deployment_name for d in self.deployments_for_project(project_id)]

    def project_ids(self) -> list[str]:
        with self._lock:
            return sorted(set(self._deployments_by_project) | set(self._users_by_project))

    # -------------------------------------------------------------------------
    # Index maintenance (caller holds the lock)
    # -------------------------------------------------------------------------

    def _record_change(self, kind: str, key: ObjectKey) -> None:
        if self._relist_changes is not None:
            self._relist_changes.add((kind, key))

    def _index_deployment(self, key: ObjectKey) -> None:
        deployment = self._deployments[key]
        project_id = self.project_id_for(deployment)
        if not project_id or not deployment.deployment_name:
            return
        self._deployments_by_key[
            deployment_index_key(project_id, deployment.deployment_name)
        ].add(key)
        self._deployments_by_project[project_id].add(key)

    def _unindex_deployment(self, key: ObjectKey) -> None:
        _discard(self._deployments_by_key, key)
        _discard(self._deployments_by_project, key)

    def _index_user(self, key: ObjectKey) -> None:
        user = self._users[key]
        project_id = self.project_id_for(user)
        if not project_id or not user.username:
            return
        self._users_by_key[user_index_key(project_id, user.username)].add(key)
        self._users_by_project[project_id].add(key)

    def _unindex_user(self, key: ObjectKey) -> None:
        _discard(self._users_by_key, key)
        _discard(self._users_by_project, key)

    def _reindex(self) -> None:
        self._deployments_by_key.clear()
        self._deployments_by_project.clear()
        self._users_by_key.clear()
        self._users_by_project.clear()
        for key in self._deployments:
            self._index_deployment(key)
        for key in self._users:
            self._index_user(key)


def _discard(index: dict[str, set[ObjectKey]], key: ObjectKey) -> None:
    empty = []
    for index_key, members in index.items():
        members.discard(key)
        if not members:
            empty.append(index_key)
    for index_key in empty:
        del index[index_key]


def _keep_changed(
    snapshot: dict[ObjectKey, R],
    cached: dict[ObjectKey, R],
    changes: set[tuple[str, ObjectKey]],
    kind: str,
) -> None:
    for change_kind, key in changes:
        if change_kind != kind:
            continue
        if key in cached:
            snapshot[key] = cached[key]
        else:
            snapshot.pop(key, None)
