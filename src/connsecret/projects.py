"""Project name and deployment list resolution.

A connection secret's name embeds the project's display name, while the
resources only carry the project ID (or a reference to a local AtlasProject).
The name is resolved, in order, from:

1. The name fragment recovered from a legacy secret name
2. The local AtlasProject's spec.name
3. The remote project service (when API credentials are configured)

The remote service is also the authoritative source of a project's deployment
names for the orphan sweep.
"""

from __future__ import annotations

import base64
import logging
from typing import Any, Protocol
from urllib.parse import urljoin

import requests
from requests.auth import HTTPDigestAuth

from .config import Config
from .identifiers import ResourceIdentifierSet
from .indexer import ResourceCache
from .models import AtlasResource

logger = logging.getLogger(__name__)

API_ACCEPT_HEADER = "application/vnd.atlas.2023-01-01+json"
CLUSTERS_PAGE_SIZE = 500
HTTP_UNAUTHORIZED = 401

PUBLIC_KEY_FIELD = "publicApiKey"
PRIVATE_KEY_FIELD = "privateApiKey"


class ProjectLookupError(Exception):
    """Raised when a project name or deployment list cannot be determined.

    Treated as transient: the request is retried with backoff.
    """

    pass


class RemoteProjectLookup(Protocol):
    """What the resolver needs from a remote project service."""

    def project_name(self, project_id: str) -> str: ...

    def deployment_names(self, project_id: str) -> list[str]: ...


class AtlasProjectService:
    """Thin client for the two project endpoints of the Atlas Admin API.

    Credentials are read from a Kubernetes secret on first use and cached
    until the API rejects them with 401 Unauthorized.
    """

    def __init__(
        self,
        core_api: Any,
        domain: str,
        credentials_ref: tuple[str, str],
        timeout_seconds: int,
        session: requests.Session | None = None,
    ) -> None:
        self._core_api = core_api
        self._base_url = urljoin(domain if domain.endswith("/") else domain + "/", "api/atlas/v2/")
        self._credentials_ref = credentials_ref
        self._timeout = timeout_seconds
        self._session = session or requests.Session()
        self._auth: HTTPDigestAuth | None = None

    @classmethod
    def from_config(cls, config: Config, core_api: Any) -> AtlasProjectService | None:
        """Build the client when ATLAS_CREDENTIALS_SECRET is set, else None."""
        ref = config.atlas_credentials_ref
        if ref is None:
            return None
        return cls(
            core_api=core_api,
            domain=config.atlas_domain,
            credentials_ref=ref,
            timeout_seconds=config.atlas_request_timeout_seconds,
        )

    def project_name(self, project_id: str) -> str:
        """Display name of a project.

        Raises:
            ProjectLookupError: On transport errors, non-2xx responses or a
                response without a name.
        """
        body = self._get(f"groups/{project_id}")
        name = body.get("name")
        if not name:
            raise ProjectLookupError(f"project {project_id} has no name in the API response")
        return name

    def deployment_names(self, project_id: str) -> list[str]:
        """Names of every cluster in a project, following pagination."""
        names: list[str] = []
        page = 1
        while True:
            body = self._get(
                f"groups/{project_id}/clusters",
                params={"pageNum": page, "itemsPerPage": CLUSTERS_PAGE_SIZE},
            )
            results = body.get("results") or []
            names.extend(item["name"] for item in results if item.get("name"))
            total = body.get("totalCount", len(names))
            if not results or len(names) >= total:
                return names
            page += 1

    def _get(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        url = urljoin(self._base_url, path)
        try:
            response = self._session.get(
                url,
                params=params,
                auth=self._credentials(),
                headers={"Accept": API_ACCEPT_HEADER},
                timeout=self._timeout,
            )
            response.raise_for_status()
            return response.json()
        except requests.RequestException as e:
            if e.response is not None and e.response.status_code == HTTP_UNAUTHORIZED:
                # API keys may have been rotated; re-read them on the next call
                self._auth = None
            logger.warning(
                "Project service request failed",
                extra={"path": path, "error": str(e)},
            )
            raise ProjectLookupError(f"GET {path} failed: {e}") from e
        except ValueError as e:
            raise ProjectLookupError(f"GET {path} returned invalid JSON") from e

    def _credentials(self) -> HTTPDigestAuth:
        if self._auth is not None:
            return self._auth

        namespace, name = self._credentials_ref
        try:
            secret = self._core_api.read_namespaced_secret(name, namespace)
        except Exception as e:
            raise ProjectLookupError(
                f"cannot read API credentials secret {namespace}/{name}: {e}"
            ) from e

        data = secret.data or {}
        missing = [k for k in (PUBLIC_KEY_FIELD, PRIVATE_KEY_FIELD) if not data.get(k)]
        if missing:
            raise ProjectLookupError(
                f"API credentials secret {namespace}/{name} is missing {missing}"
            )

        self._auth = HTTPDigestAuth(
            base64.b64decode(data[PUBLIC_KEY_FIELD]).decode("utf-8"),
            base64.b64decode(data[PRIVATE_KEY_FIELD]).decode("utf-8"),
        )
        return self._auth


class ProjectResolver:
    """Resolves project display names and authoritative deployment lists."""

    def __init__(self, cache: ResourceCache, remote: RemoteProjectLookup | None = None) -> None:
        self._cache = cache
        self._remote = remote

    def project_name(
        self,
        ids: ResourceIdentifierSet,
        resource: AtlasResource | None = None,
    ) -> str:
        """Project display name for a request.

        Args:
            ids: Decoded request identifiers; a legacy name fragment wins.
            resource: Optional deployment or user whose projectRef points at
                the local AtlasProject.

        Raises:
            ProjectLookupError: If no source can provide the name.
        """
        if ids.project_name:
            return ids.project_name

        if resource is not None:
            ref = resource.project_ref_key()
            if ref is not None:
                project = self._cache.project(*ref)
                if project is not None and project.spec.name:
                    return project.spec.name

        project = self._cache.project_by_id(ids.project_id)
        if project is not None and project.spec.name:
            return project.spec.name

        if self._remote is None:
            raise ProjectLookupError(
                f"project {ids.project_id} not found locally and remote lookup is disabled"
            )
        return self._remote.project_name(ids.project_id)

    def deployment_names(self, project_id: str) -> list[str]:
        """Authoritative deployment names of a project."""
        if self._remote is not None:
            return self._remote.deployment_names(project_id)
        return self._cache.deployment_names_for_project(project_id)

    @property
    def remote_enabled(self) -> bool:
        return self._remote is not None
