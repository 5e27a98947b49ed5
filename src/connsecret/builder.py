"""Connection secret payload construction.

Builds the data map of a connection secret from a ready pair:

    username, password
    standard, standardSrv
    private, privateSrv, privateSrvShard          (first private-link variant)
    private1, privateSrv1, privateSrvShard1, ...  (further variants)

Credentials are percent-encoded into the userinfo of each connection string.
The payload is fully recomputed every time; nothing is read back from a
previous secret.
"""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote, urlsplit, urlunsplit

from .config import DEFAULT_CRD_GROUP, DEFAULT_CRD_VERSION
from .identifiers import ResourceIdentifierSet, connection_secret_labels, create_k8s_format
from .models import DATABASE_USER_KIND, AtlasDatabaseUser, AtlasDeployment

logger = logging.getLogger(__name__)

PASSWORD_KEY = "password"

USERNAME_FIELD = "username"
PASSWORD_FIELD = "password"
STANDARD_FIELD = "standard"
STANDARD_SRV_FIELD = "standardSrv"
PRIVATE_FIELD = "private"
PRIVATE_SRV_FIELD = "privateSrv"
PRIVATE_SRV_SHARD_FIELD = "privateSrvShard"


class CredentialReadError(Exception):
    """Raised when a user's password cannot be read.

    Transient: the password secret may be created after the user.
    """

    pass


class CredentialReader:
    """Reads a database user's password from its referenced Secret."""

    def __init__(self, core_api: Any) -> None:
        self._core_api = core_api

    def read_password(self, user: AtlasDatabaseUser) -> str:
        """Plaintext password of a user.

        A user without passwordSecretRef has an empty password.

        Raises:
            CredentialReadError: If the secret is missing, or has no
                non-empty "password" key.
        """
        ref = user.spec.password_secret_ref
        if ref is None:
            return ""

        namespace = ref.namespace or user.namespace
        try:
            secret = self._core_api.read_namespaced_secret(ref.name, namespace)
        except Exception as e:
            raise CredentialReadError(
                f"cannot read password secret {namespace}/{ref.name}: {type(e).__name__}"
            ) from e

        encoded = (secret.data or {}).get(PASSWORD_KEY)
        if encoded is None:
            raise CredentialReadError(
                f"password secret {namespace}/{ref.name} has no {PASSWORD_KEY!r} key"
            )
        password = base64.b64decode(encoded).decode("utf-8")
        if not password:
            raise CredentialReadError(f"password secret {namespace}/{ref.name} is empty")
        return password


@dataclass(frozen=True)
class PrivateLinkURLs:
    """One private-link variant with credentials embedded."""

    private: str = ""
    private_srv: str = ""
    private_srv_shard: str = ""


@dataclass(frozen=True)
class ConnectionData:
    """Credentials plus every connection string of a pair."""

    username: str
    password: str
    standard: str = ""
    standard_srv: str = ""
    private_links: tuple[PrivateLinkURLs, ...] = ()


@dataclass
class SecretRecord:
    """The durable output: a labeled Secret owned by the database user."""

    name: str
    namespace: str
    labels: dict[str, str]
    data: dict[str, str]
    owner: dict[str, str] = field(default_factory=dict)

    def to_manifest(self) -> dict[str, Any]:
        """Secret manifest with plaintext stringData."""
        metadata: dict[str, Any] = {
            "name": self.name,
            "namespace": self.namespace,
            "labels": dict(self.labels),
        }
        if self.owner:
            metadata["ownerReferences"] = [dict(self.owner)]
        return {
            "apiVersion": "v1",
            "kind": "Secret",
            "type": "Opaque",
            "metadata": metadata,
            "stringData": dict(self.data),
        }


def create_url(url: str, username: str, password: str) -> str:
    """Embed percent-encoded credentials into a connection string.

    Any existing userinfo is replaced. An empty URL stays empty.
    """
    if not url:
        return ""
    parts = urlsplit(url)
    host = parts.netloc.rsplit("@", 1)[-1]
    userinfo = quote(username, safe="") + ":" + quote(password, safe="")
    return urlunsplit(parts._replace(netloc=f"{userinfo}@{host}"))


def build_connection_data(
    deployment: AtlasDeployment, user: AtlasDatabaseUser, password: str
) -> ConnectionData:
    """Collect and credential every endpoint the deployment publishes."""
    username = user.username
    strings = deployment.connection_strings

    def url(value: str) -> str:
        return create_url(value, username, password)

    private_links: list[PrivateLinkURLs] = []
    if strings.private or strings.private_srv:
        private_links.append(
            PrivateLinkURLs(private=url(strings.private), private_srv=url(strings.private_srv))
        )
    for endpoint in strings.private_endpoint:
        private_links.append(
            PrivateLinkURLs(
                private=url(endpoint.connection_string),
                private_srv=url(endpoint.srv_connection_string),
                private_srv_shard=url(endpoint.srv_shard_optimized_connection_string),
            )
        )

    return ConnectionData(
        username=username,
        password=password,
        standard=url(strings.standard),
        standard_srv=url(strings.standard_srv),
        private_links=tuple(private_links),
    )


def build_secret_data(data: ConnectionData) -> dict[str, str]:
    """Flatten ConnectionData into the secret's data keys."""
    result = {
        USERNAME_FIELD: data.username,
        PASSWORD_FIELD: data.password,
        STANDARD_FIELD: data.standard,
        STANDARD_SRV_FIELD: data.standard_srv,
    }
    for i, link in enumerate(data.private_links):
        suffix = str(i) if i else ""
        result[PRIVATE_FIELD + suffix] = link.private
        result[PRIVATE_SRV_FIELD + suffix] = link.private_srv
        result[PRIVATE_SRV_SHARD_FIELD + suffix] = link.private_srv_shard
    return result


def owner_reference(user: AtlasDatabaseUser) -> dict[str, str]:
    """Owner reference pointing at the database user."""
    return {
        "apiVersion": user.api_version or f"{DEFAULT_CRD_GROUP}/{DEFAULT_CRD_VERSION}",
        "kind": DATABASE_USER_KIND,
        "name": user.name,
        "uid": user.metadata.uid,
    }


def build_secret(
    ids: ResourceIdentifierSet,
    deployment: AtlasDeployment,
    user: AtlasDatabaseUser,
    password: str,
) -> SecretRecord:
    """Build the full connection secret for a valid pair.

    Args:
        ids: Identifiers with the project name already resolved.
        deployment: The paired deployment.
        user: The paired user; the secret lives in its namespace.
        password: The user's plaintext password.
    """
    connection = build_connection_data(deployment, user, password)
    record = SecretRecord(
        name=create_k8s_format(ids.project_name, deployment.deployment_name, user.username),
        namespace=user.namespace,
        labels=connection_secret_labels(ids.project_id, deployment.deployment_name),
        data=build_secret_data(connection),
        owner=owner_reference(user) if user.metadata.uid else {},
    )
    logger.debug(
        "Connection secret built",
        extra={
            "secret": record.name,
            "namespace": record.namespace,
            "private_links": len(connection.private_links),
        },
    )
    return record
