"""Identifier codec for connection secret reconcile requests.

A reconcile request names the secret it is about in one of two encodings:

Internal:  <projectID>$<clusterName>$<username>
    Produced by the watch fan-out. Carries every identifier needed to find
    the pair directly.

Legacy:    <projectName>-<clusterName>-<username>
    The name of an existing Secret object. The project ID and cluster name
    are read back from the secret's labels; project name and username are
    recovered by splitting the name on "-<clusterName>-".

Decoding never guesses. Anything malformed or ambiguous is reported with a
distinct, typed error so the request can be terminated without retry.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, replace

INTERNAL_SEPARATOR = "$"
NAME_SEPARATOR = "-"

# Labels written on every connection secret
TYPE_LABEL_KEY = "atlas.mongodb.com/type"
PROJECT_LABEL_KEY = "atlas.mongodb.com/project-id"
CLUSTER_LABEL_KEY = "atlas.mongodb.com/cluster-name"
CREDENTIALS_LABEL_VALUE = "credentials"

_INVALID_IDENTIFIER_CHARS = re.compile(r"[^a-z0-9.-]+")


# =============================================================================
# Errors
# =============================================================================


class IdentifierError(Exception):
    """Base class for reconcile request names that cannot be decoded."""

    pass


class InternalFormatPartsError(IdentifierError):
    """Internal format did not contain exactly three $-separated parts."""

    pass


class InternalFormatEmptyPartError(IdentifierError):
    """Internal format contained an empty part."""

    pass


class LegacyLabelsMissingError(IdentifierError):
    """Secret is missing the project or cluster label."""

    pass


class LegacyLabelEmptyError(IdentifierError):
    """Secret carries the project or cluster label with an empty value."""

    pass


class LegacyInfixMissingError(IdentifierError):
    """Secret name does not contain -<clusterName>-."""

    pass


class LegacyInfixAmbiguousError(IdentifierError):
    """Secret name contains -<clusterName>- more than once."""

    pass


class LegacyNameSplitEmptyError(IdentifierError):
    """Splitting the secret name left the project or username side empty."""

    pass


# =============================================================================
# Identifier set
# =============================================================================


@dataclass(frozen=True)
class ResourceIdentifierSet:
    """The routing key of one connection secret."""

    project_id: str
    cluster_name: str
    database_username: str
    project_name: str = ""

    def with_project_name(self, project_name: str) -> ResourceIdentifierSet:
        return replace(self, project_name=project_name)

    @property
    def deployment_key(self) -> str:
        """Composite key used by the deployment index."""
        return deployment_index_key(self.project_id, self.cluster_name)

    @property
    def user_key(self) -> str:
        """Composite key used by the database user index."""
        return user_index_key(self.project_id, self.database_username)

    def internal_name(self) -> str:
        return create_internal_format(self.project_id, self.cluster_name, self.database_username)


def normalize_identifier(value: str) -> str:
    """Normalize a display name into a Kubernetes-safe name fragment.

    Lowercases, trims whitespace, collapses every run of characters outside
    [a-z0-9.-] into a single "-", and trims leading/trailing "-" and ".".
    """
    lowered = value.strip().lower()
    return _INVALID_IDENTIFIER_CHARS.sub("-", lowered).strip("-.")


def deployment_index_key(project_id: str, cluster_name: str) -> str:
    return f"{project_id}-{normalize_identifier(cluster_name)}"


def user_index_key(project_id: str, username: str) -> str:
    return f"{project_id}-{normalize_identifier(username)}"


def create_k8s_format(project_name: str, cluster_name: str, database_username: str) -> str:
    """Secret name: <projectName>-<clusterName>-<username>, each part normalized."""
    return NAME_SEPARATOR.join(
        [
            normalize_identifier(project_name),
            normalize_identifier(cluster_name),
            normalize_identifier(database_username),
        ]
    )


def create_internal_format(project_id: str, cluster_name: str, database_username: str) -> str:
    """Internal request name: <projectID>$<clusterName>$<username>."""
    return INTERNAL_SEPARATOR.join(
        [
            project_id,
            normalize_identifier(cluster_name),
            normalize_identifier(database_username),
        ]
    )


def connection_secret_labels(project_id: str, cluster_name: str) -> dict[str, str]:
    return {
        TYPE_LABEL_KEY: CREDENTIALS_LABEL_VALUE,
        PROJECT_LABEL_KEY: project_id,
        CLUSTER_LABEL_KEY: normalize_identifier(cluster_name),
    }


def project_label_selector(project_id: str) -> str:
    """Label selector matching every connection secret of a project."""
    return f"{TYPE_LABEL_KEY}={CREDENTIALS_LABEL_VALUE},{PROJECT_LABEL_KEY}={project_id}"


# =============================================================================
# Decoding
# =============================================================================


def decode_internal(name: str) -> ResourceIdentifierSet:
    """Decode an internal-format request name.

    Raises:
        InternalFormatPartsError: If the name does not split into exactly 3 parts.
        InternalFormatEmptyPartError: If any part is empty.
    """
    parts = name.split(INTERNAL_SEPARATOR)
    if len(parts) != 3:
        raise InternalFormatPartsError(
            f"internal format expected 3 parts separated by {INTERNAL_SEPARATOR!r}, "
            f"got {len(parts)}: {name!r}"
        )
    if any(part == "" for part in parts):
        raise InternalFormatEmptyPartError(
            f"internal format got empty value in one or more parts: {name!r}"
        )
    project_id, cluster_name, username = parts
    return ResourceIdentifierSet(
        project_id=project_id,
        cluster_name=cluster_name,
        database_username=username,
    )


def decode_legacy(name: str, labels: dict[str, str] | None) -> ResourceIdentifierSet:
    """Decode a legacy secret name using the secret's labels.

    Args:
        name: The Secret's metadata.name.
        labels: The Secret's metadata.labels.

    Raises:
        LegacyLabelsMissingError: Project or cluster label absent.
        LegacyLabelEmptyError: Project or cluster label present but empty.
        LegacyInfixMissingError: Name does not contain -<clusterName>-.
        LegacyInfixAmbiguousError: Name contains -<clusterName>- more than once.
        LegacyNameSplitEmptyError: Project name or username side is empty.
    """
    labels = labels or {}
    if PROJECT_LABEL_KEY not in labels or CLUSTER_LABEL_KEY not in labels:
        raise LegacyLabelsMissingError(
            f"secret {name!r} is missing required label(s) "
            f"{PROJECT_LABEL_KEY!r} and/or {CLUSTER_LABEL_KEY!r}"
        )

    project_id = labels[PROJECT_LABEL_KEY]
    cluster_name = labels[CLUSTER_LABEL_KEY]
    if not project_id or not cluster_name:
        raise LegacyLabelEmptyError(f"secret {name!r} has an empty project or cluster label")

    infix = f"{NAME_SEPARATOR}{cluster_name}{NAME_SEPARATOR}"
    # Overlapping matches count: "p-a-a-u" holds "-a-" twice
    occurrences = len(re.findall(f"(?={re.escape(infix)})", name))
    if occurrences == 0:
        raise LegacyInfixMissingError(f"secret name {name!r} does not contain {infix!r}")
    if occurrences > 1:
        raise LegacyInfixAmbiguousError(
            f"secret name {name!r} contains {infix!r} {occurrences} times"
        )

    project_name, username = name.split(infix, 1)
    if not project_name or not username:
        raise LegacyNameSplitEmptyError(
            f"secret name {name!r} has an empty project or username around {infix!r}"
        )

    return ResourceIdentifierSet(
        project_id=project_id,
        project_name=project_name,
        cluster_name=cluster_name,
        database_username=username,
    )


# =============================================================================
# Request encoding (resolved once at the boundary)
# =============================================================================


@dataclass(frozen=True)
class InternalRequest:
    """Request produced by the fan-out; identifiers are carried in the name."""

    namespace: str
    ids: ResourceIdentifierSet


@dataclass(frozen=True)
class LegacyRequest:
    """Request naming an existing Secret; identifiers must be read from it."""

    namespace: str
    name: str


RequestIdentity = InternalRequest | LegacyRequest


def classify_request(namespace: str, name: str) -> RequestIdentity:
    """Classify a request name into its encoding.

    Internal requests are decoded immediately, so a malformed internal name
    raises here. Legacy requests need the Secret object and are decoded later
    with decode_legacy().

    Raises:
        InternalFormatPartsError, InternalFormatEmptyPartError
    """
    if INTERNAL_SEPARATOR in name:
        return InternalRequest(namespace=namespace, ids=decode_internal(name))
    return LegacyRequest(namespace=namespace, name=name)
