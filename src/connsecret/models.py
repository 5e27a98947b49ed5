"""Pydantic models for the custom resources a connection secret is derived from.

Resources arrive from the Kubernetes API as plain dictionaries. These models
provide:
1. Type-safe parsing of AtlasDeployment, AtlasDatabaseUser and AtlasProject
2. Validation at the boundary (fail fast, fail loudly)
3. The small set of derived properties the pairing logic needs
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

# Resource kinds as they appear on the wire
DEPLOYMENT_KIND = "AtlasDeployment"
DATABASE_USER_KIND = "AtlasDatabaseUser"
PROJECT_KIND = "AtlasProject"

# Plural names used by the custom objects API
DEPLOYMENT_PLURAL = "atlasdeployments"
DATABASE_USER_PLURAL = "atlasdatabaseusers"
PROJECT_PLURAL = "atlasprojects"

READY_CONDITION = "Ready"
CLUSTER_SCOPE_TYPE = "CLUSTER"

_MODEL_CONFIG: dict[str, Any] = {"extra": "ignore", "populate_by_name": True}


# =============================================================================
# Common
# =============================================================================


class ObjectMeta(BaseModel):
    """Subset of Kubernetes object metadata."""

    model_config = _MODEL_CONFIG

    name: str
    namespace: str = "default"
    uid: str = ""
    generation: int = 0
    resource_version: str = Field("", alias="resourceVersion")
    labels: dict[str, str] = Field(default_factory=dict)


class Condition(BaseModel):
    """Status condition."""

    model_config = _MODEL_CONFIG

    type: str
    status: str = "Unknown"
    reason: str | None = None
    message: str | None = None


class ResourceRef(BaseModel):
    """Reference to another resource, optionally in another namespace."""

    model_config = _MODEL_CONFIG

    name: str
    namespace: str | None = None


class ExternalProjectReference(BaseModel):
    """Reference to a project that exists only in the remote service."""

    model_config = _MODEL_CONFIG

    id: str


class ResourceStatus(BaseModel):
    """Status block shared by every watched kind."""

    model_config = _MODEL_CONFIG

    conditions: list[Condition] = Field(default_factory=list)
    observed_generation: int = Field(0, alias="observedGeneration")


class AtlasResource(BaseModel):
    """Base for custom resources that reference a project."""

    model_config = _MODEL_CONFIG

    api_version: str = Field("", alias="apiVersion")
    metadata: ObjectMeta

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def project_ref(self) -> ResourceRef | None:
        raise NotImplementedError("Subclasses must implement project_ref")

    @property
    def external_project_id(self) -> str | None:
        raise NotImplementedError("Subclasses must implement external_project_id")

    @property
    def conditions(self) -> list[Condition]:
        raise NotImplementedError("Subclasses must implement conditions")

    @property
    def is_ready(self) -> bool:
        """True when the Ready condition reports status "True"."""
        for condition in self.conditions:
            if condition.type == READY_CONDITION:
                return condition.status == "True"
        return False

    def project_ref_key(self) -> tuple[str, str] | None:
        """(namespace, name) of the referenced AtlasProject, if any."""
        ref = self.project_ref
        if ref is None:
            return None
        return ref.namespace or self.namespace, ref.name

    @classmethod
    def from_k8s(cls, obj: dict[str, Any]) -> AtlasResource:
        """Parse a custom object dictionary as returned by the Kubernetes API."""
        return cls.model_validate(obj)


# =============================================================================
# AtlasDeployment
# =============================================================================


class NamedSpec(BaseModel):
    """Any deployment spec flavor; only the name matters here."""

    model_config = _MODEL_CONFIG

    name: str = ""


class PrivateEndpointConnection(BaseModel):
    """Connection strings for one private endpoint."""

    model_config = _MODEL_CONFIG

    connection_string: str = Field("", alias="connectionString")
    srv_connection_string: str = Field("", alias="srvConnectionString")
    srv_shard_optimized_connection_string: str = Field(
        "", alias="srvShardOptimizedConnectionString"
    )


class ConnectionStrings(BaseModel):
    """Connection endpoints published by a ready deployment."""

    model_config = _MODEL_CONFIG

    standard: str = ""
    standard_srv: str = Field("", alias="standardSrv")
    private: str = ""
    private_srv: str = Field("", alias="privateSrv")
    private_endpoint: list[PrivateEndpointConnection] = Field(
        default_factory=list, alias="privateEndpoint"
    )


class DeploymentSpec(BaseModel):
    """AtlasDeployment spec."""

    model_config = _MODEL_CONFIG

    project_ref: ResourceRef | None = Field(None, alias="projectRef")
    external_project_ref: ExternalProjectReference | None = Field(
        None, alias="externalProjectRef"
    )
    deployment_spec: NamedSpec | None = Field(None, alias="deploymentSpec")
    flex_spec: NamedSpec | None = Field(None, alias="flexSpec")
    serverless_spec: NamedSpec | None = Field(None, alias="serverlessSpec")


class DeploymentStatus(ResourceStatus):
    """AtlasDeployment status."""

    connection_strings: ConnectionStrings = Field(
        default_factory=ConnectionStrings, alias="connectionStrings"
    )


class AtlasDeployment(AtlasResource):
    """A managed cluster exposing connection endpoints."""

    spec: DeploymentSpec = Field(default_factory=DeploymentSpec)
    status: DeploymentStatus = Field(default_factory=DeploymentStatus)

    @property
    def deployment_name(self) -> str:
        """Stable display name of the cluster (first non-empty spec flavor)."""
        for named in (self.spec.deployment_spec, self.spec.flex_spec, self.spec.serverless_spec):
            if named is not None and named.name:
                return named.name
        return ""

    @property
    def project_ref(self) -> ResourceRef | None:
        return self.spec.project_ref

    @property
    def external_project_id(self) -> str | None:
        ref = self.spec.external_project_ref
        return ref.id if ref is not None and ref.id else None

    @property
    def conditions(self) -> list[Condition]:
        return self.status.conditions

    @property
    def connection_strings(self) -> ConnectionStrings:
        return self.status.connection_strings


# =============================================================================
# AtlasDatabaseUser
# =============================================================================


class ScopeSpec(BaseModel):
    """One entry of a database user's scope allow-list."""

    model_config = _MODEL_CONFIG

    name: str
    type: str = CLUSTER_SCOPE_TYPE


class DatabaseUserSpec(BaseModel):
    """AtlasDatabaseUser spec."""

    model_config = _MODEL_CONFIG

    username: str
    password_secret_ref: ResourceRef | None = Field(None, alias="passwordSecretRef")
    scopes: list[ScopeSpec] = Field(default_factory=list)
    delete_after_date: str | None = Field(None, alias="deleteAfterDate")
    project_ref: ResourceRef | None = Field(None, alias="projectRef")
    external_project_ref: ExternalProjectReference | None = Field(
        None, alias="externalProjectRef"
    )


class DatabaseUserStatus(ResourceStatus):
    """AtlasDatabaseUser status."""

    username: str | None = Field(None, alias="name")


class AtlasDatabaseUser(AtlasResource):
    """A database credential with optional scope and expiration."""

    spec: DatabaseUserSpec
    status: DatabaseUserStatus = Field(default_factory=DatabaseUserStatus)

    @property
    def username(self) -> str:
        return self.spec.username

    @property
    def project_ref(self) -> ResourceRef | None:
        return self.spec.project_ref

    @property
    def external_project_id(self) -> str | None:
        ref = self.spec.external_project_ref
        return ref.id if ref is not None and ref.id else None

    @property
    def conditions(self) -> list[Condition]:
        return self.status.conditions

    def cluster_scopes(self) -> list[str]:
        """Names of the deployments this user is restricted to (empty = all)."""
        return [s.name for s in self.spec.scopes if s.type == CLUSTER_SCOPE_TYPE]


# =============================================================================
# AtlasProject
# =============================================================================


class ProjectSpec(BaseModel):
    """AtlasProject spec."""

    model_config = _MODEL_CONFIG

    name: str


class ProjectStatus(ResourceStatus):
    """AtlasProject status; the remote ID appears once the project is created."""

    id: str | None = None


class AtlasProject(AtlasResource):
    """A locally managed project."""

    spec: ProjectSpec
    status: ProjectStatus = Field(default_factory=ProjectStatus)

    @property
    def project_id(self) -> str | None:
        return self.status.id or None

    @property
    def project_ref(self) -> ResourceRef | None:
        return None

    @property
    def external_project_id(self) -> str | None:
        return self.project_id

    @property
    def conditions(self) -> list[Condition]:
        return self.status.conditions


MODEL_BY_KIND: dict[str, type[AtlasResource]] = {
    DEPLOYMENT_KIND: AtlasDeployment,
    DATABASE_USER_KIND: AtlasDatabaseUser,
    PROJECT_KIND: AtlasProject,
}


def parse_resource(kind: str, obj: dict[str, Any]) -> AtlasResource:
    """Parse a custom object of the given kind.

    Raises:
        ValueError: If the kind is not one of the watched kinds.
        pydantic.ValidationError: If the object does not match the model.
    """
    model = MODEL_BY_KIND.get(kind)
    if model is None:
        raise ValueError(f"Unsupported kind '{kind}'. Valid kinds: {list(MODEL_BY_KIND)}")
    return model.from_k8s(obj)
