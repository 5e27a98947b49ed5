"""Secret and event access through the Kubernetes Core API.

Translates between SecretRecord and V1Secret. Data is base64 encoded on the
way in and decoded on the way out, so callers only ever see plaintext maps.
"""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from kubernetes import client
from kubernetes.client.rest import ApiException

from .builder import SecretRecord

logger = logging.getLogger(__name__)

HTTP_NOT_FOUND = 404
HTTP_CONFLICT = 409

EVENT_SOURCE_COMPONENT = "connsecret"
EVENT_TYPE_NORMAL = "Normal"


@dataclass
class StoredSecret:
    """A secret as read from the API server."""

    record: SecretRecord
    resource_version: str


def encode_data(data: dict[str, str]) -> dict[str, str]:
    return {k: base64.b64encode(v.encode("utf-8")).decode("ascii") for k, v in data.items()}


def decode_data(data: dict[str, str] | None) -> dict[str, str]:
    return {k: base64.b64decode(v).decode("utf-8") for k, v in (data or {}).items()}


def to_v1_secret(record: SecretRecord, resource_version: str | None = None) -> client.V1Secret:
    owner_references = None
    if record.owner:
        owner_references = [
            client.V1OwnerReference(
                api_version=record.owner["apiVersion"],
                kind=record.owner["kind"],
                name=record.owner["name"],
                uid=record.owner["uid"],
            )
        ]
    return client.V1Secret(
        api_version="v1",
        kind="Secret",
        type="Opaque",
        metadata=client.V1ObjectMeta(
            name=record.name,
            namespace=record.namespace,
            labels=dict(record.labels),
            owner_references=owner_references,
            resource_version=resource_version,
        ),
        data=encode_data(record.data),
    )


def from_v1_secret(secret: client.V1Secret) -> StoredSecret:
    meta = secret.metadata
    owner: dict[str, str] = {}
    for ref in meta.owner_references or []:
        owner = {"apiVersion": ref.api_version, "kind": ref.kind, "name": ref.name, "uid": ref.uid}
        break
    return StoredSecret(
        record=SecretRecord(
            name=meta.name,
            namespace=meta.namespace,
            labels=dict(meta.labels or {}),
            data=decode_data(secret.data),
            owner=owner,
        ),
        resource_version=meta.resource_version or "",
    )


class SecretStore:
    """Secret CRUD and event emission over CoreV1Api."""

    def __init__(self, core_api: Any) -> None:
        self._api = core_api

    def get(self, namespace: str, name: str) -> StoredSecret | None:
        """Read a secret; None if it does not exist."""
        try:
            secret = self._api.read_namespaced_secret(name, namespace)
        except ApiException as e:
            if e.status == HTTP_NOT_FOUND:
                return None
            raise
        return from_v1_secret(secret)

    def create(self, record: SecretRecord) -> None:
        self._api.create_namespaced_secret(record.namespace, to_v1_secret(record))

    def replace(self, record: SecretRecord, resource_version: str) -> None:
        """Overwrite a secret; fails with 409 if resource_version is stale."""
        self._api.replace_namespaced_secret(
            record.name, record.namespace, to_v1_secret(record, resource_version)
        )

    def delete(self, namespace: str, name: str) -> bool:
        """Delete a secret. Returns False if it was already gone."""
        try:
            self._api.delete_namespaced_secret(name, namespace)
        except ApiException as e:
            if e.status == HTTP_NOT_FOUND:
                return False
            raise
        return True

    def list(self, namespace: str, label_selector: str) -> list[StoredSecret]:
        response = self._api.list_namespaced_secret(namespace, label_selector=label_selector)
        return [from_v1_secret(item) for item in response.items or []]

    def emit_event(
        self,
        namespace: str,
        involved: dict[str, str],
        reason: str,
        message: str,
        event_type: str = EVENT_TYPE_NORMAL,
    ) -> None:
        """Record a Kubernetes Event against the involved object.

        Event delivery is best effort; a failure is logged, never raised.
        """
        now = datetime.now(UTC)
        body = client.CoreV1Event(
            metadata=client.V1ObjectMeta(
                generate_name=f"{involved.get('name', 'connsecret')}.",
                namespace=namespace,
            ),
            involved_object=client.V1ObjectReference(
                api_version=involved.get("apiVersion"),
                kind=involved.get("kind"),
                name=involved.get("name"),
                namespace=namespace,
                uid=involved.get("uid"),
            ),
            reason=reason,
            message=message,
            type=event_type,
            first_timestamp=now,
            last_timestamp=now,
            count=1,
            source=client.V1EventSource(component=EVENT_SOURCE_COMPONENT),
        )
        try:
            self._api.create_namespaced_event(namespace, body)
        except ApiException as e:
            logger.warning(
                "Failed to record event",
                extra={"reason": reason, "namespace": namespace, "status": e.status},
            )
