"""Validity gate for a resolved pair.

Checks run in a fixed order on every reconcile; no verdict is cached:

1. Expiration  - the user's deleteAfterDate is in the past
2. Scope       - the user is restricted to clusters that exclude this one
3. Readiness   - both sides report Ready=True
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime

from .identifiers import normalize_identifier
from .models import DATABASE_USER_KIND, DEPLOYMENT_KIND, AtlasDatabaseUser, AtlasDeployment


@dataclass(frozen=True)
class Expired:
    """The user passed its deleteAfterDate."""

    delete_after: datetime


@dataclass(frozen=True)
class InvalidExpiration:
    """The user's deleteAfterDate cannot be parsed."""

    value: str
    error: str


@dataclass(frozen=True)
class OutOfScope:
    """The user's cluster scopes exclude the paired deployment."""

    deployment_name: str
    scopes: tuple[str, ...]


@dataclass(frozen=True)
class NotReady:
    """One or both sides are not ready yet."""

    blocking: tuple[str, ...]

    @property
    def message(self) -> str:
        return "Not ready: " + ", ".join(self.blocking)


@dataclass(frozen=True)
class Valid:
    """The pair may have a connection secret."""


Verdict = Expired | InvalidExpiration | OutOfScope | NotReady | Valid


def parse_delete_after_date(value: str) -> datetime:
    """Parse an ISO-8601 timestamp; a naive value is taken as UTC.

    Raises:
        ValueError: If the value is not ISO-8601.
    """
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def in_scope(user: AtlasDatabaseUser, deployment_name: str) -> bool:
    """Whether a user may connect to the named deployment.

    An empty cluster scope list allows every deployment.
    """
    scopes = user.cluster_scopes()
    if not scopes:
        return True
    wanted = normalize_identifier(deployment_name)
    return any(normalize_identifier(scope) == wanted for scope in scopes)


def evaluate(
    deployment: AtlasDeployment,
    user: AtlasDatabaseUser,
    now: datetime | None = None,
) -> Verdict:
    """Evaluate expiration, then scope, then readiness."""
    if user.spec.delete_after_date:
        try:
            delete_after = parse_delete_after_date(user.spec.delete_after_date)
        except ValueError as e:
            return InvalidExpiration(value=user.spec.delete_after_date, error=str(e))
        if delete_after < (now or datetime.now(UTC)):
            return Expired(delete_after=delete_after)

    if not in_scope(user, deployment.deployment_name):
        return OutOfScope(
            deployment_name=deployment.deployment_name,
            scopes=tuple(user.cluster_scopes()),
        )

    blocking = []
    if not deployment.is_ready:
        blocking.append(f"{DEPLOYMENT_KIND}/{deployment.name}")
    if not user.is_ready:
        blocking.append(f"{DATABASE_USER_KIND}/{user.name}")
    if blocking:
        return NotReady(blocking=tuple(blocking))

    return Valid()
