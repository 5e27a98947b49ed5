"""Per-reconcile provenance records for audit.

Every reconcile is stamped with one structured record answering:
- "Which request was handled, and how did it end?"
- "Which secrets were touched?"
- "Which operator build made the change?"
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .reconciler import ReconcileResult

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
OPERATOR_VERSION = os.environ.get("OPERATOR_VERSION", "dev")


@dataclass
class ReconcileProvenance:
    """Provenance record for one reconcile."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    # Identity
    operator_version: str = OPERATOR_VERSION
    operator_instance_id: str = ""  # Pod name if available

    # Request
    namespace: str = ""
    request: str = ""

    # Outcome
    outcome: str = ""
    reason: str = ""
    secrets: list[str] = field(default_factory=list)

    duration_seconds: float = 0.0

    error: str | None = None
    error_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        return result


class ProvenanceLogger:
    """Writes provenance records to the structured log."""

    def __init__(self) -> None:
        self._instance_id = os.environ.get("POD_NAME", "")

    def create_provenance(self, result: ReconcileResult) -> ReconcileProvenance:
        """Build the provenance record of a finished reconcile."""
        return ReconcileProvenance(
            operator_version=OPERATOR_VERSION,
            operator_instance_id=self._instance_id,
            namespace=result.request.namespace,
            request=result.request.name,
            outcome=result.outcome.value,
            reason=result.message,
            secrets=list(result.secrets),
            duration_seconds=result.duration_seconds,
            error=result.error,
            error_type=result.error_type,
        )

    def log_provenance(self, provenance: ReconcileProvenance) -> None:
        """Log a completed provenance record.

        Errors log at ERROR; a reconcile that touched secrets logs at INFO;
        anything else (ignored, in progress) logs at DEBUG.
        """
        if provenance.error:
            log_level = logging.ERROR
        elif provenance.secrets:
            log_level = logging.INFO
        else:
            log_level = logging.DEBUG

        logger.log(
            log_level,
            "Reconcile provenance",
            extra={
                "provenance": provenance.to_dict(),
                # Flatten key fields for easier querying
                "namespace": provenance.namespace,
                "request": provenance.request,
                "outcome": provenance.outcome,
                "operator_version": provenance.operator_version,
                "duration_seconds": provenance.duration_seconds,
            },
        )

    def log_reconcile(self, result: ReconcileResult) -> ReconcileProvenance:
        """Create and log the provenance record of a reconcile."""
        provenance = self.create_provenance(result)
        self.log_provenance(provenance)
        return provenance


# Global singleton for provenance logging
_provenance_logger: ProvenanceLogger | None = None


def get_provenance_logger() -> ProvenanceLogger:
    """Get the global provenance logger instance."""
    global _provenance_logger
    if _provenance_logger is None:
        _provenance_logger = ProvenanceLogger()
    return _provenance_logger
