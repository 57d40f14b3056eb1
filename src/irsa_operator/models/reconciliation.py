"""
Reconciliation records: patch operations, results and resource states.
"""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from irsa_operator.constants import PHASE_PENDING


class PatchAction(StrEnum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    NOOP = "noop"


class Outcome(StrEnum):
    APPLIED = "applied"
    FAILED = "failed"
    SKIPPED = "skipped"


class ResourceKind(StrEnum):
    ROLE = "Role"
    ROLE_BINDING = "RoleBinding"
    SERVICE_ACCOUNT = "ServiceAccount"


class PatchOperation(BaseModel):
    """A single create/update/delete against a namespaced Kubernetes object."""

    model_config = ConfigDict(frozen=True)

    action: PatchAction
    kind: ResourceKind
    namespace: str
    name: str
    body: dict[str, Any] | None = Field(
        None, description="Full object for create/replace, merge patch for service accounts"
    )
    reason: str | None = Field(None, description="Why the operation was planned or skipped")

    @property
    def resource_ref(self) -> str:
        return f"{self.kind}/{self.namespace}/{self.name}"


class ReconciliationResult(BaseModel):
    """
    Outcome of one planned change. Immutable once emitted.

    The sequence of results forms the append-only audit trail.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    resource_ref: str = Field(..., alias="resourceRef")
    action: PatchAction
    outcome: Outcome
    error: str | None = None
    error_type: str | None = Field(None, alias="errorType")
    attempt: int = 0
    message: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def changed(self) -> bool:
        return self.outcome == Outcome.APPLIED and self.action != PatchAction.NOOP


class ResourceState(BaseModel):
    """
    Retry bookkeeping for one reconciliation unit.

    Serializable so attempt counters survive operator restarts.
    """

    model_config = ConfigDict(populate_by_name=True)

    key: str
    phase: str = PHASE_PENDING
    attempts: int = 0
    next_attempt_at: float | None = Field(None, alias="nextAttemptAt")
    desired_fingerprint: str | None = Field(None, alias="desiredFingerprint")
    last_error: str | None = Field(None, alias="lastError")
