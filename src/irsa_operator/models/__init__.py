"""Pydantic models for the IRSA operator data model."""

from .desired_state import (
    DesiredState,
    dump_desired_state,
    load_desired_state,
    load_desired_state_file,
)
from .identity import (
    AccessIntent,
    IdentityMapping,
    MappingKey,
    ResourceRule,
    TrustCondition,
    normalize_issuer,
    parse_model,
    parse_role_arn,
)
from .reconciliation import (
    Outcome,
    PatchAction,
    PatchOperation,
    ReconciliationResult,
    ResourceKind,
    ResourceState,
)

__all__ = [
    "AccessIntent",
    "DesiredState",
    "IdentityMapping",
    "MappingKey",
    "Outcome",
    "PatchAction",
    "PatchOperation",
    "ReconciliationResult",
    "ResourceKind",
    "ResourceRule",
    "ResourceState",
    "TrustCondition",
    "dump_desired_state",
    "load_desired_state",
    "load_desired_state_file",
    "normalize_issuer",
    "parse_model",
    "parse_role_arn",
]
