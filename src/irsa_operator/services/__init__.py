"""
Services package - reconciliation logic for the IRSA operator.

Contains:
- RbacPolicyReconciler: Role/RoleBinding/ServiceAccount planning
- TrustPolicySynthesizer: IAM trust-policy rendering, validation and diffing
- ResourceStateTracker: per-unit retry state machine
- ReconciliationEngine: orchestration across Kubernetes and IAM
"""

from .rbac_reconciler import RbacPlan, RbacPolicyReconciler, role_binding_name
from .reconciliation_engine import CycleReport, ReconciliationEngine
from .state_machine import ResourceStateTracker, RetryPolicy
from .trust_policy import ConditionMismatch, TrustPolicyDelta, TrustPolicySynthesizer

__all__ = [
    "ConditionMismatch",
    "CycleReport",
    "RbacPlan",
    "RbacPolicyReconciler",
    "ReconciliationEngine",
    "ResourceStateTracker",
    "RetryPolicy",
    "TrustPolicyDelta",
    "TrustPolicySynthesizer",
    "role_binding_name",
]
