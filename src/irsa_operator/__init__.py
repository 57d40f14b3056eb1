"""
IRSA Operator - IAM Roles for Service Accounts broker and RBAC reconciler.

This operator keeps Kubernetes RBAC grants and AWS IAM trust policies in
line with a declared desired state:
- Identity mappings from service accounts to IAM roles
- Namespace-scoped Role/RoleBinding aggregation from access intents
- OIDC federation trust policies with semantic drift detection
- Ordered, retried and idempotent reconciliation with an audit trail
"""

__version__ = "0.1.0"
