"""
Utils package - Utility modules for IRSA operator functionality.

Contains helper modules for:
- Kubernetes RBAC, service account and ConfigMap access
- AWS IAM trust-policy access
- Ownership labels and markers
- Backend circuit breaking
"""

from irsa_operator.utils.ownership import (
    create_ownership_labels,
    is_annotated_by_operator,
    is_managed_by_operator,
)

__all__ = [
    "create_ownership_labels",
    "is_annotated_by_operator",
    "is_managed_by_operator",
]
