"""
Constants used throughout the IRSA operator.

This module defines all constant values used by the operator including:
- Management labels and annotations
- Managed object naming
- IAM trust policy vocabulary
- Default reconciliation tuning values
"""

# Label constants for resource identification and management
MANAGED_BY_LABEL_KEY = "irsa-operator.io/managed-by"
MANAGED_BY_LABEL_VALUE = "irsa-operator"
SERVICE_ACCOUNT_LABEL_KEY = "irsa-operator.io/service-account"
COMPONENT_LABEL_KEY = "irsa-operator.io/component"

# Desired-state ConfigMap discovery
DESIRED_STATE_LABEL_KEY = "irsa-operator.io/desired-state"
DESIRED_STATE_DATA_KEY = "desired-state.yaml"

# Annotations written onto service accounts
ROLE_ARN_ANNOTATION = "eks.amazonaws.com/role-arn"
AUDIENCE_ANNOTATION = "eks.amazonaws.com/audience"
ANNOTATED_BY_ANNOTATION = "irsa-operator.io/annotated-by"

# Managed RBAC object naming
MANAGED_ROLE_NAME = "irsa-access"
ROLE_BINDING_PREFIX = "irsa-access-"
RBAC_API_GROUP = "rbac.authorization.k8s.io"
RBAC_API_VERSION = "rbac.authorization.k8s.io/v1"
MAX_OBJECT_NAME_LENGTH = 253

# Verbs an access intent may grant
ALLOWED_VERBS = frozenset(
    {"get", "list", "watch", "create", "update", "patch", "delete"}
)

# IAM trust policy vocabulary
DEFAULT_AUDIENCE = "sts.amazonaws.com"
POLICY_VERSION = "2012-10-17"
ASSUME_ROLE_WITH_WEB_IDENTITY = "sts:AssumeRoleWithWebIdentity"
TRUST_STATEMENT_SID_PREFIX = "IrsaOperator"
REVOKED_STATEMENT_SID = "IrsaOperatorRevoked"

# Persistence ConfigMaps (in the operator namespace)
MAPPING_STORE_CONFIGMAP = "irsa-operator-identity-mappings"
RESOURCE_STATE_CONFIGMAP = "irsa-operator-resource-state"

# Resource state machine phases
PHASE_PENDING = "Pending"
PHASE_APPLYING = "Applying"
PHASE_APPLIED = "Applied"
PHASE_FAILED = "Failed"
PHASE_STUCK = "Stuck"

# Retry configuration
DEFAULT_BACKOFF_BASE_SECONDS = 1.0
DEFAULT_BACKOFF_CAP_SECONDS = 60.0
DEFAULT_MAX_ATTEMPTS = 5

# Timeout constants (in seconds)
DEFAULT_CALL_TIMEOUT = 30.0
DEFAULT_CYCLE_INTERVAL = 300.0

# Unit key prefixes for the resource state machine
RBAC_UNIT_PREFIX = "rbac:"
IAM_UNIT_PREFIX = "iam:"
