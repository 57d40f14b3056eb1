"""
Operator error hierarchy with categorization and retry logic.

This module defines the error types used throughout the IRSA operator,
providing clear categorization and integration with kopf's retry mechanisms.
"""

import kopf


class OperatorError(Exception):
    """
    Base error class for all operator-related exceptions.

    Provides categorization, retry behavior, and user guidance for resolution.
    """

    def __init__(
        self,
        message: str,
        category: str,
        retryable: bool = True,
        delay: int = 30,
        user_action: str | None = None,
        cause: Exception | None = None,
        resource: str | None = None,
    ):
        """
        Initialize operator error.

        Args:
            message: Human-readable error description
            category: Error category (validation, conflict, external, policy)
            retryable: Whether the operation may succeed when retried
            delay: Suggested retry delay in seconds
            user_action: What user should do to resolve the issue
            cause: Underlying exception that caused this error
            resource: Identifier of the offending resource, if known
        """
        super().__init__(message)
        self.category = category
        self.retryable = retryable
        self.delay = delay
        self.user_action = user_action
        self.cause = cause
        self.resource = resource

    def as_kopf_error(self):
        """Convert to appropriate kopf exception type."""
        if self.retryable:
            return kopf.TemporaryError(str(self), delay=self.delay)
        else:
            return kopf.PermanentError(str(self))

    def __str__(self) -> str:
        """Enhanced string representation with user guidance."""
        base_msg = super().__str__()
        if self.user_action:
            return f"{base_msg}\nAction required: {self.user_action}"
        return base_msg


class ValidationError(OperatorError):
    """Malformed input. Never retried, surfaced to the operator."""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        user_action: str | None = None,
        resource: str | None = None,
    ):
        action = user_action or "Check the desired-state document and fix validation errors"
        if field:
            message = f"Validation error in field '{field}': {message}"
        if resource:
            message = f"{resource}: {message}"
        super().__init__(
            message=message,
            category="validation",
            retryable=False,
            user_action=action,
            resource=resource,
        )
        self.field = field


class NotFoundError(OperatorError):
    """Expected absence. Callers that tolerate absence catch this."""

    def __init__(self, resource: str, message: str | None = None):
        super().__init__(
            message=message or f"{resource} not found",
            category="not_found",
            retryable=False,
            resource=resource,
        )


class ConflictError(OperatorError):
    """Version token mismatch on a concurrent write."""

    def __init__(self, resource: str, message: str | None = None):
        super().__init__(
            message=message or f"Concurrent modification of {resource}",
            category="conflict",
            retryable=True,
            delay=1,
            user_action="Retry with a fresh read",
            resource=resource,
        )


class TemporaryError(OperatorError):
    """Temporary error that should be retried."""

    def __init__(self, message: str, delay: int = 30, user_action: str | None = None):
        super().__init__(
            message=message,
            category="temporary",
            retryable=True,
            delay=delay,
            user_action=user_action
            or "Wait for automatic retry or check system status",
        )


class ExternalApiError(OperatorError):
    """Error communicating with an external API (network, throttling, timeouts)."""

    def __init__(
        self,
        service: str,
        message: str,
        retryable: bool = True,
        delay: int = 60,
        user_action: str | None = None,
        resource: str | None = None,
    ):
        action = user_action or f"Check {service} connectivity and credentials"
        super().__init__(
            message=f"{service} error: {message}",
            category="external",
            retryable=retryable,
            delay=delay,
            user_action=action,
            resource=resource,
        )
        self.service = service


class KubernetesAPIError(ExternalApiError):
    """Error communicating with Kubernetes API."""

    def __init__(
        self,
        message: str,
        reason: str | None = None,
        retryable: bool = True,
        resource: str | None = None,
    ):
        if reason:
            message = f"{message} (reason: {reason})"

        # Some K8s errors are not retryable
        non_retryable_reasons = {"Forbidden", "Unauthorized", "Invalid"}
        if reason in non_retryable_reasons:
            retryable = False

        super().__init__(
            service="Kubernetes API",
            message=message,
            retryable=retryable,
            user_action="Check RBAC permissions and cluster connectivity",
            resource=resource,
        )


class AwsIamError(ExternalApiError):
    """Error communicating with the AWS IAM API."""

    def __init__(
        self,
        message: str,
        code: str | None = None,
        retryable: bool = True,
        resource: str | None = None,
    ):
        if code:
            message = f"{message} (code: {code})"

        non_retryable_codes = {"AccessDenied", "AccessDeniedException", "UnauthorizedOperation"}
        if code in non_retryable_codes:
            retryable = False

        super().__init__(
            service="AWS IAM API",
            message=message,
            retryable=retryable,
            user_action="Check AWS credentials, IAM permissions and network access",
            resource=resource,
        )
        self.code = code


class MalformedTrustPolicy(OperatorError):
    """Observed trust policy lacks any AssumeRoleWithWebIdentity statement."""

    def __init__(self, role_arn: str, message: str | None = None):
        super().__init__(
            message=message
            or f"Trust policy of {role_arn} has no sts:AssumeRoleWithWebIdentity statement",
            category="policy",
            retryable=False,
            user_action="Provision the role for web identity federation before mapping it",
            resource=role_arn,
        )


class PolicyMergeConflict(OperatorError):
    """Access intents disagree under the strict merge policy."""

    def __init__(self, namespace: str, api_group: str, resource_kind: str, verbs: list[str]):
        group = api_group or "core"
        super().__init__(
            message=(
                f"Conflicting verb sets for {group}/{resource_kind} in namespace "
                f"{namespace}: {', '.join(verbs)}"
            ),
            category="policy",
            retryable=False,
            user_action="Align the verb sets of the overlapping access intents",
            resource=f"Role/{namespace}",
        )


class ConfigurationError(OperatorError):
    """Error in operator configuration."""

    def __init__(
        self, message: str, retryable: bool = False, user_action: str | None = None
    ):
        super().__init__(
            message=message,
            category="configuration",
            retryable=retryable,
            user_action=user_action or "Review and correct configuration",
        )


class ReconciliationError(OperatorError):
    """Error raised when reconciliation cannot be completed."""

    def __init__(
        self,
        message: str,
        retryable: bool = True,
        delay: int = 60,
        user_action: str | None = None,
        resource: str | None = None,
    ):
        super().__init__(
            message=message,
            category="reconciliation",
            retryable=retryable,
            delay=delay,
            user_action=user_action
            or "Inspect operator logs and the desired-state document for issues",
            resource=resource,
        )


# Public error taxonomy, most specific first
ERROR_TAXONOMY: tuple[type[OperatorError], ...] = (
    ValidationError,
    NotFoundError,
    ConflictError,
    ExternalApiError,
    MalformedTrustPolicy,
    PolicyMergeConflict,
)


def error_tag(error: BaseException) -> str:
    """
    Name of the taxonomy class an error belongs to.

    Backend-specific subclasses collapse to their taxonomy entry, so an
    AwsIamError is tagged ``ExternalApiError``.
    """
    for error_type in ERROR_TAXONOMY:
        if isinstance(error, error_type):
            return error_type.__name__
    return type(error).__name__
