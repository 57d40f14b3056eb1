"""
Error handling module for the IRSA operator.

This module provides a comprehensive error hierarchy that integrates with kopf
and provides clear categorization for different types of failures.
"""

from .operator_errors import (
    ERROR_TAXONOMY,
    AwsIamError,
    ConfigurationError,
    ConflictError,
    ExternalApiError,
    KubernetesAPIError,
    MalformedTrustPolicy,
    NotFoundError,
    OperatorError,
    PolicyMergeConflict,
    ReconciliationError,
    TemporaryError,
    ValidationError,
    error_tag,
)

__all__ = [
    "ERROR_TAXONOMY",
    "OperatorError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "TemporaryError",
    "ExternalApiError",
    "KubernetesAPIError",
    "AwsIamError",
    "MalformedTrustPolicy",
    "PolicyMergeConflict",
    "ConfigurationError",
    "ReconciliationError",
    "error_tag",
]
