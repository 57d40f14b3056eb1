"""
Ownership tracking utilities for Kubernetes objects.

This module provides the management marker that proves an object was
created by this operator. Objects without the marker are foreign and are
never modified or deleted.
"""

from collections.abc import Mapping
from typing import Any

from irsa_operator.constants import (
    ANNOTATED_BY_ANNOTATION,
    COMPONENT_LABEL_KEY,
    MANAGED_BY_LABEL_KEY,
    MANAGED_BY_LABEL_VALUE,
    SERVICE_ACCOUNT_LABEL_KEY,
)

MANAGED_SELECTOR = f"{MANAGED_BY_LABEL_KEY}={MANAGED_BY_LABEL_VALUE}"


def create_ownership_labels(
    component: str, service_account: str | None = None
) -> dict[str, str]:
    """
    Create management labels for an object this operator creates.

    Args:
        component: Object role, e.g. "role", "rolebinding", "serviceaccount"
        service_account: Service account the object was created for, if any

    Returns:
        Dictionary of labels to put on the object

    Example:
        >>> labels = create_ownership_labels("rolebinding", "demo-service-account")
        >>> labels[MANAGED_BY_LABEL_KEY]
        'irsa-operator'
    """
    labels = {
        MANAGED_BY_LABEL_KEY: MANAGED_BY_LABEL_VALUE,
        COMPONENT_LABEL_KEY: component,
    }
    if service_account:
        labels[SERVICE_ACCOUNT_LABEL_KEY] = service_account
    return labels


def _metadata(obj: Mapping[str, Any] | None) -> Mapping[str, Any]:
    if not obj:
        return {}
    return obj.get("metadata") or {}


def is_managed_by_operator(obj: Mapping[str, Any] | None) -> bool:
    """
    Check if a Kubernetes object carries the management label.

    Args:
        obj: Object as a plain dict (API server JSON form), may be None

    Returns:
        True if the object was created by this operator
    """
    labels = _metadata(obj).get("labels") or {}
    return labels.get(MANAGED_BY_LABEL_KEY) == MANAGED_BY_LABEL_VALUE


def is_annotated_by_operator(obj: Mapping[str, Any] | None) -> bool:
    """Check if this operator wrote IRSA annotations onto a (possibly foreign) object."""
    annotations = _metadata(obj).get("annotations") or {}
    return annotations.get(ANNOTATED_BY_ANNOTATION) == MANAGED_BY_LABEL_VALUE

