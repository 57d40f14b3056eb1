"""
Kubernetes utilities for the IRSA operator.

This module provides helper functions for interacting with the Kubernetes API,
including client configuration, RBAC object management, service account
annotation and JSON ConfigMap persistence.

Key functionality:
- Kubernetes client management and configuration
- Namespace snapshots of Roles, RoleBindings and ServiceAccounts
- Applying planned patch operations
- Reading and writing JSON payloads in ConfigMaps with optimistic locking
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from kubernetes import client, config
from kubernetes.client.rest import ApiException

from irsa_operator.constants import MANAGED_BY_LABEL_VALUE
from irsa_operator.errors import (
    ConflictError,
    KubernetesAPIError,
    NotFoundError,
    ValidationError,
)
from irsa_operator.models import PatchAction, PatchOperation, ResourceKind
from irsa_operator.utils.ownership import MANAGED_SELECTOR, create_ownership_labels

logger = logging.getLogger(__name__)


def get_kubernetes_client() -> client.ApiClient:
    """
    Get configured Kubernetes API client.

    This function handles both in-cluster and local development configurations.

    Returns:
        Configured Kubernetes API client
    """
    try:
        # Try in-cluster config first (when running in a pod)
        config.load_incluster_config()
        logger.debug("Loaded in-cluster Kubernetes configuration")
    except config.ConfigException:
        try:
            # Fall back to local kubeconfig (for development)
            config.load_kube_config()
            logger.debug("Loaded kubeconfig from local environment")
        except config.ConfigException as e:
            logger.error(f"Failed to load Kubernetes configuration: {e}")
            raise

    return client.ApiClient()


def translate_api_exception(e: ApiException, resource: str) -> Exception:
    """
    Map a Kubernetes ApiException onto the operator error taxonomy.

    Args:
        e: Exception raised by the kubernetes client
        resource: Identifier of the object the call targeted

    Returns:
        The operator error to raise in its place
    """
    status = getattr(e, "status", None)
    reason = getattr(e, "reason", None)
    if status == 404:
        return NotFoundError(resource)
    if status == 409:
        return ConflictError(resource, message=f"Conflict writing {resource}: {reason}")
    if status in (400, 422):
        return ValidationError(f"API server rejected object: {reason}", resource=resource)
    return KubernetesAPIError(
        f"Request for {resource} failed with HTTP {status}",
        reason=reason,
        # 5xx and throttling are transient, other client errors are not
        retryable=status is None or status >= 500 or status == 429,
        resource=resource,
    )


@dataclass
class NamespaceSnapshot:
    """Live RBAC objects and service accounts of one namespace, keyed by name."""

    namespace: str
    roles: dict[str, dict[str, Any]] = field(default_factory=dict)
    role_bindings: dict[str, dict[str, Any]] = field(default_factory=dict)
    service_accounts: dict[str, dict[str, Any]] = field(default_factory=dict)


class KubernetesGateway:
    """
    Synchronous access to the Kubernetes objects the operator manages.

    Objects are exchanged as plain dicts in API server JSON form so that
    planning code never depends on the generated client models.
    """

    def __init__(self, k8s_client: client.ApiClient | None = None):
        self.k8s_client = k8s_client or get_kubernetes_client()
        self.rbac_api = client.RbacAuthorizationV1Api(self.k8s_client)
        self.core_api = client.CoreV1Api(self.k8s_client)

    def _to_dict(self, obj: Any) -> dict[str, Any]:
        return self.k8s_client.sanitize_for_serialization(obj)

    def _call(self, resource: str, func: Callable[..., Any], **kwargs) -> Any:
        try:
            return func(**kwargs)
        except ApiException as e:
            raise translate_api_exception(e, resource) from e

    def list_managed_namespaces(self) -> set[str]:
        """Namespaces that hold any object carrying the management label."""
        namespaces: set[str] = set()
        listers = (
            self.rbac_api.list_role_for_all_namespaces,
            self.rbac_api.list_role_binding_for_all_namespaces,
            self.core_api.list_service_account_for_all_namespaces,
        )
        for lister in listers:
            result = self._call(
                "managed objects", lister, label_selector=MANAGED_SELECTOR
            )
            namespaces.update(item.metadata.namespace for item in result.items)
        return namespaces

    def snapshot_namespace(self, namespace: str) -> NamespaceSnapshot:
        """List every Role, RoleBinding and ServiceAccount in a namespace."""
        roles = self._call(
            f"Role/{namespace}", self.rbac_api.list_namespaced_role, namespace=namespace
        )
        bindings = self._call(
            f"RoleBinding/{namespace}",
            self.rbac_api.list_namespaced_role_binding,
            namespace=namespace,
        )
        accounts = self._call(
            f"ServiceAccount/{namespace}",
            self.core_api.list_namespaced_service_account,
            namespace=namespace,
        )
        return NamespaceSnapshot(
            namespace=namespace,
            roles={r.metadata.name: self._to_dict(r) for r in roles.items},
            role_bindings={b.metadata.name: self._to_dict(b) for b in bindings.items},
            service_accounts={
                sa.metadata.name: self._to_dict(sa) for sa in accounts.items
            },
        )

    def apply(self, op: PatchOperation) -> None:
        """
        Apply one planned operation.

        Deleting an object that is already gone counts as success.

        Raises:
            OperatorError: Translated from the API failure
        """
        handlers = {
            (ResourceKind.ROLE, PatchAction.CREATE): (
                self.rbac_api.create_namespaced_role,
                {"namespace": op.namespace, "body": op.body},
            ),
            (ResourceKind.ROLE, PatchAction.UPDATE): (
                self.rbac_api.replace_namespaced_role,
                {"name": op.name, "namespace": op.namespace, "body": op.body},
            ),
            (ResourceKind.ROLE, PatchAction.DELETE): (
                self.rbac_api.delete_namespaced_role,
                {"name": op.name, "namespace": op.namespace},
            ),
            (ResourceKind.ROLE_BINDING, PatchAction.CREATE): (
                self.rbac_api.create_namespaced_role_binding,
                {"namespace": op.namespace, "body": op.body},
            ),
            (ResourceKind.ROLE_BINDING, PatchAction.UPDATE): (
                self.rbac_api.replace_namespaced_role_binding,
                {"name": op.name, "namespace": op.namespace, "body": op.body},
            ),
            (ResourceKind.ROLE_BINDING, PatchAction.DELETE): (
                self.rbac_api.delete_namespaced_role_binding,
                {"name": op.name, "namespace": op.namespace},
            ),
            (ResourceKind.SERVICE_ACCOUNT, PatchAction.CREATE): (
                self.core_api.create_namespaced_service_account,
                {"namespace": op.namespace, "body": op.body},
            ),
            (ResourceKind.SERVICE_ACCOUNT, PatchAction.UPDATE): (
                self.core_api.patch_namespaced_service_account,
                {"name": op.name, "namespace": op.namespace, "body": op.body},
            ),
            (ResourceKind.SERVICE_ACCOUNT, PatchAction.DELETE): (
                self.core_api.delete_namespaced_service_account,
                {"name": op.name, "namespace": op.namespace},
            ),
        }
        handler = handlers.get((op.kind, op.action))
        if handler is None:
            raise ValidationError(
                f"Unsupported operation {op.action} on {op.kind}", resource=op.resource_ref
            )

        func, kwargs = handler
        try:
            self._call(op.resource_ref, func, **kwargs)
        except NotFoundError:
            if op.action != PatchAction.DELETE:
                raise
            logger.debug(f"{op.resource_ref} already deleted")

    def read_json_config_map(
        self, namespace: str, name: str
    ) -> tuple[dict[str, str], str | None]:
        """
        Read the data of a ConfigMap together with its resourceVersion.

        Returns:
            Tuple of (data, resource_version); ({}, None) when it does not exist
        """
        try:
            cm = self._call(
                f"ConfigMap/{namespace}/{name}",
                self.core_api.read_namespaced_config_map,
                name=name,
                namespace=namespace,
            )
        except NotFoundError:
            return {}, None
        return dict(cm.data or {}), cm.metadata.resource_version

    def write_json_config_map(
        self,
        namespace: str,
        name: str,
        data: dict[str, str],
        resource_version: str | None,
        component: str,
    ) -> str | None:
        """
        Write ConfigMap data guarded by the resourceVersion read earlier.

        A None resource_version creates the ConfigMap. The API server rejects
        stale versions with HTTP 409, surfaced as ConflictError.

        Returns:
            The new resourceVersion
        """
        body = {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {
                "name": name,
                "namespace": namespace,
                "labels": {
                    "app.kubernetes.io/name": MANAGED_BY_LABEL_VALUE,
                    **create_ownership_labels(component),
                },
            },
            "data": data,
        }
        resource = f"ConfigMap/{namespace}/{name}"
        if resource_version is None:
            result = self._call(
                resource,
                self.core_api.create_namespaced_config_map,
                namespace=namespace,
                body=body,
            )
        else:
            body["metadata"]["resourceVersion"] = resource_version
            result = self._call(
                resource,
                self.core_api.replace_namespaced_config_map,
                name=name,
                namespace=namespace,
                body=body,
            )
        return result.metadata.resource_version
