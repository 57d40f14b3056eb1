"""
RBAC policy planning.

For every namespace with access intents the operator keeps exactly one Role
(``irsa-access``) aggregating all intents in that namespace, and one
RoleBinding per service account binding it to that Role. Identity mappings
additionally get their ServiceAccount annotated with the IAM role ARN.

Planning is pure: it reads a NamespaceSnapshot and returns an ordered list of
PatchOperations. Only objects carrying the management label are ever updated
or deleted; foreign objects that collide with a desired name are reported as
skipped.
"""

import hashlib
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from irsa_operator.constants import (
    ANNOTATED_BY_ANNOTATION,
    AUDIENCE_ANNOTATION,
    DEFAULT_AUDIENCE,
    MANAGED_BY_LABEL_VALUE,
    MANAGED_ROLE_NAME,
    MAX_OBJECT_NAME_LENGTH,
    RBAC_API_GROUP,
    RBAC_API_VERSION,
    ROLE_ARN_ANNOTATION,
    ROLE_BINDING_PREFIX,
)
from irsa_operator.errors import PolicyMergeConflict
from irsa_operator.models import (
    AccessIntent,
    IdentityMapping,
    PatchAction,
    PatchOperation,
    ResourceKind,
)
from irsa_operator.utils.kubernetes import NamespaceSnapshot
from irsa_operator.utils.ownership import (
    create_ownership_labels,
    is_annotated_by_operator,
    is_managed_by_operator,
)

logger = logging.getLogger(__name__)

# Annotations this operator writes onto service accounts
OPERATOR_ANNOTATIONS = (ROLE_ARN_ANNOTATION, AUDIENCE_ANNOTATION, ANNOTATED_BY_ANNOTATION)

_APPLY_ORDER = {
    ResourceKind.SERVICE_ACCOUNT: 0,
    ResourceKind.ROLE: 1,
    ResourceKind.ROLE_BINDING: 2,
}
_DELETE_ORDER = {
    ResourceKind.ROLE_BINDING: 0,
    ResourceKind.ROLE: 1,
    ResourceKind.SERVICE_ACCOUNT: 2,
}


def role_binding_name(service_account: str) -> str:
    """Name of the managed RoleBinding for a service account."""
    name = f"{ROLE_BINDING_PREFIX}{service_account}"
    if len(name) <= MAX_OBJECT_NAME_LENGTH:
        return name
    digest = hashlib.sha256(service_account.encode()).hexdigest()[:10]
    return f"{name[: MAX_OBJECT_NAME_LENGTH - 11].rstrip('.-')}-{digest}"


def normalize_rules(rules: Iterable[dict[str, Any]] | None) -> dict[tuple, frozenset[str]]:
    """
    Flatten Role rules to {(apiGroup, resource, resourceNames): verbs}.

    Two rule lists granting the same access normalize to the same mapping
    regardless of how they group resources or order verbs.
    """
    normalized: dict[tuple, frozenset[str]] = {}
    for rule in rules or []:
        names = tuple(sorted(rule.get("resourceNames") or []))
        verbs = frozenset(rule.get("verbs") or [])
        for group in rule.get("apiGroups") or [""]:
            for resource in rule.get("resources") or []:
                key = (group, resource, names)
                normalized[key] = normalized.get(key, frozenset()) | verbs
    return normalized


def _subjects(binding: dict[str, Any], namespace: str) -> frozenset[tuple]:
    return frozenset(
        (s.get("kind"), s.get("name"), s.get("namespace") or namespace)
        for s in binding.get("subjects") or []
    )


def _role_ref(binding: dict[str, Any]) -> tuple:
    ref = binding.get("roleRef") or {}
    return (ref.get("apiGroup"), ref.get("kind"), ref.get("name"))


def _annotations(obj: dict[str, Any]) -> dict[str, str]:
    return dict((obj.get("metadata") or {}).get("annotations") or {})


@dataclass
class RbacPlan:
    """Ordered operations for one namespace plus what was deliberately left alone."""

    namespace: str
    operations: list[PatchOperation] = field(default_factory=list)
    skipped: list[PatchOperation] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.operations


class RbacPolicyReconciler:
    """Computes the minimal Role/RoleBinding/ServiceAccount changes per namespace."""

    def __init__(self, merge_policy: str = "additive", manage_service_accounts: bool = True):
        if merge_policy not in ("additive", "strict"):
            raise ValueError(f"unknown merge policy '{merge_policy}'")
        self.merge_policy = merge_policy
        self.manage_service_accounts = manage_service_accounts

    def merge_rules(self, namespace: str, intents: Iterable[AccessIntent]) -> list[dict[str, Any]]:
        """
        Aggregate the resource rules of all intents into Role rules.

        Verbs are unioned per (apiGroup, resourceKind). Kinds that end up with
        identical verb sets share one rule. Output order is deterministic.

        Raises:
            PolicyMergeConflict: Under the strict policy, when two declarations
                grant different verb sets for the same (apiGroup, resourceKind)
        """
        merged: dict[tuple[str, str], frozenset[str]] = {}
        for intent in intents:
            for rule in intent.resource_rules:
                for kind in rule.resource_kinds:
                    key = (rule.api_group, kind)
                    current = merged.get(key)
                    conflicting = current is not None and current != rule.verbs
                    if conflicting and self.merge_policy == "strict":
                        raise PolicyMergeConflict(
                            namespace,
                            rule.api_group,
                            kind,
                            sorted(current ^ rule.verbs),
                        )
                    merged[key] = (current or frozenset()) | rule.verbs

        grouped: dict[tuple[str, tuple[str, ...]], list[str]] = {}
        for (group, kind), verbs in merged.items():
            grouped.setdefault((group, tuple(sorted(verbs))), []).append(kind)

        return [
            {"apiGroups": [group], "resources": sorted(kinds), "verbs": list(verbs)}
            for (group, verbs), kinds in sorted(
                grouped.items(), key=lambda item: (item[0][0], sorted(item[1]), item[0][1])
            )
        ]

    def desired_role(self, namespace: str, rules: list[dict[str, Any]]) -> dict[str, Any]:
        return {
            "apiVersion": RBAC_API_VERSION,
            "kind": "Role",
            "metadata": {
                "name": MANAGED_ROLE_NAME,
                "namespace": namespace,
                "labels": create_ownership_labels("role"),
            },
            "rules": rules,
        }

    def desired_role_binding(self, namespace: str, service_account: str) -> dict[str, Any]:
        return {
            "apiVersion": RBAC_API_VERSION,
            "kind": "RoleBinding",
            "metadata": {
                "name": role_binding_name(service_account),
                "namespace": namespace,
                "labels": create_ownership_labels("rolebinding", service_account),
            },
            "roleRef": {"apiGroup": RBAC_API_GROUP, "kind": "Role", "name": MANAGED_ROLE_NAME},
            "subjects": [
                {"kind": "ServiceAccount", "name": service_account, "namespace": namespace}
            ],
        }

    def desired_annotations(self, mapping: IdentityMapping) -> dict[str, str]:
        annotations = {
            ROLE_ARN_ANNOTATION: mapping.role_arn,
            ANNOTATED_BY_ANNOTATION: MANAGED_BY_LABEL_VALUE,
        }
        if mapping.audience != DEFAULT_AUDIENCE:
            annotations[AUDIENCE_ANNOTATION] = mapping.audience
        return annotations

    def plan(
        self,
        namespace: str,
        intents: Iterable[AccessIntent],
        mappings: Iterable[IdentityMapping],
        snapshot: NamespaceSnapshot,
    ) -> RbacPlan:
        """
        Plan the changes that bring one namespace to its desired state.

        Creates and updates come first (ServiceAccounts, Role, RoleBindings),
        then deletions (RoleBindings, Role, ServiceAccounts), each group
        sorted by name.

        Raises:
            PolicyMergeConflict: Under the strict merge policy
        """
        intents = [i for i in intents if i.namespace == namespace]
        mappings = [m for m in mappings if m.namespace == namespace]
        plan = RbacPlan(namespace=namespace)
        applies: list[tuple[tuple, PatchOperation]] = []
        deletes: list[PatchOperation] = []

        def apply(op: PatchOperation, seq: int = 0) -> None:
            applies.append(((_APPLY_ORDER[op.kind], op.name, seq), op))

        def skip(kind: ResourceKind, name: str, reason: str) -> None:
            plan.skipped.append(
                _op(PatchAction.NOOP, kind, namespace, name, reason=reason)
            )

        if self.manage_service_accounts:
            self._plan_service_accounts(namespace, mappings, snapshot, apply, deletes)

        role_usable = self._plan_role(namespace, intents, snapshot, apply, skip)

        desired_bindings: set[str] = set()
        for service_account in sorted({i.service_account for i in intents}):
            binding = self.desired_role_binding(namespace, service_account)
            name = binding["metadata"]["name"]
            desired_bindings.add(name)
            if not role_usable:
                skip(
                    ResourceKind.ROLE_BINDING,
                    name,
                    "managed Role is not usable in this namespace",
                )
                continue

            live = snapshot.role_bindings.get(name)
            kind = ResourceKind.ROLE_BINDING
            if live is None:
                apply(_op(PatchAction.CREATE, kind, namespace, name, binding))
            elif not is_managed_by_operator(live):
                skip(kind, name, "foreign RoleBinding with the managed name exists")
            elif _role_ref(live) != _role_ref(binding):
                # roleRef is immutable, recreate in place
                apply(
                    _op(PatchAction.DELETE, kind, namespace, name, reason="roleRef changed"),
                    seq=0,
                )
                apply(_op(PatchAction.CREATE, kind, namespace, name, binding), seq=1)
            elif _subjects(live, namespace) != _subjects(binding, namespace):
                apply(_op(PatchAction.UPDATE, kind, namespace, name, binding))

        for name, live in snapshot.role_bindings.items():
            if name not in desired_bindings and is_managed_by_operator(live):
                deletes.append(
                    _op(
                        PatchAction.DELETE,
                        ResourceKind.ROLE_BINDING,
                        namespace,
                        name,
                        reason="no longer declared",
                    )
                )
        for name, live in snapshot.roles.items():
            if is_managed_by_operator(live) and not (intents and name == MANAGED_ROLE_NAME):
                deletes.append(
                    _op(
                        PatchAction.DELETE,
                        ResourceKind.ROLE,
                        namespace,
                        name,
                        reason="no longer declared",
                    )
                )

        plan.operations = [op for _, op in sorted(applies, key=lambda item: item[0])]
        plan.operations += sorted(
            deletes, key=lambda op: (_DELETE_ORDER[op.kind], op.name)
        )
        return plan

    def _plan_role(self, namespace, intents, snapshot, apply, skip) -> bool:
        """Plan the aggregated Role. Returns whether bindings may reference it."""
        if not intents:
            return False

        role = self.desired_role(namespace, self.merge_rules(namespace, intents))
        live = snapshot.roles.get(MANAGED_ROLE_NAME)
        kind = ResourceKind.ROLE
        if live is None:
            apply(_op(PatchAction.CREATE, kind, namespace, MANAGED_ROLE_NAME, role))
            return True
        if not is_managed_by_operator(live):
            skip(kind, MANAGED_ROLE_NAME, "foreign Role with the managed name exists")
            logger.warning(
                f"Role {namespace}/{MANAGED_ROLE_NAME} exists without the management "
                f"label, leaving it and its bindings untouched",
                extra={"namespace": namespace},
            )
            return False
        if normalize_rules(live.get("rules")) != normalize_rules(role["rules"]):
            apply(_op(PatchAction.UPDATE, kind, namespace, MANAGED_ROLE_NAME, role))
        return True

    def _plan_service_accounts(self, namespace, mappings, snapshot, apply, deletes) -> None:
        kind = ResourceKind.SERVICE_ACCOUNT
        desired_names = set()
        for mapping in mappings:
            name = mapping.service_account
            desired_names.add(name)
            wanted = self.desired_annotations(mapping)
            live = snapshot.service_accounts.get(name)
            if live is None:
                body = {
                    "apiVersion": "v1",
                    "kind": "ServiceAccount",
                    "metadata": {
                        "name": name,
                        "namespace": namespace,
                        "labels": create_ownership_labels("serviceaccount", name),
                        "annotations": wanted,
                    },
                }
                apply(_op(PatchAction.CREATE, kind, namespace, name, body))
                continue

            current = _annotations(live)
            patch: dict[str, str | None] = {
                key: value for key, value in wanted.items() if current.get(key) != value
            }
            if AUDIENCE_ANNOTATION not in wanted and AUDIENCE_ANNOTATION in current:
                patch[AUDIENCE_ANNOTATION] = None
            if patch:
                body = {"metadata": {"annotations": patch}}
                apply(_op(PatchAction.UPDATE, kind, namespace, name, body))

        for name, live in snapshot.service_accounts.items():
            if name in desired_names:
                continue
            if is_managed_by_operator(live):
                deletes.append(
                    _op(PatchAction.DELETE, kind, namespace, name, reason="mapping removed")
                )
            elif is_annotated_by_operator(live):
                current = _annotations(live)
                strip = {key: None for key in OPERATOR_ANNOTATIONS if key in current}
                # Foreign account: only our annotations go, ordered with the deletions
                deletes.append(
                    _op(
                        PatchAction.UPDATE,
                        kind,
                        namespace,
                        name,
                        {"metadata": {"annotations": strip}},
                        reason="mapping removed",
                    )
                )


def _op(
    action: PatchAction,
    kind: ResourceKind,
    namespace: str,
    name: str,
    body: dict[str, Any] | None = None,
    reason: str | None = None,
) -> PatchOperation:
    return PatchOperation(
        action=action, kind=kind, namespace=namespace, name=name, body=body, reason=reason
    )
