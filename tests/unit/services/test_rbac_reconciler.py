"""Unit tests for RBAC planning."""

import itertools

import pytest

from irsa_operator.constants import (
    ANNOTATED_BY_ANNOTATION,
    AUDIENCE_ANNOTATION,
    MANAGED_ROLE_NAME,
    ROLE_ARN_ANNOTATION,
)
from irsa_operator.errors import PolicyMergeConflict
from irsa_operator.models import PatchAction, ResourceKind
from irsa_operator.services import RbacPolicyReconciler, role_binding_name
from irsa_operator.services.rbac_reconciler import normalize_rules
from irsa_operator.utils.kubernetes import NamespaceSnapshot
from tests.fixtures.backends import ROLE_ARN
from tests.fixtures.identity import (
    DEMO_NAMESPACE,
    DEMO_SERVICE_ACCOUNT,
    make_intent,
    make_mapping,
)


@pytest.fixture
def reconciler():
    return RbacPolicyReconciler()


def empty_snapshot(namespace: str = DEMO_NAMESPACE) -> NamespaceSnapshot:
    return NamespaceSnapshot(namespace=namespace)


def applied_snapshot(reconciler, intents, mappings) -> NamespaceSnapshot:
    """Snapshot of a namespace after a plan from scratch has been applied."""
    snapshot = empty_snapshot()
    for op in reconciler.plan(DEMO_NAMESPACE, intents, mappings, snapshot).operations:
        target = {
            ResourceKind.ROLE: snapshot.roles,
            ResourceKind.ROLE_BINDING: snapshot.role_bindings,
            ResourceKind.SERVICE_ACCOUNT: snapshot.service_accounts,
        }[op.kind]
        target[op.name] = op.body
    return snapshot


def summarize(plan) -> list[tuple[str, str, str]]:
    return [(str(op.action), str(op.kind), op.name) for op in plan.operations]


class TestRoleBindingName:
    def test_prefixed_name(self):
        assert role_binding_name("demo-service-account") == "irsa-access-demo-service-account"

    def test_long_names_are_truncated_with_digest(self):
        name = role_binding_name("a" * 253)
        assert len(name) <= 253
        assert name.startswith("irsa-access-aaa")
        assert name != role_binding_name("a" * 252 + "b")


class TestMergeRules:
    """Aggregating access intents into Role rules."""

    def test_verbs_are_unioned_per_kind(self, reconciler):
        intents = [
            make_intent(service_account="reader", rules=[("", ["configmaps"], ["get"])]),
            make_intent(service_account="writer", rules=[("", ["configmaps"], ["update"])]),
        ]

        rules = reconciler.merge_rules(DEMO_NAMESPACE, intents)

        assert rules == [
            {"apiGroups": [""], "resources": ["configmaps"], "verbs": ["get", "update"]}
        ]

    def test_kinds_with_equal_verbs_share_a_rule(self, reconciler):
        intents = [
            make_intent(
                rules=[
                    ("", ["secrets"], ["get"]),
                    ("", ["configmaps"], ["get"]),
                    ("apps", ["deployments"], ["list", "get"]),
                ]
            )
        ]

        rules = reconciler.merge_rules(DEMO_NAMESPACE, intents)

        assert rules == [
            {"apiGroups": [""], "resources": ["configmaps", "secrets"], "verbs": ["get"]},
            {"apiGroups": ["apps"], "resources": ["deployments"], "verbs": ["get", "list"]},
        ]

    def test_adding_an_intent_never_removes_verbs(self, reconciler):
        base = [make_intent(rules=[("", ["pods"], ["get", "list"])])]
        extended = base + [
            make_intent(service_account="other", rules=[("", ["pods"], ["watch"])])
        ]

        before = normalize_rules(reconciler.merge_rules(DEMO_NAMESPACE, base))
        after = normalize_rules(reconciler.merge_rules(DEMO_NAMESPACE, extended))

        for key, verbs in before.items():
            assert verbs <= after[key]

    def test_strict_policy_rejects_differing_verbs(self):
        reconciler = RbacPolicyReconciler(merge_policy="strict")
        intents = [
            make_intent(service_account="reader", rules=[("", ["configmaps"], ["get"])]),
            make_intent(
                service_account="writer", rules=[("", ["configmaps"], ["get", "update"])]
            ),
        ]

        with pytest.raises(PolicyMergeConflict) as exc_info:
            reconciler.merge_rules(DEMO_NAMESPACE, intents)

        assert "configmaps" in str(exc_info.value)
        assert exc_info.value.retryable is False

    def test_strict_policy_accepts_identical_verbs(self):
        reconciler = RbacPolicyReconciler(merge_policy="strict")
        intents = [
            make_intent(service_account="a", rules=[("", ["configmaps"], ["get"])]),
            make_intent(service_account="b", rules=[("", ["configmaps"], ["get"])]),
        ]

        rules = reconciler.merge_rules(DEMO_NAMESPACE, intents)

        assert rules == [{"apiGroups": [""], "resources": ["configmaps"], "verbs": ["get"]}]

    def test_unknown_merge_policy(self):
        with pytest.raises(ValueError):
            RbacPolicyReconciler(merge_policy="permissive")


class TestOrderIndependence:
    """Merged rules and plans do not depend on declaration order."""

    INTENTS = [
        make_intent(
            service_account="reader",
            rules=[("", ["configmaps", "events"], ["get"]), ("apps", ["deployments"], ["get"])],
        ),
        make_intent(
            service_account="writer",
            rules=[("", ["configmaps"], ["update"]), ("events.k8s.io", ["events"], ["create"])],
        ),
        make_intent(
            service_account="watcher",
            rules=[("apps", ["deployments"], ["watch"]), ("", ["events"], ["list"])],
        ),
    ]

    def test_merge_rules_is_order_insensitive(self, reconciler):
        expected = reconciler.merge_rules(DEMO_NAMESPACE, self.INTENTS)

        for order in itertools.permutations(self.INTENTS):
            assert reconciler.merge_rules(DEMO_NAMESPACE, list(order)) == expected

    def test_two_way_union(self, reconciler):
        a, b = self.INTENTS[:2]

        assert reconciler.merge_rules(DEMO_NAMESPACE, [a, b]) == reconciler.merge_rules(
            DEMO_NAMESPACE, [b, a]
        )
        merged = normalize_rules(reconciler.merge_rules(DEMO_NAMESPACE, [a, b]))
        assert merged[("", "configmaps")] == {"get", "update"}
        assert merged[("", "events")] == {"get"}
        assert merged[("events.k8s.io", "events")] == {"create"}

    def test_plan_is_order_insensitive(self, reconciler):
        mappings = [
            make_mapping(service_account=intent.service_account) for intent in self.INTENTS
        ]
        expected = reconciler.plan(DEMO_NAMESPACE, self.INTENTS, mappings, empty_snapshot())

        for intents in itertools.permutations(self.INTENTS):
            for ordered_mappings in (mappings, mappings[::-1]):
                plan = reconciler.plan(
                    DEMO_NAMESPACE, list(intents), ordered_mappings, empty_snapshot()
                )
                assert plan.operations == expected.operations


class TestPlanFromScratch:
    """Planning a namespace with nothing in it yet."""

    def test_creates_in_dependency_order(self, reconciler):
        plan = reconciler.plan(
            DEMO_NAMESPACE, [make_intent()], [make_mapping()], empty_snapshot()
        )

        assert summarize(plan) == [
            ("create", "ServiceAccount", DEMO_SERVICE_ACCOUNT),
            ("create", "Role", MANAGED_ROLE_NAME),
            ("create", "RoleBinding", role_binding_name(DEMO_SERVICE_ACCOUNT)),
        ]
        assert plan.skipped == []

    def test_created_objects_carry_management_label(self, reconciler):
        plan = reconciler.plan(
            DEMO_NAMESPACE, [make_intent()], [make_mapping()], empty_snapshot()
        )

        for op in plan.operations:
            labels = op.body["metadata"]["labels"]
            assert labels["irsa-operator.io/managed-by"] == "irsa-operator"

    def test_service_account_annotations(self, reconciler):
        plan = reconciler.plan(
            DEMO_NAMESPACE,
            [],
            [make_mapping(audience="internal-audience")],
            empty_snapshot(),
        )

        annotations = plan.operations[0].body["metadata"]["annotations"]
        assert annotations == {
            ROLE_ARN_ANNOTATION: ROLE_ARN,
            ANNOTATED_BY_ANNOTATION: "irsa-operator",
            AUDIENCE_ANNOTATION: "internal-audience",
        }

    def test_service_accounts_can_be_left_alone(self):
        reconciler = RbacPolicyReconciler(manage_service_accounts=False)

        plan = reconciler.plan(
            DEMO_NAMESPACE, [make_intent()], [make_mapping()], empty_snapshot()
        )

        assert [op.kind for op in plan.operations] == [
            ResourceKind.ROLE,
            ResourceKind.ROLE_BINDING,
        ]

    def test_other_namespaces_are_ignored(self, reconciler):
        plan = reconciler.plan(
            DEMO_NAMESPACE,
            [make_intent(namespace="elsewhere")],
            [make_mapping(namespace="elsewhere")],
            empty_snapshot(),
        )

        assert plan.is_empty


class TestPlanAgainstLiveState:
    """Planning against objects that already exist."""

    def test_applied_plan_is_idempotent(self, reconciler):
        intents, mappings = [make_intent()], [make_mapping()]
        snapshot = applied_snapshot(reconciler, intents, mappings)

        plan = reconciler.plan(DEMO_NAMESPACE, intents, mappings, snapshot)

        assert plan.is_empty
        assert plan.skipped == []

    def test_equivalent_rule_layout_is_not_drift(self, reconciler):
        intents, mappings = [make_intent()], [make_mapping()]
        snapshot = applied_snapshot(reconciler, intents, mappings)
        snapshot.roles[MANAGED_ROLE_NAME]["rules"] = [
            {"apiGroups": [""], "resources": ["configmaps"], "verbs": ["list"]},
            {"apiGroups": [""], "resources": ["configmaps"], "verbs": ["get"]},
        ]

        plan = reconciler.plan(DEMO_NAMESPACE, intents, mappings, snapshot)

        assert plan.is_empty

    def test_changed_verbs_update_the_role(self, reconciler):
        snapshot = applied_snapshot(reconciler, [make_intent()], [make_mapping()])
        intents = [make_intent(rules=[("", ["configmaps"], ["get", "list", "watch"])])]

        plan = reconciler.plan(DEMO_NAMESPACE, intents, [make_mapping()], snapshot)

        assert summarize(plan) == [("update", "Role", MANAGED_ROLE_NAME)]

    def test_changed_role_ref_is_recreated(self, reconciler):
        intents, mappings = [make_intent()], [make_mapping()]
        snapshot = applied_snapshot(reconciler, intents, mappings)
        name = role_binding_name(DEMO_SERVICE_ACCOUNT)
        snapshot.role_bindings[name]["roleRef"] = {
            "apiGroup": "rbac.authorization.k8s.io",
            "kind": "ClusterRole",
            "name": "view",
        }

        plan = reconciler.plan(DEMO_NAMESPACE, intents, mappings, snapshot)

        assert summarize(plan) == [
            ("delete", "RoleBinding", name),
            ("create", "RoleBinding", name),
        ]

    def test_changed_role_arn_patches_annotation(self, reconciler):
        intents = [make_intent()]
        snapshot = applied_snapshot(reconciler, intents, [make_mapping()])
        new_arn = "arn:aws:iam::123456789012:role/replacement-role"

        plan = reconciler.plan(
            DEMO_NAMESPACE, intents, [make_mapping(role_arn=new_arn)], snapshot
        )

        assert summarize(plan) == [("update", "ServiceAccount", DEMO_SERVICE_ACCOUNT)]
        assert plan.operations[0].body == {
            "metadata": {"annotations": {ROLE_ARN_ANNOTATION: new_arn}}
        }

    def test_default_audience_removes_stale_annotation(self, reconciler):
        intents = [make_intent()]
        snapshot = applied_snapshot(
            reconciler, intents, [make_mapping(audience="internal-audience")]
        )

        plan = reconciler.plan(DEMO_NAMESPACE, intents, [make_mapping()], snapshot)

        assert plan.operations[0].body == {
            "metadata": {"annotations": {AUDIENCE_ANNOTATION: None}}
        }


class TestDeletionSafety:
    """Only objects carrying the management label are removed."""

    def test_removed_intents_delete_in_reverse_order(self, reconciler):
        snapshot = applied_snapshot(reconciler, [make_intent()], [make_mapping()])

        plan = reconciler.plan(DEMO_NAMESPACE, [], [], snapshot)

        assert summarize(plan) == [
            ("delete", "RoleBinding", role_binding_name(DEMO_SERVICE_ACCOUNT)),
            ("delete", "Role", MANAGED_ROLE_NAME),
            ("delete", "ServiceAccount", DEMO_SERVICE_ACCOUNT),
        ]

    def test_foreign_objects_are_never_deleted(self, reconciler):
        snapshot = empty_snapshot()
        snapshot.roles["hand-made"] = {"metadata": {"name": "hand-made"}}
        snapshot.role_bindings["hand-made"] = {"metadata": {"name": "hand-made"}}
        snapshot.service_accounts["default"] = {"metadata": {"name": "default"}}

        plan = reconciler.plan(DEMO_NAMESPACE, [], [], snapshot)

        assert plan.is_empty

    def test_foreign_role_with_managed_name_is_skipped(self, reconciler):
        snapshot = empty_snapshot()
        snapshot.roles[MANAGED_ROLE_NAME] = {
            "metadata": {"name": MANAGED_ROLE_NAME},
            "rules": [],
        }

        plan = reconciler.plan(DEMO_NAMESPACE, [make_intent()], [], snapshot)

        assert plan.is_empty
        assert [(op.kind, op.action) for op in plan.skipped] == [
            (ResourceKind.ROLE, PatchAction.NOOP),
            (ResourceKind.ROLE_BINDING, PatchAction.NOOP),
        ]

    def test_foreign_binding_with_managed_name_is_skipped(self, reconciler):
        name = role_binding_name(DEMO_SERVICE_ACCOUNT)
        snapshot = empty_snapshot()
        snapshot.role_bindings[name] = {"metadata": {"name": name}}

        plan = reconciler.plan(DEMO_NAMESPACE, [make_intent()], [], snapshot)

        assert summarize(plan) == [("create", "Role", MANAGED_ROLE_NAME)]
        assert [op.name for op in plan.skipped] == [name]

    def test_foreign_service_account_only_loses_our_annotations(self, reconciler):
        snapshot = empty_snapshot()
        snapshot.service_accounts[DEMO_SERVICE_ACCOUNT] = {
            "metadata": {
                "name": DEMO_SERVICE_ACCOUNT,
                "annotations": {
                    ROLE_ARN_ANNOTATION: ROLE_ARN,
                    ANNOTATED_BY_ANNOTATION: "irsa-operator",
                    "team": "payments",
                },
            }
        }

        plan = reconciler.plan(DEMO_NAMESPACE, [], [], snapshot)

        assert summarize(plan) == [("update", "ServiceAccount", DEMO_SERVICE_ACCOUNT)]
        assert plan.operations[0].body == {
            "metadata": {
                "annotations": {ROLE_ARN_ANNOTATION: None, ANNOTATED_BY_ANNOTATION: None}
            }
        }

    def test_hand_annotated_service_account_is_untouched(self, reconciler):
        snapshot = empty_snapshot()
        snapshot.service_accounts["legacy"] = {
            "metadata": {
                "name": "legacy",
                "annotations": {ROLE_ARN_ANNOTATION: ROLE_ARN},
            }
        }

        plan = reconciler.plan(DEMO_NAMESPACE, [], [], snapshot)

        assert plan.is_empty

    def test_stale_managed_binding_is_deleted(self, reconciler):
        snapshot = applied_snapshot(
            reconciler,
            [make_intent(), make_intent(service_account="retired")],
            [],
        )

        plan = reconciler.plan(DEMO_NAMESPACE, [make_intent()], [], snapshot)

        assert summarize(plan) == [("delete", "RoleBinding", "irsa-access-retired")]
