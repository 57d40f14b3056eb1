"""
Trust-policy synthesis, validation and drift detection.

The trust (assume-role) policy of an IAM role decides which OIDC subjects may
call AssumeRoleWithWebIdentity for it. Every identity mapping contributes one
statement, tagged with a Sid derived from its (namespace, serviceAccount) so
the operator can tell its own statements apart from hand-written ones.

Comparison is semantic: statement order, action and principal order and the
order of condition values never produce drift.
"""

import copy
import hashlib
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from irsa_operator.constants import (
    ASSUME_ROLE_WITH_WEB_IDENTITY,
    POLICY_VERSION,
    REVOKED_STATEMENT_SID,
    TRUST_STATEMENT_SID_PREFIX,
)
from irsa_operator.errors import MalformedTrustPolicy, ValidationError
from irsa_operator.models import IdentityMapping, normalize_issuer, parse_role_arn

logger = logging.getLogger(__name__)

_WEB_IDENTITY_ACTIONS = {ASSUME_ROLE_WITH_WEB_IDENTITY.lower(), "sts:*", "*"}


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list | tuple | set | frozenset):
        return list(value)
    return [value]


def policy_statements(document: Any) -> list[dict[str, Any]]:
    """Statements of a policy document; IAM allows a bare statement object."""
    if not isinstance(document, dict):
        return []
    return [s for s in _as_list(document.get("Statement")) if isinstance(s, dict)]


def _canonical_principal(principal: Any) -> frozenset:
    if principal == "*":
        return frozenset({("*", "*")})
    if not isinstance(principal, dict):
        return frozenset()
    return frozenset(
        (kind, str(value))
        for kind, values in principal.items()
        for value in _as_list(values)
    )


def _canonical_condition(condition: Any) -> frozenset:
    if not isinstance(condition, dict):
        return frozenset()
    return frozenset(
        (operator, key, frozenset(str(v) for v in _as_list(values)))
        for operator, block in condition.items()
        if isinstance(block, dict)
        for key, values in block.items()
    )


def _canonical_head(statement: dict[str, Any]) -> tuple:
    """Everything that identifies a statement except its conditions and Sid."""
    return (
        statement.get("Effect"),
        _canonical_principal(statement.get("Principal")),
        frozenset(str(a).lower() for a in _as_list(statement.get("Action"))),
        frozenset(str(a).lower() for a in _as_list(statement.get("NotAction"))),
    )


def canonical_statement(statement: dict[str, Any]) -> tuple:
    """Order-insensitive form of a statement used for comparison. Sid is ignored."""
    return (*_canonical_head(statement), _canonical_condition(statement.get("Condition")))


def is_managed_statement(statement: dict[str, Any]) -> bool:
    return str(statement.get("Sid") or "").startswith(TRUST_STATEMENT_SID_PREFIX)


def statement_sid(namespace: str, service_account: str) -> str:
    digest = hashlib.sha256(f"{namespace}:{service_account}".encode()).hexdigest()
    return f"{TRUST_STATEMENT_SID_PREFIX}{digest[:16]}"


@dataclass(frozen=True)
class ConditionMismatch:
    """Same statement on both sides, different conditions."""

    sid: str | None
    expected: dict[str, Any]
    observed: dict[str, Any]


@dataclass
class TrustPolicyDelta:
    """Structural difference between an expected and an observed trust policy."""

    missing_statements: list[dict[str, Any]] = field(default_factory=list)
    extra_statements: list[dict[str, Any]] = field(default_factory=list)
    condition_mismatches: list[ConditionMismatch] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (
            self.missing_statements or self.extra_statements or self.condition_mismatches
        )

    def summary(self) -> str:
        return (
            f"{len(self.missing_statements)} missing, "
            f"{len(self.extra_statements)} extra, "
            f"{len(self.condition_mismatches)} condition mismatches"
        )


class TrustPolicySynthesizer:
    """Renders, validates and diffs IAM trust policies for identity mappings."""

    def provider_arn(self, role_arn: str, issuer_url: str) -> str:
        """
        ARN of the OIDC provider for the issuer, in the role's own account.

        Raises:
            ValidationError: If the role ARN or issuer URL is unusable
        """
        issuer = normalize_issuer(issuer_url)
        if not issuer:
            raise ValidationError(
                "OIDC issuer URL is not configured",
                field="oidcIssuerUrl",
                user_action="Set OIDC_ISSUER_URL to the cluster's service account issuer",
            )
        parts = parse_role_arn(role_arn)
        return f"arn:{parts['partition']}:iam::{parts['account']}:oidc-provider/{issuer}"

    def verify_provider(
        self, provider_arn: str, registered: Iterable[str], role_arn: str
    ) -> None:
        """
        Raises:
            ValidationError: If the provider is not registered in the account
        """
        if provider_arn not in set(registered):
            raise ValidationError(
                f"OIDC provider {provider_arn} is not registered in IAM",
                user_action="Register the cluster OIDC issuer as an IAM identity provider",
                resource=role_arn,
            )

    def statement_for(self, mapping: IdentityMapping, issuer_url: str) -> dict[str, Any]:
        """The trust statement granting one mapping's service account."""
        issuer = normalize_issuer(issuer_url)
        return {
            "Sid": statement_sid(mapping.namespace, mapping.service_account),
            "Effect": "Allow",
            "Principal": {"Federated": self.provider_arn(mapping.role_arn, issuer_url)},
            "Action": ASSUME_ROLE_WITH_WEB_IDENTITY,
            "Condition": {
                "StringEquals": {
                    f"{issuer}:sub": mapping.subject_claim,
                    f"{issuer}:aud": mapping.audience,
                }
            },
        }

    def synthesize(self, mapping: IdentityMapping, issuer_url: str) -> dict[str, Any]:
        """Canonical single-statement trust policy for a mapping."""
        return {
            "Version": POLICY_VERSION,
            "Statement": [self.statement_for(mapping, issuer_url)],
        }

    def render_document(
        self,
        role_arn: str,
        observed: dict[str, Any] | None,
        mappings: Iterable[IdentityMapping],
        issuer_url: str,
    ) -> dict[str, Any]:
        """
        Desired trust policy of a role given its observed policy.

        Foreign statements are kept as they are, managed ones are replaced by
        one statement per mapping. IAM rejects a trust policy without
        statements, so an emptied document gets a managed Deny placeholder.
        """
        foreign = [
            copy.deepcopy(s) for s in policy_statements(observed) if not is_managed_statement(s)
        ]
        ordered = sorted(mappings, key=lambda m: m.key)
        managed = [self.statement_for(m, issuer_url) for m in ordered]

        statements = foreign + managed
        if not statements:
            statements = [
                {
                    "Sid": REVOKED_STATEMENT_SID,
                    "Effect": "Deny",
                    "Principal": {"Federated": self.provider_arn(role_arn, issuer_url)},
                    "Action": ASSUME_ROLE_WITH_WEB_IDENTITY,
                }
            ]

        version = POLICY_VERSION
        if isinstance(observed, dict) and observed.get("Version"):
            version = observed["Version"]
        return {"Version": version, "Statement": statements}

    def diff(
        self, expected: dict[str, Any] | None, observed: dict[str, Any] | None
    ) -> TrustPolicyDelta:
        """
        Structural delta between two trust policies.

        Statements are matched as a multiset of canonical forms. Leftovers
        that share a Sid and agree on everything but their conditions are
        reported as condition mismatches instead of a missing/extra pair.
        """
        unmatched_observed = list(policy_statements(observed))
        unmatched_expected: list[dict[str, Any]] = []

        for statement in policy_statements(expected):
            form = canonical_statement(statement)
            for i, candidate in enumerate(unmatched_observed):
                if canonical_statement(candidate) == form:
                    del unmatched_observed[i]
                    break
            else:
                unmatched_expected.append(statement)

        delta = TrustPolicyDelta()
        for statement in unmatched_expected:
            sid = statement.get("Sid")
            partner = None
            if sid:
                for i, candidate in enumerate(unmatched_observed):
                    if candidate.get("Sid") == sid and _canonical_head(
                        candidate
                    ) == _canonical_head(statement):
                        partner = unmatched_observed.pop(i)
                        break
            if partner is None:
                delta.missing_statements.append(statement)
            else:
                delta.condition_mismatches.append(
                    ConditionMismatch(
                        sid=sid,
                        expected=statement.get("Condition") or {},
                        observed=partner.get("Condition") or {},
                    )
                )
        delta.extra_statements.extend(unmatched_observed)
        return delta

    def validate(self, observed: Any, role_arn: str = "") -> None:
        """
        Check that an observed trust policy is federation-capable.

        A policy without statements is a blank slate and passes.

        Raises:
            MalformedTrustPolicy: If statements exist but none allows or denies
                sts:AssumeRoleWithWebIdentity, or the document is not an object
        """
        if observed is None:
            return
        if not isinstance(observed, dict):
            raise MalformedTrustPolicy(
                role_arn, message=f"Trust policy of {role_arn} is not a JSON object"
            )

        statements = policy_statements(observed)
        if not statements:
            return

        for statement in statements:
            actions = {str(a).lower() for a in _as_list(statement.get("Action"))}
            if actions & _WEB_IDENTITY_ACTIONS:
                return
        raise MalformedTrustPolicy(role_arn)
