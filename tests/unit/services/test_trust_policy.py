"""Unit tests for trust-policy synthesis, validation and drift detection."""

import copy

import pytest

from irsa_operator.constants import ASSUME_ROLE_WITH_WEB_IDENTITY, REVOKED_STATEMENT_SID
from irsa_operator.errors import MalformedTrustPolicy, ValidationError
from irsa_operator.services import TrustPolicySynthesizer
from irsa_operator.services.trust_policy import (
    canonical_statement,
    is_managed_statement,
    statement_sid,
)
from tests.fixtures.backends import ISSUER, ISSUER_URL, PROVIDER_ARN, ROLE_ARN
from tests.fixtures.identity import make_mapping

FOREIGN_STATEMENT = {
    "Sid": "BreakGlass",
    "Effect": "Allow",
    "Principal": {"Federated": PROVIDER_ARN},
    "Action": ASSUME_ROLE_WITH_WEB_IDENTITY,
    "Condition": {"StringEquals": {f"{ISSUER}:sub": "system:serviceaccount:ops:admin"}},
}


@pytest.fixture
def synthesizer():
    return TrustPolicySynthesizer()


class TestStatementIdentity:
    def test_sid_is_stable_and_prefixed(self):
        sid = statement_sid("demo-namespace", "demo-service-account")
        assert sid == statement_sid("demo-namespace", "demo-service-account")
        assert sid.startswith("IrsaOperator")
        assert sid.isalnum()

    def test_sid_differs_per_service_account(self):
        assert statement_sid("ns", "a") != statement_sid("ns", "b")

    def test_managed_statement_detection(self):
        assert is_managed_statement({"Sid": statement_sid("ns", "sa")})
        assert not is_managed_statement(FOREIGN_STATEMENT)
        assert not is_managed_statement({})


class TestSynthesize:
    def test_single_statement_policy(self, synthesizer):
        document = synthesizer.synthesize(make_mapping(), ISSUER_URL)

        assert document["Version"] == "2012-10-17"
        assert len(document["Statement"]) == 1
        statement = document["Statement"][0]
        assert statement["Principal"] == {"Federated": PROVIDER_ARN}
        assert statement["Condition"]["StringEquals"][f"{ISSUER}:aud"] == "sts.amazonaws.com"

    def test_issuer_scheme_and_slash_are_dropped(self, synthesizer):
        mapping = make_mapping()
        plain = synthesizer.synthesize(mapping, ISSUER_URL)
        slashed = synthesizer.synthesize(mapping, ISSUER_URL + "/")

        assert plain == slashed

    def test_provider_arn_uses_role_partition_and_account(self, synthesizer):
        arn = synthesizer.provider_arn(
            "arn:aws-cn:iam::210987654321:role/app", "https://oidc.example.cn/id/ABC"
        )
        assert arn == "arn:aws-cn:iam::210987654321:oidc-provider/oidc.example.cn/id/ABC"

    def test_missing_issuer(self, synthesizer):
        with pytest.raises(ValidationError):
            synthesizer.provider_arn(ROLE_ARN, "")

    def test_unregistered_provider(self, synthesizer):
        with pytest.raises(ValidationError):
            synthesizer.verify_provider(PROVIDER_ARN, [], ROLE_ARN)
        synthesizer.verify_provider(PROVIDER_ARN, [PROVIDER_ARN], ROLE_ARN)


class TestRenderDocument:
    def test_foreign_statements_are_preserved(self, synthesizer):
        observed = {"Version": "2012-10-17", "Statement": [FOREIGN_STATEMENT]}

        document = synthesizer.render_document(
            ROLE_ARN, observed, [make_mapping()], ISSUER_URL
        )

        assert document["Statement"][0] == FOREIGN_STATEMENT
        assert is_managed_statement(document["Statement"][1])

    def test_stale_managed_statements_are_replaced(self, synthesizer):
        stale = synthesizer.statement_for(make_mapping(service_account="retired"), ISSUER_URL)
        observed = {"Version": "2012-10-17", "Statement": [stale]}

        document = synthesizer.render_document(
            ROLE_ARN, observed, [make_mapping()], ISSUER_URL
        )

        assert document["Statement"] == [synthesizer.statement_for(make_mapping(), ISSUER_URL)]

    def test_managed_statements_are_ordered_by_key(self, synthesizer):
        mappings = [make_mapping(service_account="zeta"), make_mapping(service_account="alpha")]

        document = synthesizer.render_document(ROLE_ARN, None, mappings, ISSUER_URL)

        subjects = [
            s["Condition"]["StringEquals"][f"{ISSUER}:sub"] for s in document["Statement"]
        ]
        assert subjects == [
            "system:serviceaccount:demo-namespace:alpha",
            "system:serviceaccount:demo-namespace:zeta",
        ]

    def test_empty_document_gets_deny_placeholder(self, synthesizer):
        document = synthesizer.render_document(ROLE_ARN, None, [], ISSUER_URL)

        assert document["Statement"] == [
            {
                "Sid": REVOKED_STATEMENT_SID,
                "Effect": "Deny",
                "Principal": {"Federated": PROVIDER_ARN},
                "Action": ASSUME_ROLE_WITH_WEB_IDENTITY,
            }
        ]

    def test_observed_document_is_not_mutated(self, synthesizer):
        observed = {"Version": "2012-10-17", "Statement": [copy.deepcopy(FOREIGN_STATEMENT)]}
        before = copy.deepcopy(observed)

        synthesizer.render_document(ROLE_ARN, observed, [make_mapping()], ISSUER_URL)

        assert observed == before


class TestDiff:
    """Semantic comparison of trust policies."""

    def test_reordering_is_not_drift(self, synthesizer):
        a = synthesizer.statement_for(make_mapping(service_account="a"), ISSUER_URL)
        b = synthesizer.statement_for(make_mapping(service_account="b"), ISSUER_URL)
        expected = {"Statement": [a, b]}
        observed = {"Statement": [copy.deepcopy(b), copy.deepcopy(a)]}

        assert synthesizer.diff(expected, observed).is_empty

    def test_scalar_and_list_forms_are_equivalent(self, synthesizer):
        statement = synthesizer.statement_for(make_mapping(), ISSUER_URL)
        listed = copy.deepcopy(statement)
        listed["Action"] = [ASSUME_ROLE_WITH_WEB_IDENTITY]
        listed["Principal"]["Federated"] = [PROVIDER_ARN]
        for key, value in list(listed["Condition"]["StringEquals"].items()):
            listed["Condition"]["StringEquals"][key] = [value]

        assert synthesizer.diff({"Statement": [statement]}, {"Statement": listed}).is_empty

    def test_action_case_is_ignored(self, synthesizer):
        statement = synthesizer.statement_for(make_mapping(), ISSUER_URL)
        shouted = dict(statement, Action=ASSUME_ROLE_WITH_WEB_IDENTITY.upper())

        assert synthesizer.diff({"Statement": [statement]}, {"Statement": [shouted]}).is_empty

    def test_missing_and_extra(self, synthesizer):
        wanted = synthesizer.statement_for(make_mapping(), ISSUER_URL)

        delta = synthesizer.diff({"Statement": [wanted]}, {"Statement": [FOREIGN_STATEMENT]})

        assert delta.missing_statements == [wanted]
        assert delta.extra_statements == [FOREIGN_STATEMENT]
        assert delta.condition_mismatches == []
        assert delta.summary() == "1 missing, 1 extra, 0 condition mismatches"

    def test_changed_condition_is_a_mismatch(self, synthesizer):
        wanted = synthesizer.statement_for(make_mapping(), ISSUER_URL)
        drifted = copy.deepcopy(wanted)
        drifted["Condition"]["StringEquals"][f"{ISSUER}:aud"] = "someone-else"

        delta = synthesizer.diff({"Statement": [wanted]}, {"Statement": [drifted]})

        assert delta.missing_statements == []
        assert delta.extra_statements == []
        assert len(delta.condition_mismatches) == 1
        mismatch = delta.condition_mismatches[0]
        assert mismatch.sid == wanted["Sid"]
        assert mismatch.observed["StringEquals"][f"{ISSUER}:aud"] == "someone-else"

    def test_duplicates_count(self, synthesizer):
        wanted = synthesizer.statement_for(make_mapping(), ISSUER_URL)

        delta = synthesizer.diff(
            {"Statement": [wanted]}, {"Statement": [wanted, copy.deepcopy(wanted)]}
        )

        assert len(delta.extra_statements) == 1

    def test_round_trip_through_synthesize(self, synthesizer):
        document = synthesizer.synthesize(make_mapping(), ISSUER_URL)
        observed = copy.deepcopy(document)

        assert synthesizer.diff(document, observed).is_empty
        assert canonical_statement(document["Statement"][0]) == canonical_statement(
            observed["Statement"][0]
        )


class TestValidate:
    def test_blank_slate_passes(self, synthesizer):
        synthesizer.validate(None, ROLE_ARN)
        synthesizer.validate({"Version": "2012-10-17", "Statement": []}, ROLE_ARN)

    def test_federated_policy_passes(self, synthesizer):
        synthesizer.validate({"Statement": [FOREIGN_STATEMENT]}, ROLE_ARN)

    def test_wildcard_action_passes(self, synthesizer):
        synthesizer.validate(
            {"Statement": {"Effect": "Allow", "Principal": "*", "Action": "sts:*"}}, ROLE_ARN
        )

    def test_non_federated_policy_is_malformed(self, synthesizer):
        observed = {
            "Statement": [
                {
                    "Effect": "Allow",
                    "Principal": {"Service": "ec2.amazonaws.com"},
                    "Action": "sts:AssumeRole",
                }
            ]
        }

        with pytest.raises(MalformedTrustPolicy) as exc_info:
            synthesizer.validate(observed, ROLE_ARN)

        assert exc_info.value.retryable is False
        assert exc_info.value.resource == ROLE_ARN

    def test_non_object_is_malformed(self, synthesizer):
        with pytest.raises(MalformedTrustPolicy):
            synthesizer.validate(["not", "a", "policy"], ROLE_ARN)
