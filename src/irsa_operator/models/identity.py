"""
Identity and access models.

IdentityMapping ties a Kubernetes service account to an IAM role,
AccessIntent declares which in-cluster permissions that service account
needs, and TrustCondition is the OIDC federation condition derived from a
mapping for trust-policy comparison.
"""

import hashlib
import json
import re
from datetime import datetime
from typing import Any, TypeAlias, TypeVar

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from irsa_operator.constants import ALLOWED_VERBS, DEFAULT_AUDIENCE
from irsa_operator.errors import ValidationError

# RFC 1123 label (namespaces) and subdomain (service accounts)
_DNS_LABEL = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
_DNS_SUBDOMAIN = re.compile(
    r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$"
)
_ROLE_ARN = re.compile(
    r"^arn:(?P<partition>aws(?:-[a-z]+)*):iam::(?P<account>\d{12}):"
    r"role/(?P<path>(?:[\w+=,.@-]+/)*)(?P<name>[\w+=,.@-]{1,64})$"
)

MappingKey: TypeAlias = tuple[str, str]

M = TypeVar("M", bound=BaseModel)


def validate_namespace(value: str) -> str:
    """Check a namespace name against the RFC 1123 label grammar."""
    if not value or len(value) > 63 or not _DNS_LABEL.match(value):
        raise ValueError(f"'{value}' is not a valid namespace name")
    return value


def validate_service_account(value: str) -> str:
    """Check a service account name against the RFC 1123 subdomain grammar."""
    if not value or len(value) > 253 or not _DNS_SUBDOMAIN.match(value):
        raise ValueError(f"'{value}' is not a valid service account name")
    return value


def validate_role_arn(value: str) -> str:
    """Check an IAM role ARN against the ARN grammar."""
    if not value or not _ROLE_ARN.match(value):
        raise ValueError(f"'{value}' is not a valid IAM role ARN")
    return value


def parse_role_arn(role_arn: str) -> dict[str, str]:
    """
    Split a role ARN into partition, account, path and name.

    Raises:
        ValidationError: If the ARN does not match the role ARN grammar
    """
    match = _ROLE_ARN.match(role_arn or "")
    if not match:
        raise ValidationError(f"'{role_arn}' is not a valid IAM role ARN", field="roleArn")
    return match.groupdict()


def normalize_issuer(issuer_url: str) -> str:
    """Strip the scheme and trailing slash, the form IAM uses in condition keys."""
    issuer = (issuer_url or "").strip()
    issuer = re.sub(r"^https?://", "", issuer)
    return issuer.rstrip("/")


def parse_model(
    model_cls: type[M], data: Any, resource: str | None = None
) -> M:
    """
    Validate raw data into a model, translating pydantic errors.

    Raises:
        ValidationError: With the first offending field named
    """
    try:
        return model_cls.model_validate(data)
    except pydantic.ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ())) or None
        raise ValidationError(first.get("msg", str(e)), field=field, resource=resource) from e


class IdentityMapping(BaseModel):
    """Binding of one (namespace, service account) to one IAM role."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    namespace: str = Field(..., description="Namespace of the service account")
    service_account: str = Field(
        ..., alias="serviceAccount", description="Name of the service account"
    )
    role_arn: str = Field(..., alias="roleArn", description="ARN of the IAM role")
    audience: str = Field(
        DEFAULT_AUDIENCE, min_length=1, description="Allowed token audience"
    )
    created_at: datetime | None = Field(
        None, alias="createdAt", description="When the mapping was first recorded"
    )
    last_reconciled_at: datetime | None = Field(
        None,
        alias="lastReconciledAt",
        description="When the mapping was last applied successfully",
    )
    fingerprint: str | None = Field(
        None, description="Fingerprint of the trust condition last applied"
    )

    @field_validator("namespace")
    @classmethod
    def _check_namespace(cls, v: str) -> str:
        return validate_namespace(v)

    @field_validator("service_account")
    @classmethod
    def _check_service_account(cls, v: str) -> str:
        return validate_service_account(v)

    @field_validator("role_arn")
    @classmethod
    def _check_role_arn(cls, v: str) -> str:
        return validate_role_arn(v)

    @property
    def key(self) -> MappingKey:
        return (self.namespace, self.service_account)

    @property
    def ref(self) -> str:
        return f"IdentityMapping/{self.namespace}/{self.service_account}"

    @property
    def subject_claim(self) -> str:
        return f"system:serviceaccount:{self.namespace}:{self.service_account}"

    @property
    def account_id(self) -> str:
        return parse_role_arn(self.role_arn)["account"]

    def ensure_valid(self) -> "IdentityMapping":
        """
        Re-run the grammar checks.

        Instances built with ``model_construct`` skip validation, so the
        store calls this before accepting a write.

        Raises:
            ValidationError: If any identifier fails its grammar check
        """
        checks = (
            ("namespace", validate_namespace, self.namespace),
            ("serviceAccount", validate_service_account, self.service_account),
            ("roleArn", validate_role_arn, self.role_arn),
        )
        for field, check, value in checks:
            try:
                check(value)
            except (ValueError, TypeError) as e:
                raise ValidationError(str(e), field=field, resource=self.ref) from e
        if not self.audience:
            raise ValidationError(
                "audience must not be empty", field="audience", resource=self.ref
            )
        return self

    def declaration_equals(self, other: "IdentityMapping") -> bool:
        """Compare the operator-declared fields, ignoring bookkeeping."""
        return (
            self.key == other.key
            and self.role_arn == other.role_arn
            and self.audience == other.audience
        )


class ResourceRule(BaseModel):
    """Verbs granted on a set of resource kinds within one API group."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    api_group: str = Field("", alias="apiGroup", description="API group, '' for core")
    resource_kinds: frozenset[str] = Field(
        ..., alias="resourceKinds", description="Resource kinds (plural names)"
    )
    verbs: frozenset[str] = Field(..., description="Granted verbs")

    @field_validator("resource_kinds")
    @classmethod
    def _check_kinds(cls, v: frozenset[str]) -> frozenset[str]:
        if not v:
            raise ValueError("resourceKinds must not be empty")
        if any(not kind or not kind.strip() for kind in v):
            raise ValueError("resourceKinds must not contain empty names")
        return v

    @field_validator("verbs")
    @classmethod
    def _check_verbs(cls, v: frozenset[str]) -> frozenset[str]:
        if not v:
            raise ValueError("verbs must not be empty")
        unknown = sorted(v - ALLOWED_VERBS)
        if unknown:
            raise ValueError(
                f"unsupported verbs {unknown}; allowed: {sorted(ALLOWED_VERBS)}"
            )
        return v

    @field_serializer("resource_kinds", "verbs")
    def _sorted(self, v: frozenset[str]) -> list[str]:
        return sorted(v)


class AccessIntent(BaseModel):
    """In-cluster permissions a service account needs in its namespace."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    namespace: str = Field(..., description="Namespace of the service account")
    service_account: str = Field(..., alias="serviceAccount")
    resource_rules: tuple[ResourceRule, ...] = Field(
        ..., alias="resourceRules", min_length=1, description="Ordered resource rules"
    )

    @field_validator("namespace")
    @classmethod
    def _check_namespace(cls, v: str) -> str:
        return validate_namespace(v)

    @field_validator("service_account")
    @classmethod
    def _check_service_account(cls, v: str) -> str:
        return validate_service_account(v)

    @property
    def key(self) -> MappingKey:
        return (self.namespace, self.service_account)


class TrustCondition(BaseModel):
    """
    OIDC federation condition derived from an IdentityMapping.

    Never persisted on its own; only its fingerprint is stored with the
    mapping so the mapping stays the single source of truth.
    """

    model_config = ConfigDict(frozen=True)

    oidc_provider_url: str
    subject_claim: str
    audience_claim: str

    @classmethod
    def from_mapping(cls, mapping: IdentityMapping, issuer_url: str) -> "TrustCondition":
        return cls(
            oidc_provider_url=normalize_issuer(issuer_url),
            subject_claim=mapping.subject_claim,
            audience_claim=mapping.audience,
        )

    def fingerprint(self) -> str:
        payload = json.dumps(self.model_dump(), sort_keys=True)
        return hashlib.sha256(payload.encode()).hexdigest()
