"""
AWS IAM access for trust-policy reconciliation.

The operator only reads roles, rewrites their assume-role (trust) policy and
lists registered OIDC providers. It never calls AssumeRoleWithWebIdentity;
that stays with the pod's AWS SDK at runtime.
"""

import json
import logging
from typing import Any
from urllib.parse import unquote

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from irsa_operator.errors import AwsIamError, NotFoundError, ValidationError
from irsa_operator.models import parse_role_arn

logger = logging.getLogger(__name__)

# Error codes that mean the request itself is wrong, not the network
_INVALID_REQUEST_CODES = {
    "MalformedPolicyDocument",
    "InvalidInput",
    "ValidationError",
    "LimitExceeded",
}
_NOT_FOUND_CODES = {"NoSuchEntity"}


def _translate_client_error(e: ClientError, resource: str) -> Exception:
    error = e.response.get("Error", {})
    code = error.get("Code")
    message = error.get("Message") or str(e)
    if code in _NOT_FOUND_CODES:
        return NotFoundError(resource, message=message)
    if code in _INVALID_REQUEST_CODES:
        return ValidationError(f"IAM rejected request: {message}", resource=resource)
    return AwsIamError(message, code=code, resource=resource)


def decode_policy_document(document: str | dict[str, Any]) -> dict[str, Any]:
    """
    Decode a policy document as returned by IAM.

    boto3 usually hands back a parsed dict; raw API responses carry a
    URL-encoded JSON string.
    """
    if isinstance(document, dict):
        return document
    return json.loads(unquote(document))


class IamGateway:
    """Synchronous IAM client wrapper with errors mapped to the operator taxonomy."""

    def __init__(
        self,
        region: str | None = None,
        profile: str | None = None,
        iam_client: Any | None = None,
        connect_timeout: float = 10.0,
        read_timeout: float = 30.0,
    ):
        if iam_client is None:
            session = boto3.Session(profile_name=profile, region_name=region)
            iam_client = session.client(
                "iam",
                config=Config(
                    connect_timeout=connect_timeout,
                    read_timeout=read_timeout,
                    # Retries are owned by the reconciliation state machine
                    retries={"max_attempts": 1, "mode": "standard"},
                ),
            )
        self.client = iam_client

    def _call(self, resource: str, func, **kwargs) -> Any:
        try:
            return func(**kwargs)
        except ClientError as e:
            raise _translate_client_error(e, resource) from e
        except BotoCoreError as e:
            raise AwsIamError(str(e), resource=resource) from e

    def get_role(self, role_arn: str) -> dict[str, Any]:
        """Fetch a role by ARN. Raises NotFoundError if it does not exist."""
        role_name = parse_role_arn(role_arn)["name"]
        response = self._call(role_arn, self.client.get_role, RoleName=role_name)
        return response["Role"]

    def get_trust_policy(self, role_arn: str) -> dict[str, Any]:
        """Current assume-role policy document of a role, decoded."""
        role = self.get_role(role_arn)
        document = role.get("AssumeRolePolicyDocument") or {}
        try:
            return decode_policy_document(document)
        except (TypeError, ValueError) as e:
            raise ValidationError(
                f"Trust policy is not valid JSON: {e}", resource=role_arn
            ) from e

    def update_trust_policy(self, role_arn: str, document: dict[str, Any]) -> None:
        """Replace the assume-role policy document of a role."""
        role_name = parse_role_arn(role_arn)["name"]
        self._call(
            role_arn,
            self.client.update_assume_role_policy,
            RoleName=role_name,
            PolicyDocument=json.dumps(document, sort_keys=True),
        )
        logger.debug(f"Updated trust policy of {role_arn}")

    def list_oidc_provider_arns(self) -> list[str]:
        """ARNs of the OIDC identity providers registered in the account."""
        response = self._call(
            "OpenIDConnectProviders", self.client.list_open_id_connect_providers
        )
        return [p["Arn"] for p in response.get("OpenIDConnectProviderList", [])]
