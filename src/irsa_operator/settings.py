"""Centralized operator settings using pydantic-settings.

This module provides a single source of truth for all operator configuration
loaded from environment variables. Uses pydantic for automatic validation,
type coercion, and documentation.
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from irsa_operator.constants import (
    DEFAULT_BACKOFF_BASE_SECONDS,
    DEFAULT_BACKOFF_CAP_SECONDS,
    DEFAULT_CALL_TIMEOUT,
    DEFAULT_CYCLE_INTERVAL,
    DEFAULT_MAX_ATTEMPTS,
)


class Settings(BaseSettings):
    """Operator configuration loaded from environment variables.

    All settings have sensible defaults for production use. Override via
    environment variables as documented per field.
    """

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Operator identification
    operator_namespace: str = Field(
        default="irsa-system",
        description="Namespace where the operator is deployed",
        validation_alias="OPERATOR_NAMESPACE",
    )
    operator_name: str = Field(
        default="irsa-operator",
        description="Name of the operator deployment",
        validation_alias="OPERATOR_NAME",
    )

    # Logging configuration
    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    json_logs: bool = Field(
        default=True,
        validation_alias="JSON_LOGS",
        description="Enable JSON formatted logging for structured log aggregation",
    )
    correlation_ids: bool = Field(
        default=True,
        validation_alias="CORRELATION_IDS",
        description="Enable correlation IDs in logs for request tracing",
    )
    log_health_probes: bool = Field(
        default=False,
        validation_alias="LOG_HEALTH_PROBES",
        description="Log health probe requests",
    )

    # Identity federation
    oidc_issuer_url: str = Field(
        default="",
        validation_alias="OIDC_ISSUER_URL",
        description="Issuer URL of the cluster's OIDC provider "
        "(e.g. https://oidc.eks.eu-west-1.amazonaws.com/id/EXAMPLE)",
    )
    aws_region: str | None = Field(
        default=None,
        validation_alias="AWS_REGION",
        description="AWS region for the IAM client (IAM itself is global)",
    )
    aws_profile: str | None = Field(
        default=None,
        validation_alias="AWS_PROFILE",
        description="Optional named AWS profile, for local development",
    )

    # Desired state and persistence
    desired_state_path: str = Field(
        default="",
        validation_alias="DESIRED_STATE_PATH",
        description="Path to a YAML/JSON desired-state document "
        "(empty = read the labelled ConfigMap)",
    )
    store_backend: Literal["configmap", "memory"] = Field(
        default="configmap",
        validation_alias="STORE_BACKEND",
        description="Identity mapping store backend",
    )

    # Reconciliation behavior
    cycle_interval_seconds: float = Field(
        default=DEFAULT_CYCLE_INTERVAL,
        validation_alias="CYCLE_INTERVAL_SECONDS",
        description="Interval in seconds between periodic reconciliation cycles",
    )
    max_workers: int = Field(
        default=8,
        ge=1,
        validation_alias="MAX_WORKERS",
        description="Maximum number of reconciliation units processed concurrently",
    )
    call_timeout_seconds: float = Field(
        default=DEFAULT_CALL_TIMEOUT,
        gt=0,
        validation_alias="CALL_TIMEOUT_SECONDS",
        description="Timeout for each Kubernetes or IAM API call",
    )
    backoff_base_seconds: float = Field(
        default=DEFAULT_BACKOFF_BASE_SECONDS,
        validation_alias="BACKOFF_BASE_SECONDS",
        description="Base delay for exponential retry backoff",
    )
    backoff_cap_seconds: float = Field(
        default=DEFAULT_BACKOFF_CAP_SECONDS,
        validation_alias="BACKOFF_CAP_SECONDS",
        description="Maximum delay for exponential retry backoff",
    )
    max_attempts: int = Field(
        default=DEFAULT_MAX_ATTEMPTS,
        ge=1,
        validation_alias="MAX_ATTEMPTS",
        description="Failed attempts before a resource is marked Stuck",
    )
    merge_policy: Literal["additive", "strict"] = Field(
        default="additive",
        validation_alias="MERGE_POLICY",
        description="How overlapping access intents are merged "
        "(additive = union of verbs, strict = reject differing verb sets)",
    )
    require_rbac_mandate: bool = Field(
        default=True,
        validation_alias="REQUIRE_RBAC_MANDATE",
        description="Only grant IAM trust to mappings that have an access intent",
    )
    manage_service_accounts: bool = Field(
        default=True,
        validation_alias="MANAGE_SERVICE_ACCOUNTS",
        description="Create and annotate service accounts for identity mappings",
    )
    dry_run: bool = Field(
        default=False,
        validation_alias="DRY_RUN",
        description="Run in dry-run mode (plans are computed, nothing is applied)",
    )
    audit_retention: int = Field(
        default=10000,
        validation_alias="AUDIT_RETENTION",
        description="Number of reconciliation results kept in memory",
    )

    # Circuit breaker
    circuit_breaker_fail_max: int = Field(
        default=5,
        validation_alias="CIRCUIT_BREAKER_FAIL_MAX",
        description="Consecutive backend failures before the circuit opens",
    )
    circuit_breaker_reset_seconds: int = Field(
        default=60,
        validation_alias="CIRCUIT_BREAKER_RESET_SECONDS",
        description="Seconds before an open circuit is probed again",
    )

    # Metrics and observability
    metrics_port: int = Field(
        default=8081,
        validation_alias="METRICS_PORT",
        description="Port for Prometheus metrics endpoint",
    )
    metrics_host: str = Field(
        default="0.0.0.0",
        validation_alias="METRICS_HOST",
        description="Host address to bind metrics server",
    )


# Global settings instance - initialized once at module import
settings = Settings()
