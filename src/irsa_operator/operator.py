#!/usr/bin/env python3
"""
IRSA Operator - Main entry point for the Kopf-based IRSA operator.

This operator manages IAM Roles for Service Accounts at fleet scale:
- Keeps one aggregated Role and per-service-account RoleBindings per namespace
- Annotates service accounts with their IAM role ARN
- Keeps IAM trust policies in line with the declared identity mappings
- Retries transient failures with backoff and reports every outcome

Usage:
    python -m irsa_operator.operator
    # Or with kopf directly:
    kopf run -m irsa_operator.operator --all-namespaces

Environment Variables:
    OIDC_ISSUER_URL: Issuer URL of the cluster's OIDC provider (required)
    OPERATOR_NAMESPACE: Namespace holding the desired state and the store
    LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR)
    DRY_RUN: Set to 'true' for dry-run mode
"""

import asyncio
import logging
import random
import sys
from contextlib import suppress

import kopf

from irsa_operator.errors import ConfigurationError

# Import all handler modules to register them with kopf
from irsa_operator.handlers import desired_state, service_account  # noqa: F401
from irsa_operator.handlers.desired_state import run_file_cycles
from irsa_operator.observability.logging import setup_structured_logging
from irsa_operator.observability.metrics import MetricsServer
from irsa_operator.services import ReconciliationEngine
from irsa_operator.settings import settings as operator_settings

# Global reference to metrics server for cleanup
_global_metrics_server: MetricsServer | None = None


def configure_logging() -> None:
    """Configure structured logging for the operator based on operator_settings."""
    setup_structured_logging(
        log_level=operator_settings.log_level.upper(),
        enable_json_formatting=operator_settings.json_logs,
        correlation_id_enabled=operator_settings.correlation_ids,
        log_health_probes=operator_settings.log_health_probes,
    )


def readiness(memo: kopf.Memo) -> tuple[bool, dict[str, str]]:
    """Ready once the engine exists and no backend circuit is open."""
    engine: ReconciliationEngine | None = getattr(memo, "engine", None)
    if engine is None:
        return False, {"engine": "not_started"}

    checks = {"engine": "started"}
    for backend, breaker in engine.breakers.items():
        checks[f"circuit_{backend}"] = breaker.current_state
    ready = not any(breaker.is_open for breaker in engine.breakers.values())
    return ready, checks


@kopf.on.startup()
async def startup_handler(
    settings: kopf.OperatorSettings, memo: kopf.Memo, **_
) -> None:
    """
    Operator startup configuration.

    Configures kopf, builds the reconciliation engine, restores persisted
    retry state and starts the metrics and health endpoints.
    """
    logging.info("Starting IRSA Operator...")
    settings.watching.reconnect_backoff = 1.0

    # Only one replica may reconcile at a time
    settings.peering.name = "irsa-operator"
    settings.peering.priority = random.randint(0, 32767)
    logging.info(
        f"Peering priority set to {settings.peering.priority} for leader election"
    )

    if operator_settings.dry_run:
        logging.info("Running in DRY-RUN mode - no changes will be applied")

    try:
        engine = ReconciliationEngine.from_settings(operator_settings)
    except ConfigurationError as e:
        logging.error(f"Invalid operator configuration: {e}")
        raise

    await engine.restore_state()
    memo.engine = engine

    if operator_settings.desired_state_path:
        logging.info(
            f"Reading desired state from {operator_settings.desired_state_path}"
        )
        memo.file_cycles = asyncio.create_task(
            run_file_cycles(
                engine,
                operator_settings.desired_state_path,
                operator_settings.cycle_interval_seconds,
            )
        )
    else:
        logging.info(
            f"Reading desired state from labelled ConfigMaps in "
            f"{operator_settings.operator_namespace}"
        )

    # Start metrics server for Prometheus scraping and health checks
    try:
        metrics_server = MetricsServer(
            port=operator_settings.metrics_port,
            host=operator_settings.metrics_host,
            readiness=lambda: readiness(memo),
        )
        await metrics_server.start()

        global _global_metrics_server
        _global_metrics_server = metrics_server
    except OSError as e:
        logging.error(f"Failed to start metrics server: {e}")
        # Don't fail operator startup if metrics server fails
        logging.warning("Continuing without metrics server")


@kopf.on.cleanup()
async def cleanup_handler(memo: kopf.Memo, **_) -> None:
    """Stop background cycles and the metrics server."""
    logging.info("Shutting down IRSA Operator...")

    task = getattr(memo, "file_cycles", None)
    if task is not None:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

    global _global_metrics_server
    if _global_metrics_server:
        await _global_metrics_server.stop()
        _global_metrics_server = None


@kopf.on.probe(id="healthz")
async def health_check(**_) -> dict[str, str]:
    """Liveness probe: the event loop is responsive."""
    return {"status": "healthy", "operator": "irsa-operator"}


@kopf.on.probe(id="ready")
async def readiness_check(memo: kopf.Memo, **_) -> dict[str, str]:
    """Readiness probe: the engine is built and no backend circuit is open."""
    ready, checks = readiness(memo)
    return {
        "status": "ready" if ready else "not_ready",
        "operator": "irsa-operator",
        **checks,
    }


def main() -> None:
    """
    Main entry point for the operator.

    Configures logging and runs kopf cluster-wide, since service accounts
    and RBAC objects live in every namespace.
    """
    configure_logging()

    settings_obj = kopf.OperatorSettings()
    settings_obj.admission.server = None
    settings_obj.admission.managed = None

    try:
        kopf.run(
            clusterwide=True,
            liveness_endpoint="http://0.0.0.0:8080/healthz",
            settings=settings_obj,
        )
    except KeyboardInterrupt:
        logging.info("Received shutdown signal")
        sys.exit(0)


if __name__ == "__main__":
    main()
