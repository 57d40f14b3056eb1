"""
Prometheus metrics for the IRSA operator.

This module provides metrics collection for monitoring reconciliation
cycles, per-resource outcomes, retry state and backend health.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import Any

# aiohttp is provided transitively by kopf; reused here for the metrics endpoint.
from aiohttp.web import (
    Application,
    AppRunner,
    Request,
    Response,
    TCPSite,
    json_response,
)
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)

# Global metrics registry
_metrics_registry: CollectorRegistry | None = None

# Metrics definitions
RECONCILIATION_CYCLES_TOTAL = Counter(
    "irsa_operator_reconciliation_cycles_total",
    "Total number of reconciliation cycles",
    ["trigger", "result"],
    registry=None,  # Will be set during initialization
)

RECONCILIATION_CYCLE_DURATION = Histogram(
    "irsa_operator_reconciliation_cycle_duration_seconds",
    "Time spent on reconciliation cycles",
    ["trigger"],
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0],
    registry=None,
)

RECONCILIATION_RESULTS_TOTAL = Counter(
    "irsa_operator_reconciliation_results_total",
    "Total number of emitted reconciliation results",
    ["kind", "action", "outcome"],
    registry=None,
)

RECONCILIATION_ERRORS_TOTAL = Counter(
    "irsa_operator_reconciliation_errors_total",
    "Total number of failed reconciliation results",
    ["error_type", "retryable"],
    registry=None,
)

RESOURCES_BY_PHASE = Gauge(
    "irsa_operator_resources",
    "Number of reconciliation units per state-machine phase",
    ["phase"],
    registry=None,
)

MANAGED_MAPPINGS = Gauge(
    "irsa_operator_identity_mappings",
    "Number of identity mappings in the store",
    [],
    registry=None,
)

TRUST_POLICY_DRIFT_TOTAL = Counter(
    "irsa_operator_trust_policy_drift_total",
    "Trust policies found out of line with the desired state",
    ["drift_type"],
    registry=None,
)

CIRCUIT_BREAKER_STATE = Gauge(
    "irsa_operator_circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=open, 2=half-open)",
    ["backend"],
    registry=None,
)

LAST_SUCCESSFUL_CYCLE_TIMESTAMP = Gauge(
    "irsa_operator_last_successful_cycle_timestamp",
    "Unix timestamp of the last cycle that finished without failed results",
    [],
    registry=None,
)


def get_metrics_registry() -> CollectorRegistry:
    """Get or create the global metrics registry."""
    global _metrics_registry

    if _metrics_registry is None:
        _metrics_registry = CollectorRegistry()

        # Register all metrics with the registry
        for metric in [
            RECONCILIATION_CYCLES_TOTAL,
            RECONCILIATION_CYCLE_DURATION,
            RECONCILIATION_RESULTS_TOTAL,
            RECONCILIATION_ERRORS_TOTAL,
            RESOURCES_BY_PHASE,
            MANAGED_MAPPINGS,
            TRUST_POLICY_DRIFT_TOTAL,
            CIRCUIT_BREAKER_STATE,
            LAST_SUCCESSFUL_CYCLE_TIMESTAMP,
        ]:
            _metrics_registry.register(metric)

    return _metrics_registry


class MetricsCollector:
    """Collects and manages metrics for the IRSA operator."""

    def __init__(self):
        """Initialize metrics collector."""
        self.registry = get_metrics_registry()

    @asynccontextmanager
    async def track_cycle(self, trigger: str = "periodic"):
        """
        Context manager to track a reconciliation cycle.

        Args:
            trigger: What started the cycle (periodic, desired-state, drift)
        """
        start_time = time.time()
        result = "unknown"

        try:
            yield
            result = "success"
        except Exception:
            result = "error"
            raise
        finally:
            duration = time.time() - start_time
            RECONCILIATION_CYCLES_TOTAL.labels(trigger=trigger, result=result).inc()
            RECONCILIATION_CYCLE_DURATION.labels(trigger=trigger).observe(duration)

    def record_result(
        self,
        kind: str,
        action: str,
        outcome: str,
        error_type: str | None = None,
        retryable: bool | None = None,
    ) -> None:
        """
        Record one emitted reconciliation result.

        Args:
            kind: Resource kind (Role, RoleBinding, ServiceAccount, IAMRole, ...)
            action: Planned action
            outcome: applied, failed or skipped
            error_type: Taxonomy tag of the error for failed results
            retryable: Whether the error was retryable
        """
        RECONCILIATION_RESULTS_TOTAL.labels(
            kind=kind, action=action, outcome=outcome
        ).inc()
        if error_type:
            RECONCILIATION_ERRORS_TOTAL.labels(
                error_type=error_type,
                retryable="true" if retryable else "false",
            ).inc()

    def update_phase_counts(self, counts: dict[str, int]) -> None:
        """Set the per-phase gauge from a {phase: count} mapping."""
        for phase, count in counts.items():
            RESOURCES_BY_PHASE.labels(phase=phase).set(count)

    def update_mapping_count(self, count: int) -> None:
        MANAGED_MAPPINGS.set(count)

    def record_trust_drift(self, drift_type: str, count: int = 1) -> None:
        if count:
            TRUST_POLICY_DRIFT_TOTAL.labels(drift_type=drift_type).inc(count)

    def mark_cycle_success(self) -> None:
        LAST_SUCCESSFUL_CYCLE_TIMESTAMP.set(time.time())


class MetricsServer:
    """HTTP server for exposing Prometheus metrics and health endpoints."""

    def __init__(self, port: int = 8081, host: str = "0.0.0.0", readiness=None):
        """
        Initialize metrics server.

        Args:
            port: Port to serve metrics on
            host: Host interface to bind to
            readiness: Optional callable returning (ready, details) for /ready
        """
        self.port = port
        self.host = host
        self.readiness = readiness
        self.app = Application()
        self.runner: AppRunner | None = None
        self.site: TCPSite | None = None
        # Set up routes
        self._setup_routes()

    def _setup_routes(self) -> None:
        """Set up HTTP routes for the metrics server."""
        self.app.router.add_get("/metrics", self._metrics_handler)
        self.app.router.add_get("/ready", self._ready_handler)
        self.app.router.add_get("/healthz", self._healthz_handler)

    async def _metrics_handler(self, request: Request) -> Response:
        """Handle /metrics endpoint for Prometheus scraping."""
        try:
            registry = get_metrics_registry()
            metrics_data = generate_latest(registry)
            return Response(body=metrics_data, content_type=CONTENT_TYPE_LATEST)
        except Exception as e:
            logger.error(f"Failed to generate metrics: {e}")
            return Response(
                text=f"Error generating metrics: {type(e).__name__}. Check logs for details.",
                status=500,
            )

    async def _ready_handler(self, request: Request) -> Response:
        """Handle /ready endpoint for readiness probes."""
        if self.readiness is None:
            return json_response({"status": "ready", "timestamp": time.time()})

        ready, details = self.readiness()
        body: dict[str, Any] = {
            "status": "ready" if ready else "not_ready",
            "timestamp": time.time(),
            "checks": details,
        }
        return json_response(body, status=200 if ready else 503)

    async def _healthz_handler(self, request: Request) -> Response:
        """Handle /healthz endpoint for Kubernetes compatibility."""
        return Response(text="ok")

    async def start(self) -> None:
        """Start the metrics server."""
        self.runner = AppRunner(self.app)
        await self.runner.setup()

        self.site = TCPSite(self.runner, self.host, self.port)
        await self.site.start()

        logger.info(f"Metrics server started on {self.host}:{self.port}")

    async def stop(self) -> None:
        """Stop the metrics server."""
        if self.site:
            await self.site.stop()
            self.site = None

        if self.runner:
            await self.runner.cleanup()
            self.runner = None

        logger.info("Metrics server stopped")

    async def __aenter__(self):
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.stop()


# Global metrics collector instance
metrics_collector = MetricsCollector()
