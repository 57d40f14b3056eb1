"""
Circuit breaker for Kubernetes and IAM API calls.

This module provides a wrapper around aiobreaker to stop hammering a backend
that keeps failing. Only transport-level failures count towards opening the
circuit; expected answers such as NotFound or a version conflict do not.
"""

import logging
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import Any, TypeVar

import aiobreaker
from aiobreaker.state import CircuitHalfOpenState, CircuitOpenState
from opentelemetry import trace

from irsa_operator.errors import (
    ConflictError,
    ExternalApiError,
    MalformedTrustPolicy,
    NotFoundError,
    ValidationError,
)
from irsa_operator.observability.metrics import CIRCUIT_BREAKER_STATE

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)
T = TypeVar("T")

# Answers from a healthy backend; they never trip the breaker
EXCLUDED_ERRORS = (NotFoundError, ConflictError, ValidationError, MalformedTrustPolicy)


def _state_value(state: Any) -> int:
    # 0 = closed, 1 = open, 2 = half-open
    name = str(getattr(state, "name", "")).lower().replace("_", "-")
    if isinstance(state, CircuitOpenState) or name == "open":
        return 1
    if isinstance(state, CircuitHalfOpenState) or name == "half-open":
        return 2
    return 0


class BackendCircuitBreaker:
    """
    Circuit breaker wrapper for one backend (``kubernetes`` or ``iam``).

    Wraps aiobreaker.CircuitBreaker and updates Prometheus metrics
    on state changes. An open circuit surfaces as a retryable
    ExternalApiError so callers handle it like any other outage.
    """

    def __init__(self, name: str, fail_max: int, timeout_duration: int):
        """
        Initialize circuit breaker.

        Args:
            name: Backend name used in metrics and errors
            fail_max: Number of failures before opening the circuit
            timeout_duration: Seconds to wait before attempting recovery (half-open)
        """
        self.name = name

        class MetricsListener(aiobreaker.CircuitBreakerListener):
            def state_change(self, breaker, old, new):
                old_name = getattr(old, "name", type(old).__name__)
                new_name = getattr(new, "name", type(new).__name__)
                logger.warning(
                    f"Circuit breaker state changed: {old_name} -> {new_name} "
                    f"(backend={name})"
                )
                CIRCUIT_BREAKER_STATE.labels(backend=name).set(_state_value(new))

        self._breaker = aiobreaker.CircuitBreaker(
            fail_max=fail_max,
            timeout_duration=timedelta(seconds=timeout_duration),
            exclude=list(EXCLUDED_ERRORS),
            listeners=[MetricsListener()],
        )

        CIRCUIT_BREAKER_STATE.labels(backend=name).set(0)

    async def call(
        self, func: Callable[..., Awaitable[T]], *args, **kwargs
    ) -> T:
        """
        Call an async function with circuit breaker protection.

        Raises:
            ExternalApiError: If the circuit is open
            Exception: Whatever the function raises
        """
        with tracer.start_as_current_span("circuit_breaker_call") as span:
            span.set_attribute("circuit_breaker.name", self.name)
            span.set_attribute("circuit_breaker.state", self.current_state)

            try:
                return await self._breaker.call_async(func, *args, **kwargs)
            except aiobreaker.CircuitBreakerError as e:
                span.set_attribute("error", True)
                span.set_attribute("circuit_breaker.error", "open")
                raise ExternalApiError(
                    self.name,
                    "circuit breaker is open after repeated failures",
                    retryable=True,
                ) from e
            except Exception as e:
                span.set_attribute("error", True)
                span.record_exception(e)
                raise

    @property
    def current_state(self) -> str:
        """Get current state name (lowercase)."""
        return str(self._breaker.current_state.name).lower()

    @property
    def is_open(self) -> bool:
        return self.current_state == "open"
