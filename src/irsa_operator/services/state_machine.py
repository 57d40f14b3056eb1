"""
Per-resource retry state machine.

Each reconciliation unit (the RBAC of one namespace, the trust policy of one
IAM role) moves through

    Pending -> Applying -> Applied | Failed -> Pending

Failed units are retried on later cycles after a full-jitter exponential
backoff. A unit that exhausts its attempts, or fails with a non-retryable
error, becomes Stuck until its desired fingerprint changes.
"""

import logging
import random
import time
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass

from irsa_operator.constants import (
    DEFAULT_BACKOFF_BASE_SECONDS,
    DEFAULT_BACKOFF_CAP_SECONDS,
    DEFAULT_MAX_ATTEMPTS,
    PHASE_APPLIED,
    PHASE_APPLYING,
    PHASE_FAILED,
    PHASE_PENDING,
    PHASE_STUCK,
)
from irsa_operator.models import ResourceState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with full jitter."""

    base: float = DEFAULT_BACKOFF_BASE_SECONDS
    cap: float = DEFAULT_BACKOFF_CAP_SECONDS
    max_attempts: int = DEFAULT_MAX_ATTEMPTS

    def ceiling(self, attempt: int) -> float:
        """Upper bound of the delay after the given (1-based) failed attempt."""
        return min(self.cap, self.base * 2 ** max(attempt - 1, 0))

    def backoff(self, attempt: int, rng: random.Random) -> float:
        return rng.uniform(0, self.ceiling(attempt))


class ResourceStateTracker:
    """
    Tracks ResourceState per unit key.

    Not thread-safe; the engine only touches it from the event loop.
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        clock: Callable[[], float] = time.time,
        rng: random.Random | None = None,
    ):
        self.policy = policy or RetryPolicy()
        self.clock = clock
        self.rng = rng or random.Random()
        self._states: dict[str, ResourceState] = {}

    def get(self, key: str) -> ResourceState:
        state = self._states.get(key)
        if state is None:
            state = ResourceState(key=key)
            self._states[key] = state
        return state

    def should_attempt(self, key: str, fingerprint: str) -> tuple[bool, str | None]:
        """
        Decide whether a unit may be attempted this cycle.

        A changed fingerprint resets the unit to Pending with a fresh attempt
        budget, which is also how a Stuck unit gets released.

        Returns:
            Tuple of (attempt, reason); reason explains a refusal
        """
        state = self.get(key)
        if state.desired_fingerprint != fingerprint:
            if state.phase in (PHASE_FAILED, PHASE_STUCK):
                logger.info(f"Desired state of {key} changed, resetting retry budget")
            state.phase = PHASE_PENDING
            state.attempts = 0
            state.next_attempt_at = None
            state.last_error = None
            state.desired_fingerprint = fingerprint

        if state.phase == PHASE_STUCK:
            return False, f"stuck after {state.attempts} attempts: {state.last_error}"

        if state.phase == PHASE_FAILED and state.next_attempt_at is not None:
            now = self.clock()
            if now < state.next_attempt_at:
                wait = state.next_attempt_at - now
                return False, f"backing off for {wait:.1f}s after attempt {state.attempts}"

        return True, None

    def mark_applying(self, key: str) -> ResourceState:
        state = self.get(key)
        state.phase = PHASE_APPLYING
        return state

    def mark_applied(self, key: str) -> ResourceState:
        state = self.get(key)
        state.phase = PHASE_APPLIED
        state.attempts = 0
        state.next_attempt_at = None
        state.last_error = None
        return state

    def mark_failed(self, key: str, error: str, retryable: bool) -> ResourceState:
        """
        Record a failed attempt.

        Non-retryable errors go straight to Stuck. Otherwise the unit is
        Failed with a backoff deadline, or Stuck once max_attempts is reached.
        """
        state = self.get(key)
        state.attempts += 1
        state.last_error = error

        if not retryable or state.attempts >= self.policy.max_attempts:
            state.phase = PHASE_STUCK
            state.next_attempt_at = None
            logger.warning(
                f"{key} is stuck after {state.attempts} attempts: {error}",
                extra={"phase": PHASE_STUCK, "attempt": state.attempts},
            )
            return state

        delay = self.policy.backoff(state.attempts, self.rng)
        state.phase = PHASE_FAILED
        state.next_attempt_at = self.clock() + delay
        return state

    def mark_pending(self, key: str) -> ResourceState:
        """Return an interrupted unit to Pending without spending an attempt."""
        state = self.get(key)
        if state.phase == PHASE_APPLYING:
            state.phase = PHASE_PENDING
        return state

    def forget(self, key: str) -> None:
        self._states.pop(key, None)

    def keys(self) -> set[str]:
        return set(self._states)

    def phase_counts(self) -> dict[str, int]:
        counts = Counter(state.phase for state in self._states.values())
        return {
            phase: counts.get(phase, 0)
            for phase in (
                PHASE_PENDING,
                PHASE_APPLYING,
                PHASE_APPLIED,
                PHASE_FAILED,
                PHASE_STUCK,
            )
        }

    def snapshot(self) -> dict[str, ResourceState]:
        return {key: state.model_copy() for key, state in self._states.items()}

    @classmethod
    def from_snapshot(
        cls,
        states: dict[str, ResourceState],
        policy: RetryPolicy | None = None,
        clock: Callable[[], float] = time.time,
        rng: random.Random | None = None,
    ) -> "ResourceStateTracker":
        """
        Rebuild a tracker after a restart.

        Units caught mid-apply are returned to Pending.
        """
        tracker = cls(policy=policy, clock=clock, rng=rng)
        for key, state in states.items():
            restored = state.model_copy()
            if restored.phase == PHASE_APPLYING:
                restored.phase = PHASE_PENDING
            tracker._states[key] = restored
        return tracker
