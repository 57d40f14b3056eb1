"""
Append-only audit trail of reconciliation results.

Every emitted ReconciliationResult is logged as a structured audit record,
counted in Prometheus and retained in a bounded in-memory buffer so the
readiness endpoint and tests can inspect recent outcomes.
"""

import threading
from collections import deque
from collections.abc import Iterable, Iterator

from irsa_operator.models import Outcome, ReconciliationResult
from irsa_operator.observability.logging import OperatorLogger
from irsa_operator.observability.metrics import metrics_collector

audit_logger = OperatorLogger("irsa_operator.audit")


def _kind_of(resource_ref: str) -> str:
    return resource_ref.split("/", 1)[0]


class AuditTrail:
    """Bounded, append-only sequence of reconciliation results."""

    def __init__(self, retention: int = 10000):
        self._results: deque[ReconciliationResult] = deque(maxlen=max(retention, 1))
        self._lock = threading.Lock()
        self.total = 0

    def append(self, result: ReconciliationResult) -> ReconciliationResult:
        failed = result.outcome == Outcome.FAILED
        with self._lock:
            self._results.append(result)
            self.total += 1

        audit_logger.log_audit(
            result.model_dump(mode="json", by_alias=True), failed=failed
        )
        metrics_collector.record_result(
            kind=_kind_of(result.resource_ref),
            action=str(result.action),
            outcome=str(result.outcome),
            error_type=result.error_type if failed else None,
            retryable=None,
        )
        return result

    def extend(self, results: Iterable[ReconciliationResult]) -> None:
        for result in results:
            self.append(result)

    def recent(self, limit: int | None = None) -> list[ReconciliationResult]:
        with self._lock:
            items = list(self._results)
        if limit is not None:
            return items[-limit:]
        return items

    def __iter__(self) -> Iterator[ReconciliationResult]:
        return iter(self.recent())

    def __len__(self) -> int:
        with self._lock:
            return len(self._results)
