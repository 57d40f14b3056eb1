"""
Unit tests for MetricsCollector methods in observability/metrics.py.

Tests the individual methods of MetricsCollector to verify they call the
correct Prometheus metric objects with the correct label values.
"""

from unittest.mock import MagicMock, patch

import pytest

from irsa_operator.observability.metrics import MetricsCollector


@pytest.fixture
def collector():
    """Create a MetricsCollector with the registry init patched out."""
    with patch(
        "irsa_operator.observability.metrics.get_metrics_registry",
        return_value=MagicMock(),
    ):
        return MetricsCollector()


class TestCycleTracking:
    @pytest.mark.asyncio
    @patch("irsa_operator.observability.metrics.RECONCILIATION_CYCLE_DURATION")
    @patch("irsa_operator.observability.metrics.RECONCILIATION_CYCLES_TOTAL")
    async def test_successful_cycle(self, mock_total, mock_duration, collector):
        async with collector.track_cycle("periodic"):
            pass

        mock_total.labels.assert_called_with(trigger="periodic", result="success")
        mock_total.labels().inc.assert_called_once()
        mock_duration.labels.assert_called_with(trigger="periodic")
        mock_duration.labels().observe.assert_called_once()

    @pytest.mark.asyncio
    @patch("irsa_operator.observability.metrics.RECONCILIATION_CYCLE_DURATION")
    @patch("irsa_operator.observability.metrics.RECONCILIATION_CYCLES_TOTAL")
    async def test_aborted_cycle(self, mock_total, mock_duration, collector):
        with pytest.raises(RuntimeError):
            async with collector.track_cycle("drift"):
                raise RuntimeError("store unreachable")

        mock_total.labels.assert_called_with(trigger="drift", result="error")


class TestResultMetrics:
    @patch("irsa_operator.observability.metrics.RECONCILIATION_ERRORS_TOTAL")
    @patch("irsa_operator.observability.metrics.RECONCILIATION_RESULTS_TOTAL")
    def test_applied_result(self, mock_results, mock_errors, collector):
        collector.record_result("RoleBinding", "create", "applied")

        mock_results.labels.assert_called_with(
            kind="RoleBinding", action="create", outcome="applied"
        )
        mock_results.labels().inc.assert_called_once()
        mock_errors.labels.assert_not_called()

    @patch("irsa_operator.observability.metrics.RECONCILIATION_ERRORS_TOTAL")
    @patch("irsa_operator.observability.metrics.RECONCILIATION_RESULTS_TOTAL")
    def test_failed_result_counts_error(self, mock_results, mock_errors, collector):
        collector.record_result(
            "IAMRole", "update", "failed", error_type="ExternalApiError", retryable=True
        )

        mock_errors.labels.assert_called_with(
            error_type="ExternalApiError", retryable="true"
        )
        mock_errors.labels().inc.assert_called_once()


class TestGauges:
    @patch("irsa_operator.observability.metrics.RESOURCES_BY_PHASE")
    def test_phase_counts(self, mock_phases, collector):
        collector.update_phase_counts({"Applied": 3, "Stuck": 1})

        mock_phases.labels.assert_any_call(phase="Applied")
        mock_phases.labels.assert_any_call(phase="Stuck")
        mock_phases.labels().set.assert_any_call(3)
        mock_phases.labels().set.assert_any_call(1)

    @patch("irsa_operator.observability.metrics.MANAGED_MAPPINGS")
    def test_mapping_count(self, mock_mappings, collector):
        collector.update_mapping_count(42)
        mock_mappings.set.assert_called_with(42)

    @patch("irsa_operator.observability.metrics.LAST_SUCCESSFUL_CYCLE_TIMESTAMP")
    def test_cycle_success_timestamp(self, mock_timestamp, collector):
        collector.mark_cycle_success()
        mock_timestamp.set.assert_called_once()


class TestTrustDrift:
    @patch("irsa_operator.observability.metrics.TRUST_POLICY_DRIFT_TOTAL")
    def test_drift_counted(self, mock_drift, collector):
        collector.record_trust_drift("missing", 2)

        mock_drift.labels.assert_called_with(drift_type="missing")
        mock_drift.labels().inc.assert_called_with(2)

    @patch("irsa_operator.observability.metrics.TRUST_POLICY_DRIFT_TOTAL")
    def test_zero_drift_ignored(self, mock_drift, collector):
        collector.record_trust_drift("extra", 0)
        mock_drift.labels.assert_not_called()
