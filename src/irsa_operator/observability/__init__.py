"""
Observability utilities for the IRSA operator.

This module provides metrics, the audit trail, and structured logging
capabilities for production monitoring and troubleshooting.
"""

from .audit import AuditTrail
from .logging import OperatorLogger, setup_structured_logging
from .metrics import MetricsServer, get_metrics_registry, metrics_collector

__all__ = [
    "AuditTrail",
    "MetricsServer",
    "get_metrics_registry",
    "metrics_collector",
    "OperatorLogger",
    "setup_structured_logging",
]
