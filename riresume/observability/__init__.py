"""
Observability module - Logging, Metrics, and Tracing.
"""

from riresume.observability.logging import get_logger, log_context, setup_logging
from riresume.observability.metrics import metrics
from riresume.observability.tracing import setup_tracing, trace_operation

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "setup_tracing",
    "trace_operation",
]
