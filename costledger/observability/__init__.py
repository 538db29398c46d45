"""
Observability module - Logging, Metrics, and Tracing.
"""

from costledger.observability.logging import get_logger, log_context, setup_logging
from costledger.observability.metrics import metrics
from costledger.observability.tracing import setup_tracing

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "setup_tracing",
]
