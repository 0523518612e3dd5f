"""
Observability module - Logging and Metrics.
"""

from purple_api.observability.logging import get_logger, log_context, setup_logging
from purple_api.observability.metrics import metrics

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
]
