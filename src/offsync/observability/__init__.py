"""
Observability for offsync: structured logging and operation metrics.
"""

from offsync.observability.logging import (
    OperationLogger,
    StructuredFormatter,
    clear_context,
    configure_logging,
    configure_logging_from_settings,
    get_logger,
    set_context,
)
from offsync.observability.metrics import (
    AsyncTimer,
    MetricsCollector,
    OperationMetrics,
)

__all__ = [
    # Logging
    "configure_logging",
    "configure_logging_from_settings",
    "get_logger",
    "OperationLogger",
    "StructuredFormatter",
    "set_context",
    "clear_context",
    # Metrics
    "AsyncTimer",
    "MetricsCollector",
    "OperationMetrics",
]
