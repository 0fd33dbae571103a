"""
Shared utilities.
"""

from .logging import configure_logging, CorrelationContext, JSONFormatter, get_correlation_id

__all__ = ["configure_logging", "CorrelationContext", "JSONFormatter", "get_correlation_id"]
