"""
Middleware modules for relayconf.
"""
from relayconf.middleware.correlation import CorrelationIdMiddleware, get_correlation_id, correlation_id_filter

__all__ = ["CorrelationIdMiddleware", "get_correlation_id", "correlation_id_filter"]
