"""
Metrics Module: Diagnostics, counters, histograms.

Every discarded message or skipped solve is counted with a reason code so
that nothing is dropped silently.

Usage:
    from trilat_core.metrics import get_metrics
    
    metrics = get_metrics()
    metrics.increment('messages_in')
    metrics.increment_drop('parse_error')
    metrics.record_histogram('solve_iterations', 42)
"""

from .counters import MetricsCollector

# Global singleton for easy access
_global_metrics = None


def get_metrics() -> MetricsCollector:
    """
    Get the global metrics collector singleton.
    
    Returns:
        MetricsCollector instance
    """
    global _global_metrics
    if _global_metrics is None:
        _global_metrics = MetricsCollector()
    return _global_metrics


def reset_metrics():
    """Reset global metrics (for testing)."""
    get_metrics().reset()


__all__ = ['MetricsCollector', 'get_metrics', 'reset_metrics']
