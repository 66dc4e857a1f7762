"""
Metrics Module: Diagnostics, counters, histograms.

Every discarded reading, rejected subset or failed stage is counted with a
reason code so that estimation runs never fail silently.

Usage:
    from robustloc.metrics import get_metrics

    metrics = get_metrics()
    metrics.increment('robust_runs')
    metrics.increment_drop('degenerate_subset')
    metrics.record_histogram('robust_iterations', 42)
"""

from .counters import MetricsCollector, CounterSnapshot

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
    global _global_metrics
    _global_metrics = MetricsCollector()


__all__ = ['MetricsCollector', 'CounterSnapshot', 'get_metrics', 'reset_metrics']
