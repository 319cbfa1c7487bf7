from .metrics import MetricsCollector, MetricsSnapshot, OperationTimer, percentile

__all__ = ["MetricsCollector", "MetricsSnapshot", "OperationTimer", "percentile"]
