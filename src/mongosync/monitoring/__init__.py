"""
监控系统包
"""

from .metrics import (
    MetricType,
    MetricsRegistry,
    MetricsCollector,
    ProcessMetrics,
    ReplicationMetrics,
)

__all__ = [
    "MetricType",
    "MetricsRegistry",
    "MetricsCollector",
    "ProcessMetrics",
    "ReplicationMetrics",
]
