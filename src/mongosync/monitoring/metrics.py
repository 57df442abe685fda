"""
同步指标收集
复制进度、批量写入和进程资源的指标，可导出为Prometheus文本格式
"""

import logging
import os
import threading
import psutil
from typing import Dict, List, Any, Optional, Tuple
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
import time


logger = logging.getLogger(__name__)

LabelSet = Tuple[Tuple[str, str], ...]

# 直方图保留的最近样本数
HISTOGRAM_SAMPLES = 1000


class MetricType(Enum):
    """指标类型"""
    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"


def _label_set(labels: Optional[Dict[str, str]]) -> LabelSet:
    return tuple(sorted((labels or {}).items()))


def _quantile(sorted_values: List[float], q: float) -> float:
    index = min(len(sorted_values) - 1, int(round(q * (len(sorted_values) - 1))))
    return sorted_values[index]


@dataclass
class Metric:
    """指标，按标签组合分别计数"""
    name: str
    metric_type: MetricType
    description: str
    unit: str = ""
    series: Dict[LabelSet, float] = field(default_factory=dict)
    samples: deque = field(default_factory=lambda: deque(maxlen=HISTOGRAM_SAMPLES))
    count: int = 0
    total: float = 0.0
    updated_at: Optional[float] = None

    def record(self, value: float, labels: Dict[str, str] = None):
        key = _label_set(labels)
        if self.metric_type is MetricType.COUNTER:
            self.series[key] = self.series.get(key, 0) + value
        elif self.metric_type is MetricType.GAUGE:
            self.series[key] = value
            self.total = value
        else:
            self.samples.append(value)
            self.count += 1
            self.total += value
        self.updated_at = time.time()

    def value(self) -> Optional[float]:
        """计数器为各标签之和，量规为最后设置的值，直方图为样本数"""
        if self.updated_at is None:
            return None
        if self.metric_type is MetricType.COUNTER:
            return sum(self.series.values())
        if self.metric_type is MetricType.GAUGE:
            return self.total
        return self.count

    def get_statistics(self) -> Dict[str, Any]:
        if self.metric_type is not MetricType.HISTOGRAM:
            return {"value": self.value(), "series": len(self.series)}
        if not self.samples:
            return {}

        values = sorted(self.samples)
        return {
            "count": self.count,
            "sum": self.total,
            "min": values[0],
            "max": values[-1],
            "avg": sum(values) / len(values),
            "p50": _quantile(values, 0.5),
            "p95": _quantile(values, 0.95),
        }


class MetricsRegistry:
    """指标注册表（线程安全）"""

    def __init__(self):
        self.metrics: Dict[str, Metric] = {}
        self.lock = threading.RLock()

    def register(self, name: str, metric_type: MetricType, description: str,
                 unit: str = "") -> Metric:
        """注册指标，已存在时返回原指标"""
        with self.lock:
            metric = self.metrics.get(name)
            if metric is None:
                metric = Metric(name=name, metric_type=metric_type,
                                description=description, unit=unit)
                self.metrics[name] = metric
            return metric

    def get_metric(self, name: str) -> Optional[Metric]:
        with self.lock:
            return self.metrics.get(name)

    def get_value(self, name: str) -> Optional[float]:
        with self.lock:
            metric = self.metrics.get(name)
            return metric.value() if metric else None

    def _record(self, name: str, metric_type: MetricType, value: float, labels: Dict[str, str]):
        with self.lock:
            metric = self.metrics.get(name)
            if metric is None or metric.metric_type is not metric_type:
                logger.debug("Ignoring %s sample for metric %s", metric_type.value, name)
                return
            metric.record(value, labels)

    def record_counter(self, name: str, value: float = 1, labels: Dict[str, str] = None):
        self._record(name, MetricType.COUNTER, value, labels)

    def record_gauge(self, name: str, value: float, labels: Dict[str, str] = None):
        self._record(name, MetricType.GAUGE, value, labels)

    def record_histogram(self, name: str, value: float, labels: Dict[str, str] = None):
        self._record(name, MetricType.HISTOGRAM, value, labels)

    def get_metrics_summary(self) -> Dict[str, Any]:
        """所有指标的当前值"""
        with self.lock:
            return {
                name: {
                    "type": metric.metric_type.value,
                    "description": metric.description,
                    "unit": metric.unit,
                    "latest_value": metric.value(),
                }
                for name, metric in self.metrics.items()
            }


class ProcessMetrics:
    """当前进程的资源指标（psutil）"""

    def __init__(self, registry: MetricsRegistry, collection_interval: float = 5.0):
        self.registry = registry
        self.collection_interval = collection_interval
        self.collection_thread: Optional[threading.Thread] = None
        self.process = psutil.Process(os.getpid())
        self._stop_event = threading.Event()

        registry.register("process_memory_rss", MetricType.GAUGE, "进程常驻内存", "bytes")
        registry.register("process_cpu_usage", MetricType.GAUGE, "进程CPU使用率", "%")
        registry.register("process_threads", MetricType.GAUGE, "进程线程数")

    def start_collection(self):
        if self.collection_thread is not None:
            return
        self._stop_event.clear()
        self.collection_thread = threading.Thread(
            target=self._collection_loop, name="process-metrics", daemon=True
        )
        self.collection_thread.start()

    def stop_collection(self):
        self._stop_event.set()
        if self.collection_thread is not None:
            self.collection_thread.join()
            self.collection_thread = None

    def collect(self):
        """采集一次"""
        with self.process.oneshot():
            self.registry.record_gauge("process_memory_rss", self.process.memory_info().rss)
            self.registry.record_gauge("process_cpu_usage", self.process.cpu_percent())
            self.registry.record_gauge("process_threads", self.process.num_threads())

    def _collection_loop(self):
        while not self._stop_event.is_set():
            try:
                self.collect()
            except psutil.Error as e:
                logger.warning("Error collecting process metrics: %s", e)
            self._stop_event.wait(self.collection_interval)


class ReplicationMetrics:
    """复制进度指标"""

    def __init__(self, registry: MetricsRegistry):
        self.registry = registry
        for name, metric_type, description, unit in (
            ("docs_cloned", MetricType.COUNTER, "克隆的文档数", "documents"),
            ("oplog_entries_read", MetricType.COUNTER, "读取的oplog条目数", "entries"),
            ("oplog_entries_applied", MetricType.COUNTER, "应用的oplog条目数", "entries"),
            ("oplog_entries_skipped", MetricType.COUNTER, "跳过的oplog条目数", "entries"),
            ("batches_written", MetricType.COUNTER, "写入成功的批次数", "batches"),
            ("batch_retries", MetricType.COUNTER, "批次重试次数", "retries"),
            ("batch_failures", MetricType.COUNTER, "最终失败的批次数", "batches"),
            ("batch_write_time", MetricType.HISTOGRAM, "批次写入耗时", "ms"),
            ("write_queue_size", MetricType.GAUGE, "等待写入的批次数", "batches"),
            ("replication_lag", MetricType.GAUGE, "最后读取的oplog与当前时间的差", "seconds"),
            ("oplog_last_read", MetricType.GAUGE, "最后读取的oplog秒数", "seconds"),
        ):
            registry.register(name, metric_type, description, unit)

    def record_cloned(self, count: int, namespace: str):
        self.registry.record_counter("docs_cloned", count, {"namespace": namespace})

    def record_read(self, sec: int):
        """记录读取的oplog条目及延迟"""
        self.registry.record_counter("oplog_entries_read")
        self.registry.record_gauge("oplog_last_read", sec)
        self.registry.record_gauge("replication_lag", max(0.0, time.time() - sec))

    def record_applied(self, count: int = 1):
        self.registry.record_counter("oplog_entries_applied", count)

    def record_skipped(self, reason: str):
        self.registry.record_counter("oplog_entries_skipped", 1, {"reason": reason})

    def record_batch(self, namespace: str, ops: int, duration_ms: float):
        self.registry.record_counter("batches_written", 1, {"namespace": namespace})
        self.registry.record_histogram("batch_write_time", duration_ms)

    def record_retry(self, namespace: str):
        self.registry.record_counter("batch_retries", 1, {"namespace": namespace})

    def record_failure(self, namespace: str):
        self.registry.record_counter("batch_failures", 1, {"namespace": namespace})

    def record_queue_size(self, size: int):
        self.registry.record_gauge("write_queue_size", size)


def _format_labels(labels: LabelSet) -> str:
    if not labels:
        return ""
    body = ",".join(f'{key}="{value}"' for key, value in labels)
    return "{" + body + "}"


class MetricsCollector:
    """指标收集器：复制指标 + 可选的进程指标"""

    def __init__(self, collect_process_metrics: bool = False, collection_interval: float = 5.0):
        self.registry = MetricsRegistry()
        self.replication = ReplicationMetrics(self.registry)
        self.process_metrics = (
            ProcessMetrics(self.registry, collection_interval) if collect_process_metrics else None
        )

    def start(self):
        if self.process_metrics:
            self.process_metrics.start_collection()

    def stop(self):
        if self.process_metrics:
            self.process_metrics.stop_collection()

    def get_metrics(self, names: List[str] = None) -> Dict[str, Any]:
        """获取指标，names为空时返回摘要"""
        if names is None:
            return self.registry.get_metrics_summary()

        result = {}
        with self.registry.lock:
            for name in names:
                metric = self.registry.metrics.get(name)
                if metric is None:
                    continue
                result[name] = {
                    "type": metric.metric_type.value,
                    "unit": metric.unit,
                    "latest_value": metric.value(),
                    "statistics": metric.get_statistics(),
                }
        return result

    def export_prometheus_format(self) -> str:
        """导出Prometheus文本格式，直方图按summary导出"""
        lines = []
        with self.registry.lock:
            for name, metric in self.registry.metrics.items():
                metric_name = f"mongosync_{name}"
                if metric.metric_type is MetricType.HISTOGRAM:
                    lines.append(f"# HELP {metric_name} {metric.description}")
                    lines.append(f"# TYPE {metric_name} summary")
                    stats = metric.get_statistics()
                    if stats:
                        lines.append(f'{metric_name}{{quantile="0.5"}} {stats["p50"]}')
                        lines.append(f'{metric_name}{{quantile="0.95"}} {stats["p95"]}')
                    lines.append(f"{metric_name}_count {metric.count}")
                    lines.append(f"{metric_name}_sum {metric.total}")
                    continue

                lines.append(f"# HELP {metric_name} {metric.description}")
                lines.append(f"# TYPE {metric_name} {metric.metric_type.value}")
                for labels, value in metric.series.items():
                    lines.append(f"{metric_name}{_format_labels(labels)} {value}")

        return "\n".join(lines) + "\n"
