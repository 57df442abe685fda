"""
批量并发写入
生产者（克隆器、oplog应用器）把写操作攒成批次，由后台线程写入目标端。
同一个流的批次总是交给同一个线程，按提交顺序写入。
"""

import hashlib
import itertools
import logging
import queue
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from bson import encode as bson_encode
from pymongo.errors import PyMongoError

from ..config.settings import BATCH_BUFFER_SIZE
from ..data_models.base import BatchWriteError
from ..data_models.oplog import OplogTime
from ..monitoring.metrics import ReplicationMetrics


logger = logging.getLogger(__name__)

# 每个写操作在字节统计中的额外开销
WRITE_OP_OVERHEAD = 64

_STOP = object()


def document_size(document: Dict[str, Any]) -> int:
    """文档的BSON字节数"""
    return len(bson_encode(document))


class WriteBatch:
    """发往同一个目标命名空间的写操作批次"""

    def __init__(self, namespace: str, max_bytes: int = BATCH_BUFFER_SIZE):
        self.namespace = namespace
        self.max_bytes = max_bytes
        self.requests: List[Any] = []
        self.size_bytes = 0
        self.last_position = OplogTime()
        self.entry_count = 0  # 批次覆盖的oplog条目数
        self.created_at = time.monotonic()

    def add(self, request: Any, size: int, position: Optional[OplogTime] = None):
        """追加写操作"""
        if not self.requests:
            self.created_at = time.monotonic()
        self.requests.append(request)
        self.size_bytes += size + WRITE_OP_OVERHEAD
        if position is not None and not position.empty():
            self.last_position = position
            self.entry_count += 1

    def fits(self, size: int) -> bool:
        """再加入size字节后是否仍不超过上限（空批次总能放下一个）"""
        if not self.requests:
            return True
        return self.size_bytes + size + WRITE_OP_OVERHEAD <= self.max_bytes

    def is_full(self) -> bool:
        return self.size_bytes >= self.max_bytes

    def age(self) -> float:
        """第一个写操作加入后经过的秒数"""
        return time.monotonic() - self.created_at

    def __len__(self) -> int:
        return len(self.requests)

    def __bool__(self) -> bool:
        return bool(self.requests)

    def __repr__(self) -> str:
        return f"WriteBatch(ns={self.namespace!r}, ops={len(self.requests)}, bytes={self.size_bytes})"


class BatchWorker:
    """写线程，独占一个目标端连接"""

    def __init__(self, worker_id: int, pipeline: 'WritePipeline', connection: Any, queue_size: int):
        self.worker_id = worker_id
        self.pipeline = pipeline
        self.connection = connection
        self.queue: "queue.Queue" = queue.Queue(maxsize=queue_size)
        self.thread = threading.Thread(
            target=self._run, name=f"batch-writer-{worker_id}", daemon=True
        )

    def start(self):
        self.thread.start()

    def _run(self):
        """写入循环"""
        while True:
            item = self.queue.get()
            try:
                if item is _STOP:
                    return
                stream, batch = item
                # 出错之后不再写入，保证不会越过失败的批次
                if self.pipeline.failed:
                    continue
                self.pipeline._write_batch(self.connection, stream, batch)
            finally:
                self.queue.task_done()


class WritePipeline:
    """批量写入流水线"""

    def __init__(self, connection_factory: Callable[[], Any], workers: int = 4,
                 queue_size: int = 8, max_retries: int = 3, retry_interval: float = 1.0,
                 metrics: Optional[ReplicationMetrics] = None):
        if workers < 1:
            raise ValueError("WritePipeline needs at least one worker")
        self.connection_factory = connection_factory
        self.num_workers = workers
        self.queue_size = max(1, queue_size)
        self.max_retries = max_retries
        self.retry_interval = retry_interval
        self.metrics = metrics

        self.workers: List[BatchWorker] = []
        self.applied: Dict[Optional[str], OplogTime] = {}
        self.error: Optional[BatchWriteError] = None
        self.lock = threading.Lock()
        self._round_robin = itertools.count()
        self.running = False

    @property
    def failed(self) -> bool:
        return self.error is not None

    def start(self):
        """为每个写线程建立独立连接并启动"""
        if self.running:
            return

        connections = []
        try:
            for _ in range(self.num_workers):
                connections.append(self.connection_factory())
        except Exception:
            for conn in connections:
                conn.close()
            raise

        self.workers = [
            BatchWorker(i, self, conn, self.queue_size)
            for i, conn in enumerate(connections)
        ]
        for worker in self.workers:
            worker.start()
        self.running = True
        logger.info("Write pipeline started with %d workers", self.num_workers)

    def _partition_key(self, stream: Optional[str]) -> int:
        """选择写线程"""
        if stream is None:
            return next(self._round_robin) % self.num_workers
        hash_value = int(hashlib.md5(stream.encode()).hexdigest(), 16)
        return hash_value % self.num_workers

    def submit(self, batch: WriteBatch, stream: Optional[str] = None):
        """提交批次，队列满时阻塞；提交后批次归写线程所有"""
        if not self.running:
            raise RuntimeError("WritePipeline is not running")
        self.raise_if_failed()
        if not batch:
            return

        worker = self.workers[self._partition_key(stream)]
        worker.queue.put((stream, batch))
        if self.metrics:
            self.metrics.record_queue_size(self.pending())

    def flush(self, stream: Optional[str] = None):
        """等待指定流（或全部）的批次写完"""
        if not self.running:
            return
        if stream is None:
            for worker in self.workers:
                worker.queue.join()
        else:
            self.workers[self._partition_key(stream)].queue.join()
        self.raise_if_failed()

    def close(self, raise_errors: bool = True):
        """写完所有批次后停止写线程并关闭连接"""
        if not self.running:
            if raise_errors:
                self.raise_if_failed()
            return

        for worker in self.workers:
            worker.queue.put(_STOP)
        for worker in self.workers:
            worker.thread.join()
            worker.connection.close()
        self.running = False
        logger.info("Write pipeline stopped")
        if raise_errors:
            self.raise_if_failed()

    def pending(self) -> int:
        """排队中的批次数"""
        return sum(worker.queue.qsize() for worker in self.workers)

    def applied_position(self, stream: Optional[str] = None) -> OplogTime:
        """该流最后写入成功的oplog位置"""
        with self.lock:
            return self.applied.get(stream, OplogTime())

    def raise_if_failed(self):
        if self.error is not None:
            raise self.error

    def _write_batch(self, connection: Any, stream: Optional[str], batch: WriteBatch):
        """写入一个批次，失败时有限次重试"""
        attempts = 0
        while True:
            attempts += 1
            start_time = time.time()
            try:
                connection.bulk_write(batch.namespace, batch.requests, ordered=True)
                break
            except PyMongoError as e:
                if attempts > self.max_retries:
                    self._fail(stream, batch, e, attempts)
                    return
                logger.warning(
                    "Batch write to %s failed (attempt %d/%d): %s",
                    batch.namespace, attempts, self.max_retries + 1, e,
                )
                if self.metrics:
                    self.metrics.record_retry(batch.namespace)
                time.sleep(self.retry_interval * attempts)
            except Exception as e:
                # 非驱动错误（如无法编码的文档）不重试
                self._fail(stream, batch, e, attempts)
                return

        duration_ms = (time.time() - start_time) * 1000
        with self.lock:
            if not batch.last_position.empty():
                self.applied[stream] = batch.last_position
        if self.metrics:
            self.metrics.record_batch(batch.namespace, len(batch), duration_ms)
            if batch.entry_count:
                self.metrics.record_applied(batch.entry_count)
            self.metrics.record_queue_size(self.pending())

    def _fail(self, stream: Optional[str], batch: WriteBatch, cause: Exception, attempts: int):
        """记录第一个失败"""
        position = self.applied_position(stream)
        logger.error(
            "Batch write to %s failed after %d attempts, last applied position %s: %s",
            batch.namespace, attempts, position, cause,
        )
        if self.metrics:
            self.metrics.record_failure(batch.namespace)
        with self.lock:
            if self.error is None:
                error = BatchWriteError(
                    f"Batch write to {batch.namespace} failed after {attempts} attempts: {cause}",
                    namespace=batch.namespace, position=position, attempts=attempts,
                )
                error.__cause__ = cause
                self.error = error
