"""
快照克隆
把集合中现有的文档批量复制到目标端，然后复制索引
"""
import logging
import time
from typing import Any, Callable, Dict, Optional

from pymongo import ReplaceOne

from ..batch_processing.writer import WriteBatch, WritePipeline, document_size
from ..config.settings import BATCH_BUFFER_SIZE
from ..monitoring.metrics import ReplicationMetrics
from .indexes import IndexTransfer


logger = logging.getLogger(__name__)


class CollectionCloner:
    """集合克隆器"""

    def __init__(self, src_conn, pipeline: WritePipeline, index_transfer: IndexTransfer,
                 doc_filter: Optional[Dict[str, Any]] = None, no_index: bool = False,
                 metrics: Optional[ReplicationMetrics] = None,
                 should_stop: Callable[[], bool] = lambda: False):
        self.src_conn = src_conn
        self.pipeline = pipeline
        self.index_transfer = index_transfer
        self.doc_filter = doc_filter or {}
        self.no_index = no_index
        self.metrics = metrics
        self.should_stop = should_stop

    def clone_coll(self, src_ns: str, dst_ns: str, batch_size: int = BATCH_BUFFER_SIZE) -> int:
        """克隆一个集合，返回复制的文档数"""
        logger.info("Cloning collection %s -> %s", src_ns, dst_ns)
        start_time = time.time()

        cursor = self.src_conn.find(src_ns, self.doc_filter, no_cursor_timeout=True)
        batch = WriteBatch(dst_ns, batch_size)
        count = 0
        interrupted = False
        try:
            for document in cursor:
                if self.should_stop():
                    logger.warning("Clone of %s interrupted after %d documents", src_ns, count)
                    interrupted = True
                    break

                size = document_size(document)
                if not batch.fits(size):
                    self.pipeline.submit(batch, stream=dst_ns)
                    batch = WriteBatch(dst_ns, batch_size)

                batch.add(ReplaceOne({"_id": document["_id"]}, document, upsert=True), size)
                count += 1
        finally:
            close = getattr(cursor, "close", None)
            if close:
                close()

        self.pipeline.submit(batch, stream=dst_ns)

        if self.metrics:
            self.metrics.record_cloned(count, dst_ns)
        logger.info("Cloned %d documents %s -> %s in %.1fs",
                    count, src_ns, dst_ns, time.time() - start_time)

        if interrupted:
            logger.warning("Skipping index transfer for interrupted clone of %s", src_ns)
        elif not self.no_index:
            # 索引在数据全部写入之后创建
            self.pipeline.flush(dst_ns)
            self.index_transfer.transfer_indexes(src_ns, dst_ns)
        return count
