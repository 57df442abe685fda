"""
同步引擎
根据配置选择模式：原样复制oplog、克隆数据库/集合、重放oplog，
克隆和重放共用同一个批量写入流水线
"""
import logging
import threading
import time
from typing import Any, Callable, Dict, Optional

from pymongo import ReplaceOne
from pymongo.errors import PyMongoError

from ..batch_processing.writer import WriteBatch, WritePipeline, document_size
from ..config.settings import Settings, settings as default_settings
from ..data_models.base import MongoSyncError
from ..data_models.oplog import OplogEntry, OplogTime, NamespaceString
from ..data_models.options import Options, validate_options
from ..monitoring.metrics import MetricsCollector
from ..storage.connection import MongoConnection, connect_and_auth
from .applier import OplogApplier, WriteSink
from .cloner import CollectionCloner
from .indexes import IndexTransfer, get_all_coll_by_version, get_mongo_version
from .mode import OplogProcessOp, SyncMode, SyncPlan
from .oplog_reader import NamespaceMatcher, OplogReader, build_oplog_query
from .position import OPLOG_NS, get_side_oplog_time, validate_oplog_window


logger = logging.getLogger(__name__)

# oplog重放只使用一个写入流，保证同一命名空间内的顺序
OPLOG_STREAM = "oplog"

# status()中展示的指标
STATUS_METRICS = (
    "docs_cloned", "oplog_entries_read", "oplog_entries_applied", "oplog_entries_skipped",
    "batches_written", "batch_failures", "replication_lag",
)


class OplogBatcher(WriteSink):
    """把oplog产生的写操作攒成批次，按读取顺序提交到同一个流"""

    def __init__(self, pipeline: WritePipeline, stream: str, batch_size: int,
                 flush_interval: float):
        self.pipeline = pipeline
        self.stream = stream
        self.batch_size = batch_size
        self.flush_interval = flush_interval
        self.batch: Optional[WriteBatch] = None

    def write(self, namespace: str, request: Any, size: int, position: OplogTime):
        self.pipeline.raise_if_failed()
        # 换命名空间或放不下时先提交当前批次
        if self.batch is not None and (self.batch.namespace != namespace or not self.batch.fits(size)):
            self.submit()
        if self.batch is None:
            self.batch = WriteBatch(namespace, self.batch_size)
        self.batch.add(request, size, position)

        if self.batch.is_full() or self.batch.age() >= self.flush_interval:
            self.submit()

    def submit(self):
        if self.batch:
            self.pipeline.submit(self.batch, stream=self.stream)
        self.batch = None

    def before_command(self):
        self.drain()

    def on_idle(self):
        """游标暂时没有新条目，写线程的失败在这里终止追踪"""
        self.submit()
        self.pipeline.raise_if_failed()

    def drain(self):
        """提交并等待本流的批次全部写完"""
        self.submit()
        self.pipeline.flush(self.stream)


class MongoSync:
    """MongoDB同步引擎"""

    def __init__(self, opt: Options, settings: Settings = None,
                 connector: Callable[..., MongoConnection] = connect_and_auth,
                 metrics: MetricsCollector = None):
        self.opt = opt
        self.settings = settings or default_settings
        self.connector = connector
        self.plan = SyncPlan.from_options(opt)

        monitoring = self.settings.monitoring
        self.metrics = metrics or MetricsCollector(
            collect_process_metrics=monitoring.collect_process_metrics,
            collection_interval=monitoring.metrics_collection_interval,
        )

        # 连接和版本在初始化时确定
        self.src_conn: Optional[MongoConnection] = None
        self.dst_conn: Optional[MongoConnection] = None
        self.src_version = ""
        self.dst_version = ""
        self.index_transfer: Optional[IndexTransfer] = None
        self.pipeline: Optional[WritePipeline] = None
        self.applier: Optional[OplogApplier] = None

        # oplog位置
        self.oplog_begin = OplogTime()
        self.begin_inclusive = False
        self.oplog_finish = OplogTime()

        # 运行状态
        self.stop_event = threading.Event()
        self.phase = "init"
        self.current_ns: Optional[str] = None
        self.started_at: Optional[float] = None

    @classmethod
    def new(cls, opt: Options, settings: Settings = None,
            connector: Callable[..., MongoConnection] = connect_and_auth) -> 'MongoSync':
        """校验配置、建立连接"""
        validate_options(opt)
        sync = cls(opt, settings=settings, connector=connector)
        try:
            sync.init_conn()
        except MongoSyncError:
            sync.close()
            raise
        return sync

    # 连接

    def connect_src(self) -> MongoConnection:
        opt = self.opt
        return self.connector(opt.src_srv, opt.src_auth_db, opt.src_user, opt.src_passwd,
                              opt.src_use_mcr, self.settings.sync.connect_timeout_ms)

    def connect_dst(self) -> MongoConnection:
        opt = self.opt
        return self.connector(opt.dst_srv, opt.dst_auth_db, opt.dst_user, opt.dst_passwd,
                              opt.dst_use_mcr, self.settings.sync.connect_timeout_ms)

    def init_conn(self):
        """连接两端并获取版本"""
        self.src_conn = self.connect_src()
        self.dst_conn = self.connect_dst()

        self.src_version = get_mongo_version(self.src_conn)
        self.dst_version = get_mongo_version(self.dst_conn)
        logger.info("Source %s version %s, destination %s version %s",
                    self.opt.src_srv, self.src_version, self.opt.dst_srv, self.dst_version)

        sync_settings = self.settings.sync
        self.index_transfer = IndexTransfer(
            self.src_conn, self.dst_conn, self.src_version, self.dst_version
        )
        self.index_transfer.check_versions()
        self.pipeline = WritePipeline(
            self.connect_dst,
            workers=sync_settings.writer_threads,
            queue_size=sync_settings.write_queue_size,
            max_retries=sync_settings.write_max_retries,
            retry_interval=sync_settings.write_retry_interval,
            metrics=self.metrics.replication,
        )

    def close(self):
        """关闭连接"""
        for conn in (self.src_conn, self.dst_conn):
            if conn is not None:
                conn.close()
        self.src_conn = None
        self.dst_conn = None

    # 运行

    def stop(self):
        """请求停止（克隆和oplog追踪在下一次迭代时退出）"""
        logger.info("Stop requested")
        self.stop_event.set()

    @property
    def stopped(self) -> bool:
        return self.stop_event.is_set()

    def last_applied_position(self) -> OplogTime:
        """最后成功应用的oplog位置"""
        positions = []
        if self.pipeline is not None:
            positions.append(self.pipeline.applied_position(OPLOG_STREAM))
        if self.applier is not None:
            positions.append(self.applier.last_command_position)
        return max(positions, default=OplogTime())

    def process(self):
        """按计划执行同步"""
        if self.src_conn is None:
            raise MongoSyncError("MongoSync.process() called before init_conn()")

        logger.info("Sync plan: %s", self.plan.describe())
        self.started_at = time.time()
        self.metrics.start()
        completed = False
        try:
            self.pipeline.start()

            if SyncMode.CLONE_OPLOG in self.plan:
                self.clone_oplog()
            else:
                if SyncMode.SYNC_OPLOG in self.plan:
                    self.prepare_oplog_begin()

                if SyncMode.CLONE_DB in self.plan:
                    self.clone_db()
                elif SyncMode.CLONE_COLL in self.plan:
                    self.clone_coll(self.opt.src_ns.ns(), self.opt.dst_ns.ns())
                self.pipeline.flush()

                if SyncMode.SYNC_OPLOG in self.plan and not self.stopped:
                    self.sync_oplog()

            self.phase = "shutdown"
            self.pipeline.close()
            completed = True
            logger.info("Sync finished, last applied position %s", self.last_applied_position())
        except MongoSyncError as e:
            raise e.with_context(self.phase, self.current_ns, self.last_applied_position())
        except PyMongoError as e:
            raise MongoSyncError(
                str(e), "DRIVER", phase=self.phase, namespace=self.current_ns,
                position=self.last_applied_position(),
            ) from e
        finally:
            if not completed:
                self.pipeline.close(raise_errors=False)
            self.metrics.stop()

    def prepare_oplog_begin(self):
        """确定oplog重放的起点"""
        self.phase = "resolve_position"
        opt = self.opt
        if opt.oplog_start.empty():
            # 在克隆开始前记录位置，克隆期间的写入会在之后重放
            self.oplog_begin = get_side_oplog_time(self.src_conn, OPLOG_NS, "", "", first=False)
            self.begin_inclusive = False
            if self.oplog_begin.empty():
                logger.warning("Source oplog is empty, replay starts from its beginning")
        else:
            validate_oplog_window(self.src_conn, OPLOG_NS, opt.oplog_start, opt.oplog_end)
            self.oplog_begin = opt.oplog_start
            self.begin_inclusive = True
        logger.info("Oplog replay starts %s %s",
                    "at" if self.begin_inclusive else "after", self.oplog_begin)

    def clone_oplog(self):
        """原样复制oplog到目标端"""
        self.phase = SyncMode.CLONE_OPLOG.value
        opt = self.opt
        if not opt.oplog_start.empty():
            validate_oplog_window(self.src_conn, OPLOG_NS, opt.oplog_start, opt.oplog_end)
            self.oplog_begin = opt.oplog_start
            self.begin_inclusive = True
        elif not self.src_conn.collection_exists(OPLOG_NS):
            # 位置为空时从oplog开头复制，但oplog必须存在
            get_side_oplog_time(self.src_conn, OPLOG_NS, "", "", first=True)
        self.generic_process_oplog(OplogProcessOp.CLONE)

    def clone_db(self):
        """克隆整个数据库"""
        self.phase = SyncMode.CLONE_DB.value
        opt = self.opt
        colls = get_all_coll_by_version(self.src_conn, self.src_version, opt.db)
        logger.info("Cloning database %s -> %s (%d collections)", opt.db, opt.target_db, len(colls))
        for coll in colls:
            if self.stopped:
                break
            self.clone_coll(NamespaceString(opt.db, coll).ns(),
                            NamespaceString(opt.target_db, coll).ns())

    def clone_coll(self, src_ns: str, dst_ns: str, batch_size: int = None) -> int:
        """克隆一个集合"""
        if self.phase != SyncMode.CLONE_DB.value:
            self.phase = SyncMode.CLONE_COLL.value
        self.current_ns = src_ns
        cloner = CollectionCloner(
            self.src_conn, self.pipeline, self.index_transfer,
            doc_filter=self.opt.filter, no_index=self.opt.no_index,
            metrics=self.metrics.replication, should_stop=self.stop_event.is_set,
        )
        return cloner.clone_coll(src_ns, dst_ns, batch_size or self.settings.sync.batch_buffer_size)

    def sync_oplog(self):
        """重放oplog"""
        self.phase = SyncMode.SYNC_OPLOG.value
        self.generic_process_oplog(OplogProcessOp.APPLY)

    def generic_process_oplog(self, op: OplogProcessOp):
        """读取oplog并逐条处理"""
        opt = self.opt
        sync_settings = self.settings.sync

        batcher = OplogBatcher(self.pipeline, OPLOG_STREAM, sync_settings.batch_buffer_size,
                               sync_settings.tail_flush_interval)

        if op is OplogProcessOp.CLONE and not opt.db:
            # 全量原样复制，不做过滤
            query: Dict[str, Any] = {}
            matcher = None
        else:
            query = build_oplog_query(opt.db, opt.coll, opt.filter)
            matcher = NamespaceMatcher(opt.db, opt.coll)

        if op is OplogProcessOp.APPLY:
            self.applier = OplogApplier(
                self.dst_conn, batcher, self.index_transfer,
                src_db=opt.db, src_coll=opt.coll,
                dst_db=opt.target_db, dst_coll=opt.target_coll,
                size_of=document_size, metrics=self.metrics.replication,
            )

        reader = OplogReader(
            self.src_conn, OPLOG_NS, query,
            begin=self.oplog_begin, inclusive=self.begin_inclusive, end=opt.oplog_end,
            stop_event=self.stop_event,
            await_ms=sync_settings.tail_await_ms,
            reopen_interval=sync_settings.tail_reopen_interval,
            on_idle=batcher.on_idle,
        )

        replication = self.metrics.replication
        for entry in reader.entries():
            position = entry.position
            # 无论是否匹配都记录读取位置
            self.oplog_finish = position
            replication.record_read(position.sec)
            self.current_ns = entry.ns

            if matcher is not None and not matcher.matches(entry):
                replication.record_skipped("namespace")
                continue

            if op is OplogProcessOp.CLONE:
                self.clone_entry(batcher, entry)
            else:
                self.applier.apply_entry(entry)

        batcher.drain()
        logger.info("Oplog processing (%s) stopped at %s", op.value, self.oplog_finish)

    def clone_entry(self, batcher: OplogBatcher, entry: OplogEntry):
        """原样写入目标端的oplog命名空间，按ts幂等"""
        raw = entry.raw
        request = ReplaceOne({"ts": raw["ts"]}, raw, upsert=True)
        batcher.write(self.opt.dst_oplog_ns, request, document_size(raw), entry.position)

    def status(self) -> Dict[str, Any]:
        """运行状态"""
        return {
            "plan": [step.value for step in self.plan.steps],
            "phase": self.phase,
            "namespace": self.current_ns,
            "stopped": self.stopped,
            "src_version": self.src_version,
            "dst_version": self.dst_version,
            "oplog_begin": str(self.oplog_begin),
            "oplog_finish": str(self.oplog_finish),
            "last_applied": str(self.last_applied_position()),
            "pending_batches": self.pipeline.pending() if self.pipeline and self.pipeline.running else 0,
            "uptime": time.time() - self.started_at if self.started_at else 0.0,
            "metrics": {name: self.metrics.registry.get_value(name) for name in STATUS_METRICS},
        }
