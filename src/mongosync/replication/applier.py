"""
oplog条目应用
把插入/更新/删除/命令重放到（可能改名后的）目标命名空间。
所有操作都可以重复应用：插入转为按_id的upsert，命令的“已应用”错误被容忍。
"""
import logging
from typing import Any, Callable, Dict, Optional

from pymongo import DeleteOne, ReplaceOne, UpdateOne
from pymongo.errors import OperationFailure

from ..data_models.base import VersionUnsupportedError
from ..data_models.oplog import OplogEntry, OplogTime, OpType, NamespaceString
from ..monitoring.metrics import ReplicationMetrics
from .indexes import IndexTransfer
from .oplog_reader import NamespaceMatcher


logger = logging.getLogger(__name__)

# 重放时可以忽略的命令错误码
TOLERATED_COMMAND_ERRORS = {
    26,  # NamespaceNotFound
    27,  # IndexNotFound
    48,  # NamespaceExists
    85,  # IndexOptionsConflict
    86,  # IndexKeySpecsConflict
}

TOLERATED_COMMAND_MESSAGES = ("ns not found", "already exists", "index not found")

# 命令体中需要替换为目标完整命名空间的字段
FULL_NS_FIELDS = ("renameCollection", "to")

# 两阶段索引构建的内部命令，只有commitIndexBuild需要转换为createIndexes
INTERNAL_COMMANDS = {"startIndexBuild", "abortIndexBuild", "dbCheck"}


def is_tolerated_command_error(error: OperationFailure) -> bool:
    """命令重放失败是否属于“已经应用过”"""
    if error.code in TOLERATED_COMMAND_ERRORS:
        return True
    message = str(error).lower()
    return any(text in message for text in TOLERATED_COMMAND_MESSAGES)


class WriteSink:
    """应用器的写出接口：写操作进入批次，命令同步执行"""

    def write(self, namespace: str, request: Any, size: int, position: OplogTime):
        raise NotImplementedError

    def before_command(self):
        """执行命令前把已排队的写操作落盘"""
        raise NotImplementedError


class OplogApplier:
    """oplog条目应用器"""

    def __init__(self, dst_conn, sink: WriteSink, index_transfer: IndexTransfer,
                 src_db: str, src_coll: str, dst_db: str, dst_coll: str,
                 size_of: Callable[[Dict[str, Any]], int],
                 metrics: Optional[ReplicationMetrics] = None):
        self.dst_conn = dst_conn
        self.sink = sink
        self.index_transfer = index_transfer
        self.src_db = src_db
        self.src_coll = src_coll
        self.dst_db = dst_db
        self.dst_coll = dst_coll
        self.size_of = size_of
        self.metrics = metrics
        self.last_command_position = OplogTime()

    # 命名空间映射

    def map_db(self, db: str) -> str:
        if self.src_db and db == self.src_db:
            return self.dst_db or db
        return db

    def map_ns(self, ns: NamespaceString) -> NamespaceString:
        """源命名空间 -> 目标命名空间"""
        if self.src_coll and ns.db() == self.src_db and ns.coll() == self.src_coll:
            return NamespaceString(self.dst_db, self.dst_coll)
        return NamespaceString(self.map_db(ns.db()), ns.coll())

    def _skip(self, entry: OplogEntry, reason: str):
        logger.debug("Skipping %r: %s", entry, reason)
        if self.metrics:
            self.metrics.record_skipped(reason)

    # 分发

    def apply_entry(self, entry: OplogEntry, position: Optional[OplogTime] = None):
        """按类型应用一个oplog条目"""
        if position is None:
            position = entry.position
        op = entry.op

        if op is OpType.INSERT:
            self.apply_insert(entry, position)
        elif op is OpType.UPDATE:
            self.apply_update(entry, position)
        elif op is OpType.DELETE:
            self.apply_delete(entry, position)
        elif op is OpType.COMMAND:
            self.apply_command(entry, position)
        elif op in (OpType.NOOP, OpType.DATABASE):
            self._skip(entry, "noop")
        else:
            logger.warning("Skipping oplog entry with unknown op %r at %s", entry.op_code, position)
            self._skip(entry, "unknown_op")

    def apply_insert(self, entry: OplogEntry, position: OplogTime):
        """插入（按_id upsert）；旧版本的索引创建表现为对system.indexes的插入"""
        nss = entry.namespace
        if nss.coll() == "system.indexes":
            self.apply_index_insert(entry, position)
            return

        document = entry.o
        dst_ns = self.map_ns(nss).ns()
        if "_id" in document:
            request = ReplaceOne({"_id": document["_id"]}, document, upsert=True)
        else:
            request = ReplaceOne(document, document, upsert=True)
        self.sink.write(dst_ns, request, self.size_of(document), position)

    def apply_update(self, entry: OplogEntry, position: OplogTime):
        """更新：$操作符更新或整体替换"""
        query = entry.o2
        update = dict(entry.o)
        dst_ns = self.map_ns(entry.namespace).ns()

        version = update.pop("$v", None)
        if version is not None and version != 1:
            raise VersionUnsupportedError(
                f"Update format $v={version} at {position} cannot be replayed, "
                "the source writes delta updates (MongoDB 5.0 and newer)",
                src_version=self.index_transfer.src_version,
                dst_version=self.index_transfer.dst_version,
            )

        if any(key.startswith("$") for key in update):
            request = UpdateOne(query, update, upsert=False)
        else:
            request = ReplaceOne(query, update, upsert=True)
        self.sink.write(dst_ns, request, self.size_of(query) + self.size_of(update), position)

    def apply_delete(self, entry: OplogEntry, position: OplogTime):
        """删除"""
        query = entry.o
        dst_ns = self.map_ns(entry.namespace).ns()
        self.sink.write(dst_ns, DeleteOne(query), self.size_of(query), position)

    def apply_index_insert(self, entry: OplogEntry, position: OplogTime):
        """旧版本oplog中的索引创建"""
        index = dict(entry.o)
        target = NamespaceString(index.get("ns") or "")
        dst_ns = self.map_ns(target).ns()
        self.sink.before_command()
        try:
            self.index_transfer.create_index(index, dst_ns)
        except OperationFailure as e:
            if not is_tolerated_command_error(e):
                raise
            logger.warning("Index %s on %s already applied: %s", index.get("name"), dst_ns, e)
        self.last_command_position = position

    def apply_command(self, entry: OplogEntry, position: OplogTime):
        """命令：同集合的命令替换集合名；单集合同步时丢弃其他集合的命令"""
        name = entry.command_name()
        if name == "applyOps":
            self.apply_ops(entry, position)
            return
        if name in INTERNAL_COMMANDS:
            self._skip(entry, "internal_command")
            return

        target_coll = entry.command_target()
        if self.src_coll:
            if target_coll != self.src_coll:
                self._skip(entry, "other_collection_command")
                return
            self.run_command(entry, position, same_coll=True)
        else:
            self.run_command(entry, position, same_coll=False)

    def apply_ops(self, entry: OplogEntry, position: OplogTime):
        """事务（applyOps）：逐条应用内部操作"""
        matcher = NamespaceMatcher(self.src_db, self.src_coll)
        for op in entry.o.get("applyOps") or []:
            inner = OplogEntry(op)
            if not matcher.matches(inner):
                self._skip(inner, "namespace")
                continue
            self.apply_entry(inner, position)

    def rewrite_command(self, entry: OplogEntry, same_coll: bool) -> Dict[str, Any]:
        """把命令体改写到目标命名空间"""
        command = dict(entry.o)
        name = entry.command_name()

        if name == "commitIndexBuild":
            command = {"createIndexes": command[name], "indexes": command.get("indexes", [])}
            name = "createIndexes"

        if same_coll and name != "renameCollection":
            command[name] = self.dst_coll

        for field in FULL_NS_FIELDS:
            value = command.get(field)
            if isinstance(value, str):
                command[field] = self.map_ns(NamespaceString(value)).ns()

        # 索引定义中的ns
        if isinstance(command.get("indexes"), list):
            indexes = []
            for index in command["indexes"]:
                index = dict(index)
                if "ns" in index:
                    index["ns"] = self.map_ns(NamespaceString(index["ns"])).ns()
                indexes.append(index)
            command["indexes"] = indexes

        # 目标端自动创建_id索引
        if name == "create":
            command.pop("idIndex", None)
        return command

    def run_command(self, entry: OplogEntry, position: OplogTime, same_coll: bool):
        """在目标端执行命令"""
        command = self.rewrite_command(entry, same_coll)
        name = entry.command_name()
        if name == "renameCollection":
            db = "admin"
        else:
            db = self.map_db(entry.namespace.db())

        self.sink.before_command()
        try:
            self.dst_conn.run_command(db, command)
            logger.info("Applied command %s on %s at %s", name, db, position)
        except OperationFailure as e:
            if not is_tolerated_command_error(e):
                raise
            logger.warning("Command %s on %s at %s already applied: %s", name, db, position, e)
        self.last_command_position = position
        if self.metrics:
            self.metrics.record_applied()
