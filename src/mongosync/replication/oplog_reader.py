"""
oplog读取
在源端oplog上打开tailable游标，按位置升序产出条目。
可以被外部停止信号中断，没有结束位置时会一直等待新条目。
"""
import logging
import re
import threading
from typing import Any, Callable, Dict, Iterator, List, Optional

from ..data_models.base import ConfigurationError
from ..data_models.oplog import OplogEntry, OplogTime, OpType, NamespaceString
from ..data_models.options import LOGICAL_OPERATORS
from .position import get_side_oplog_time


logger = logging.getLogger(__name__)

# 全实例同步时不处理的数据库
SKIP_DBS = {"local", "config", "admin"}


def prefix_filter(doc_filter: Dict[str, Any], prefix: str = "o.") -> Dict[str, Any]:
    """把文档过滤条件改写到oplog条目的o字段上"""
    rewritten = {}
    for key, value in doc_filter.items():
        if key in LOGICAL_OPERATORS:
            rewritten[key] = [prefix_filter(sub, prefix) for sub in value]
        elif key.startswith("$"):
            raise ConfigurationError(f"Filter operator '{key}' cannot be applied to oplog entries")
        else:
            rewritten[f"{prefix}{key}"] = value
    return rewritten


def build_oplog_query(db: str, coll: str, doc_filter: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """构造oplog查询条件（不含位置）"""
    clauses: List[Dict[str, Any]] = []

    if not db:
        clauses.append({"ns": {"$not": re.compile(r"^(local|config)\.")}})
    elif not coll:
        db_prefix = f"^{re.escape(db)}\\."
        clauses.append({"$or": [
            {"ns": {"$regex": db_prefix}},
            {"ns": "admin.$cmd", "o.renameCollection": {"$regex": db_prefix}},
            {"ns": "admin.$cmd", "o.applyOps": {"$exists": True}},
        ]})
    else:
        ns = f"{db}.{coll}"
        clauses.append({"$or": [
            {"ns": ns},
            {"ns": f"{db}.$cmd"},
            {"ns": f"{db}.system.indexes", "o.ns": ns},
            {"ns": "admin.$cmd", "o.renameCollection": ns},
            {"ns": "admin.$cmd", "o.applyOps": {"$exists": True}},
        ]})

    # 过滤条件只作用于插入，其他操作无法在服务端判断
    if doc_filter:
        clauses.append({"$or": [{"op": {"$ne": OpType.INSERT.value}}, prefix_filter(doc_filter)]})

    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}


def position_query(query: Dict[str, Any], begin: OplogTime, inclusive: bool,
                   end: OplogTime = OplogTime()) -> Dict[str, Any]:
    """在查询条件上加入起始和结束位置"""
    bounds = {}
    if not begin.empty():
        bounds["$gte" if inclusive else "$gt"] = begin.timestamp()
    if not end.empty():
        bounds["$lte"] = end.timestamp()
    if not bounds:
        return dict(query)
    ts_clause = {"ts": bounds}
    if not query:
        return ts_clause
    return {"$and": [ts_clause, query]}


class NamespaceMatcher:
    """判断oplog条目是否属于同步范围"""

    def __init__(self, db: str, coll: str):
        self.db = db
        self.coll = coll

    def command_db(self, entry: OplogEntry) -> str:
        """命令实际作用的数据库"""
        if entry.command_name() == "renameCollection":
            return NamespaceString(entry.o.get("renameCollection") or "").db()
        return entry.namespace.db()

    def matches(self, entry: OplogEntry) -> bool:
        if entry.op is OpType.COMMAND:
            if entry.command_name() == "applyOps":
                # 内部操作逐条判断
                return True
            cmd_db = self.command_db(entry)
            if self.db:
                return cmd_db == self.db
            return cmd_db not in SKIP_DBS

        target = entry.namespace
        if entry.op is OpType.INSERT and target.coll() == "system.indexes":
            target = NamespaceString(entry.o.get("ns") or "")
        elif target.coll().startswith("system."):
            return False

        if not self.db:
            return bool(target.db()) and target.db() not in SKIP_DBS
        if target.db() != self.db:
            return False
        if self.coll:
            return target.coll() == self.coll
        return True


class OplogReader:
    """可中断的oplog条目序列"""

    def __init__(self, conn, oplog_ns: str, query: Dict[str, Any],
                 begin: OplogTime = OplogTime(), inclusive: bool = False,
                 end: OplogTime = OplogTime(), stop_event: threading.Event = None,
                 await_ms: int = 1000, reopen_interval: float = 1.0,
                 on_idle: Optional[Callable[[], None]] = None):
        self.conn = conn
        self.oplog_ns = oplog_ns
        self.query = query
        self.begin = begin
        self.inclusive = inclusive
        self.end = end
        self.stop_event = stop_event or threading.Event()
        self.await_ms = await_ms
        self.reopen_interval = reopen_interval
        self.on_idle = on_idle

        self.last_read = OplogTime()
        self.reached_end = False

    @property
    def stopped(self) -> bool:
        return self.stop_event.is_set()

    def _past_end(self, position: OplogTime) -> bool:
        return not self.end.empty() and position > self.end

    def _at_end(self, position: OplogTime) -> bool:
        return not self.end.empty() and position >= self.end

    def _source_past_end(self) -> bool:
        """源端整个oplog是否已经写到结束位置"""
        return get_side_oplog_time(self.conn, self.oplog_ns, "", "", first=False) >= self.end

    def entries(self) -> Iterator[OplogEntry]:
        """按位置升序产出条目，直到超过结束位置或收到停止信号"""
        resume_from = self.begin
        inclusive = self.inclusive
        # 源端已越过结束位置后，再读完一轮就结束
        source_past_end = False

        while not self.stopped:
            query = position_query(self.query, resume_from, inclusive, self.end)
            logger.debug("Opening oplog cursor on %s from %s", self.oplog_ns, resume_from)
            cursor = self.conn.tail(self.oplog_ns, query, self.await_ms)
            try:
                while not self.stopped:
                    for raw in cursor:
                        entry = OplogEntry(raw)
                        position = entry.position
                        if self._past_end(position):
                            self.reached_end = True
                            return

                        self.last_read = position
                        resume_from = position
                        inclusive = False
                        yield entry

                        if self._at_end(position):
                            self.reached_end = True
                            return
                        if self.stopped:
                            return

                    # 暂时没有新条目
                    if self.on_idle:
                        self.on_idle()
                    if not self.end.empty():
                        if source_past_end:
                            self.reached_end = True
                            return
                        source_past_end = self._source_past_end()
                    if not cursor.alive:
                        break
            finally:
                cursor.close()

            if self.stopped:
                return
            if source_past_end:
                continue
            logger.debug("Oplog cursor died, reopening in %.1fs", self.reopen_interval)
            self.stop_event.wait(self.reopen_interval)
