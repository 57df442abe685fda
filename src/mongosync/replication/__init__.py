"""
复制系统包
快照克隆、oplog读取与重放
"""

from .mode import SyncMode, OplogProcessOp, SyncPlan
from .position import OPLOG_NS, get_side_oplog_time, validate_oplog_window
from .indexes import (
    IndexTransfer,
    get_mongo_version,
    get_coll_indexes_by_version,
    set_coll_indexes_by_version,
    get_all_coll_by_version,
)
from .cloner import CollectionCloner
from .oplog_reader import OplogReader, NamespaceMatcher, build_oplog_query
from .applier import OplogApplier, WriteSink
from .engine import MongoSync

__all__ = [
    # 模式
    "SyncMode",
    "OplogProcessOp",
    "SyncPlan",

    # 位置
    "OPLOG_NS",
    "get_side_oplog_time",
    "validate_oplog_window",

    # 索引
    "IndexTransfer",
    "get_mongo_version",
    "get_coll_indexes_by_version",
    "set_coll_indexes_by_version",
    "get_all_coll_by_version",

    # 克隆与重放
    "CollectionCloner",
    "OplogReader",
    "NamespaceMatcher",
    "build_oplog_query",
    "OplogApplier",
    "WriteSink",
    "MongoSync",
]
