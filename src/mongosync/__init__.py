"""
mongosync
MongoDB集群之间的快照克隆与oplog持续同步
"""

__version__ = "1.0.0"

from .data_models.base import (
    MongoSyncError,
    ConfigurationError,
    ConnectError,
    VersionUnsupportedError,
    OplogNotFoundError,
    OplogWindowError,
    BatchWriteError,
)
from .data_models.oplog import OplogTime, NamespaceString, OplogEntry, OpType
from .data_models.options import Options, validate_options
from .replication.engine import MongoSync
from .replication.mode import SyncMode, SyncPlan

__all__ = [
    # 引擎
    "MongoSync",
    "SyncMode",
    "SyncPlan",

    # 数据模型
    "Options",
    "validate_options",
    "OplogTime",
    "NamespaceString",
    "OplogEntry",
    "OpType",

    # 错误
    "MongoSyncError",
    "ConfigurationError",
    "ConnectError",
    "VersionUnsupportedError",
    "OplogNotFoundError",
    "OplogWindowError",
    "BatchWriteError",
]
