"""
数据模型包
oplog位置、命名空间、同步任务配置和错误类型
"""

from .base import *
from .oplog import OplogTime, NamespaceString, OplogEntry, OpType
from .options import Options, validate_options, DEFAULT_DST_OPLOG_NS

__all__ = [
    # 基础模型
    "BaseModel",
    "ValueObject",

    # 错误
    "DomainError",
    "MongoSyncError",
    "ConfigurationError",
    "ConnectError",
    "VersionUnsupportedError",
    "OplogNotFoundError",
    "OplogWindowError",
    "BatchWriteError",

    # oplog
    "OplogTime",
    "NamespaceString",
    "OplogEntry",
    "OpType",

    # 配置
    "Options",
    "validate_options",
    "DEFAULT_DST_OPLOG_NS",
]
