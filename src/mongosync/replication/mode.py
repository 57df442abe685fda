"""
同步模式选择
启动时根据配置计算一次，之后不再重新判断
"""
from dataclasses import dataclass
from enum import Enum
from typing import Tuple

from ..data_models.base import ConfigurationError
from ..data_models.options import Options


class SyncMode(str, Enum):
    """同步模式"""
    CLONE_OPLOG = "clone_oplog"  # 原样复制oplog
    CLONE_DB = "clone_db"        # 克隆整个数据库
    CLONE_COLL = "clone_coll"    # 克隆单个集合
    SYNC_OPLOG = "sync_oplog"    # 重放oplog


class OplogProcessOp(str, Enum):
    """oplog处理方式"""
    CLONE = "clone"  # 原样写入目标端的oplog命名空间
    APPLY = "apply"  # 解析并重放到目标集合


@dataclass(frozen=True)
class SyncPlan:
    """按顺序执行的同步步骤"""
    steps: Tuple[SyncMode, ...]

    @classmethod
    def from_options(cls, opt: Options) -> 'SyncPlan':
        """根据配置选择模式"""
        if opt.raw_oplog:
            return cls((SyncMode.CLONE_OPLOG,))

        steps = []
        if opt.db and not opt.coll and not opt.has_bounds:
            steps.append(SyncMode.CLONE_DB)
        elif opt.coll and not opt.has_bounds:
            steps.append(SyncMode.CLONE_COLL)

        # 克隆之后继续同步，或者单独从某个位置恢复同步
        if opt.oplog:
            steps.append(SyncMode.SYNC_OPLOG)

        if not steps:
            raise ConfigurationError("No replication mode selected by the given options")
        return cls(tuple(steps))

    def __contains__(self, mode: SyncMode) -> bool:
        return mode in self.steps

    @property
    def needs_clone(self) -> bool:
        return SyncMode.CLONE_DB in self.steps or SyncMode.CLONE_COLL in self.steps

    @property
    def needs_oplog(self) -> bool:
        return SyncMode.SYNC_OPLOG in self.steps or SyncMode.CLONE_OPLOG in self.steps

    def describe(self) -> str:
        return " -> ".join(step.value for step in self.steps)
