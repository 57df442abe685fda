"""
同步任务配置
一次运行期间不可变
"""
from typing import Any, Dict

from pydantic import Field, field_validator

from .base import ValueObject, ConfigurationError
from .oplog import OplogTime, NamespaceString


DEFAULT_DST_OPLOG_NS = "sync.oplog"

# 可以改写到oplog条目上的顶层操作符
LOGICAL_OPERATORS = ("$and", "$or", "$nor")


class Options(ValueObject):
    """同步任务配置"""
    # 源端
    src_srv: str = ""
    src_user: str = ""
    src_passwd: str = ""
    src_auth_db: str = "admin"
    src_use_mcr: bool = False

    # 目标端
    dst_srv: str = ""
    dst_user: str = ""
    dst_passwd: str = ""
    dst_auth_db: str = "admin"
    dst_use_mcr: bool = False

    # 要传输的数据库或集合，目标名为空时与源相同
    db: str = ""
    dst_db: str = ""
    coll: str = ""
    dst_coll: str = ""

    # oplog同步，区间为闭区间
    oplog: bool = False
    oplog_start: OplogTime = Field(default_factory=OplogTime)
    oplog_end: OplogTime = Field(default_factory=OplogTime)

    # 原样复制oplog
    raw_oplog: bool = False
    dst_oplog_ns: str = DEFAULT_DST_OPLOG_NS

    no_index: bool = False
    filter: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("oplog_start", "oplog_end", mode="before")
    @classmethod
    def _parse_oplog_time(cls, value):
        if value is None:
            return OplogTime()
        if isinstance(value, str):
            return OplogTime.parse(value)
        if isinstance(value, (tuple, list)):
            return OplogTime(*value)
        return value

    @property
    def target_db(self) -> str:
        """目标数据库名"""
        return self.dst_db or self.db

    @property
    def target_coll(self) -> str:
        """目标集合名"""
        return self.dst_coll or self.coll

    @property
    def src_ns(self) -> NamespaceString:
        return NamespaceString(self.db, self.coll)

    @property
    def dst_ns(self) -> NamespaceString:
        return NamespaceString(self.target_db, self.target_coll)

    @property
    def has_bounds(self) -> bool:
        """是否指定了oplog区间"""
        return not self.oplog_start.empty() or not self.oplog_end.empty()


def check_oplog_filter(doc_filter: Dict[str, Any]):
    """过滤条件作用于oplog条目的o字段，顶层只能是字段或逻辑操作符"""
    for key, value in doc_filter.items():
        if key in LOGICAL_OPERATORS:
            if not isinstance(value, list):
                raise ConfigurationError(f"Filter operator '{key}' needs a list of conditions")
            for sub in value:
                check_oplog_filter(sub)
        elif key.startswith("$"):
            raise ConfigurationError(f"Filter operator '{key}' cannot be applied to oplog entries")


def validate_options(opt: Options) -> Options:
    """校验配置组合"""
    if not opt.src_srv:
        raise ConfigurationError("Source server (--src_srv) is required")
    if not opt.dst_srv:
        raise ConfigurationError("Destination server (--dst_srv) is required")

    if opt.coll and not opt.db:
        raise ConfigurationError("--coll requires --db")
    if opt.dst_coll and not opt.coll:
        raise ConfigurationError("--dst_coll requires --coll")
    if opt.dst_db and not opt.db:
        raise ConfigurationError("--dst_db requires --db")

    if (not opt.oplog_start.empty() and not opt.oplog_end.empty()
            and opt.oplog_start > opt.oplog_end):
        raise ConfigurationError(
            f"oplog_start ({opt.oplog_start}) is after oplog_end ({opt.oplog_end})"
        )

    if opt.has_bounds and not (opt.oplog or opt.raw_oplog):
        raise ConfigurationError("--oplog_start/--oplog_end require --oplog or --raw_oplog")

    if opt.filter and (opt.oplog or opt.raw_oplog):
        check_oplog_filter(opt.filter)

    if opt.raw_oplog:
        if not NamespaceString(opt.dst_oplog_ns).coll():
            raise ConfigurationError(f"Invalid destination oplog namespace '{opt.dst_oplog_ns}'")
    elif not opt.db and not opt.oplog:
        raise ConfigurationError("Nothing to do: specify --db, --oplog or --raw_oplog")

    return opt
