"""
oplog数据模型
逻辑时钟（oplog位置）、命名空间和oplog条目
"""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union

from bson.timestamp import Timestamp


@dataclass(frozen=True, order=True)
class OplogTime:
    """oplog逻辑位置：(秒, 秒内序号)，按字典序比较"""
    sec: int = -1  # unix时间（秒）
    no: int = -1   # 同一秒内的逻辑序号

    def empty(self) -> bool:
        """是否未初始化"""
        return self.sec == -1 and self.no == -1

    def timestamp(self) -> Timestamp:
        """转换为bson时间戳"""
        return Timestamp(self.sec, self.no)

    @classmethod
    def from_timestamp(cls, ts: Timestamp) -> 'OplogTime':
        """从bson时间戳创建"""
        return cls(ts.time, ts.inc)

    @classmethod
    def parse(cls, value: Optional[str]) -> 'OplogTime':
        """解析命令行格式 "sec,no" 或 "sec:no" """
        if value is None or not value.strip():
            return cls()

        text = value.strip()
        for sep in (",", ":"):
            if sep in text:
                sec, no = text.split(sep, 1)
                break
        else:
            sec, no = text, "0"

        try:
            return cls(int(sec), int(no))
        except ValueError:
            raise ValueError(f"Invalid oplog time '{value}', expected 'seconds,sequence'")

    def __str__(self) -> str:
        if self.empty():
            return "empty"
        return f"{self.sec},{self.no}"


class NamespaceString:
    """命名空间 "db.collection"，以第一个"."分割"""

    def __init__(self, ns: str = None, coll: str = None):
        if ns is None:
            self._ns = ""
            self._dot_index = -1
        elif coll is None:
            self._ns = ns
            self._dot_index = ns.find(".")
        else:
            self._ns = f"{ns}.{coll}"
            self._dot_index = len(ns)

    def db(self) -> str:
        if self._dot_index < 0:
            return ""
        return self._ns[:self._dot_index]

    def coll(self) -> str:
        if self._dot_index < 0 or self._dot_index + 1 >= len(self._ns):
            return ""
        return self._ns[self._dot_index + 1:]

    def ns(self) -> str:
        return self._ns

    def __eq__(self, other) -> bool:
        if isinstance(other, NamespaceString):
            return self._ns == other._ns
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._ns)

    def __str__(self) -> str:
        return self._ns

    def __repr__(self) -> str:
        return f"NamespaceString({self._ns!r})"


class OpType(str, Enum):
    """oplog操作类型"""
    INSERT = "i"
    UPDATE = "u"
    DELETE = "d"
    COMMAND = "c"
    NOOP = "n"
    DATABASE = "db"  # 旧版本声明数据库存在


class OplogEntry:
    """oplog条目（对原始文档的只读包装）"""

    def __init__(self, raw: Dict[str, Any]):
        self.raw = raw

    @property
    def op(self) -> Optional[OpType]:
        """操作类型，无法识别时为None"""
        try:
            return OpType(self.raw.get("op"))
        except ValueError:
            return None

    @property
    def op_code(self) -> Any:
        return self.raw.get("op")

    @property
    def ns(self) -> str:
        return self.raw.get("ns", "")

    @property
    def namespace(self) -> NamespaceString:
        return NamespaceString(self.ns)

    @property
    def position(self) -> OplogTime:
        ts = self.raw.get("ts")
        if ts is None:
            return OplogTime()
        return OplogTime.from_timestamp(ts)

    @property
    def o(self) -> Dict[str, Any]:
        return self.raw.get("o") or {}

    @property
    def o2(self) -> Dict[str, Any]:
        return self.raw.get("o2") or {}

    def command_name(self) -> str:
        """命令名（命令体的第一个键）"""
        for key in self.o:
            return key
        return ""

    def command_target(self) -> Union[str, None]:
        """命令作用的集合名，数据库级命令返回空串"""
        name = self.command_name()
        value = self.o.get(name)
        if name == "renameCollection":
            return NamespaceString(value or "").coll()
        if isinstance(value, str):
            return value
        return ""

    def __repr__(self) -> str:
        return f"OplogEntry(op={self.op_code!r}, ns={self.ns!r}, ts={self.position})"
