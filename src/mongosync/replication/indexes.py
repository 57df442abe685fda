"""
按版本传输索引
不同大版本的索引元数据位置和形态不同：
  - 3.0之前：索引存放在 <db>.system.indexes 集合，集合列表在 <db>.system.namespaces
  - 3.0之后：通过 listIndexes / listCollections 命令获取
  - 2.6之前只能通过插入 system.indexes 创建索引，之后使用 createIndexes 命令
"""
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from ..data_models.base import VersionUnsupportedError
from ..data_models.oplog import NamespaceString


logger = logging.getLogger(__name__)

# 支持的最老版本
MIN_SUPPORTED_VERSION = (2, 4)

_VERSION_PATTERN = re.compile(r"^(\d+)\.(\d+)")


def parse_version(version: Optional[str]) -> Optional[Tuple[int, int]]:
    """解析 "3.0.15" -> (3, 0)，无法解析返回None"""
    if not version:
        return None
    match = _VERSION_PATTERN.match(version.strip())
    if not match:
        return None
    return int(match.group(1)), int(match.group(2))


def check_version(version: Optional[str], src_version: str = None, dst_version: str = None) -> Tuple[int, int]:
    """返回可用的版本号，否则抛出VersionUnsupportedError"""
    parsed = parse_version(version)
    if parsed is None or parsed < MIN_SUPPORTED_VERSION:
        raise VersionUnsupportedError(
            f"Unsupported server version '{version}'", src_version, dst_version
        )
    return parsed


def get_mongo_version(conn) -> str:
    """获取服务器版本"""
    return conn.server_version()


def get_coll_indexes_by_version(conn, version: str, ns: str) -> List[Dict[str, Any]]:
    """按版本读取集合的索引定义"""
    major_minor = check_version(version, src_version=version)
    nss = NamespaceString(ns)

    if major_minor < (3, 0):
        indexes = conn.find(f"{nss.db()}.system.indexes", {"ns": ns})
    else:
        indexes = conn.list_indexes(ns)
    return [dict(index) for index in indexes]


def translate_index(index: Dict[str, Any], dst_ns: str, src_version: str, dst_version: str) -> Dict[str, Any]:
    """把源端的索引定义转换为目标端可用的形式"""
    src_vm = check_version(src_version, src_version, dst_version)
    dst_vm = check_version(dst_version, src_version, dst_version)

    translated = dict(index)
    if "key" not in translated or "name" not in translated:
        raise VersionUnsupportedError(
            f"Index definition without key/name: {index}", src_version, dst_version
        )

    # 4.4开始索引定义中不再携带ns
    if dst_vm >= (4, 4):
        translated.pop("ns", None)
    else:
        translated["ns"] = dst_ns

    # 索引格式版本由目标端决定
    if src_vm != dst_vm:
        translated.pop("v", None)
    return translated


def set_coll_indexes_by_version(conn, version: str, coll_full_name: str, index: Dict[str, Any]):
    """按版本在目标端创建索引"""
    major_minor = check_version(version, dst_version=version)
    nss = NamespaceString(coll_full_name)

    if major_minor < (2, 6):
        spec = dict(index)
        spec["ns"] = coll_full_name
        conn.insert_one(f"{nss.db()}.system.indexes", spec)
    else:
        spec = {k: v for k, v in index.items() if not (k == "ns" and major_minor >= (4, 4))}
        conn.run_command(nss.db(), {"createIndexes": nss.coll(), "indexes": [spec]})


def get_all_coll_by_version(conn, version: str, db: str) -> List[str]:
    """按版本列出数据库中的集合（不含system集合）"""
    major_minor = check_version(version, src_version=version)

    if major_minor < (3, 0):
        prefix = f"{db}."
        names = []
        for item in conn.find(f"{db}.system.namespaces"):
            full_name = item.get("name", "")
            # 跳过索引命名空间（包含$）
            if not full_name.startswith(prefix) or "$" in full_name:
                continue
            names.append(full_name[len(prefix):])
    elif major_minor < (3, 4):
        names = conn.list_collection_names(db)
    else:
        # 3.4开始有视图，只要普通集合
        names = conn.list_collection_names(db, filter={"type": "collection"})

    return sorted(name for name in names if not name.startswith("system."))


class IndexTransfer:
    """在两个连接之间传输集合索引"""

    def __init__(self, src_conn, dst_conn, src_version: str, dst_version: str):
        self.src_conn = src_conn
        self.dst_conn = dst_conn
        self.src_version = src_version
        self.dst_version = dst_version

    def check_versions(self):
        """两端版本都必须有已知的转换方式"""
        check_version(self.src_version, self.src_version, self.dst_version)
        check_version(self.dst_version, self.src_version, self.dst_version)

    def transfer_indexes(self, src_ns: str, dst_ns: str) -> int:
        """复制src_ns的索引到dst_ns，返回创建的索引数"""
        self.check_versions()
        indexes = get_coll_indexes_by_version(self.src_conn, self.src_version, src_ns)

        created = 0
        for index in indexes:
            if index.get("name") == "_id_":
                continue
            self.create_index(index, dst_ns)
            created += 1

        logger.info("Transferred %d indexes %s -> %s", created, src_ns, dst_ns)
        return created

    def create_index(self, index: Dict[str, Any], dst_ns: str):
        """在目标端创建一个索引"""
        translated = translate_index(index, dst_ns, self.src_version, self.dst_version)
        set_coll_indexes_by_version(self.dst_conn, self.dst_version, dst_ns, translated)
