"""
oplog位置
确定节点上某个命名空间最早/最晚的oplog位置，并校验重放区间
"""
import logging
import re
from typing import Any, Dict

from ..data_models.base import OplogNotFoundError, OplogWindowError
from ..data_models.oplog import OplogTime


logger = logging.getLogger(__name__)

OPLOG_NS = "local.oplog.rs"


def namespace_query(db: str, coll: str) -> Dict[str, Any]:
    """命名空间范围对应的ns条件"""
    if not db:
        return {}
    if not coll:
        return {"ns": {"$regex": f"^{re.escape(db)}\\."}}
    return {"ns": f"{db}.{coll}"}


def get_side_oplog_time(conn, oplog_ns: str, db: str, coll: str, first: bool) -> OplogTime:
    """获取最早（first=True）或最晚的oplog位置，没有条目时返回空位置"""
    if not conn.collection_exists(oplog_ns):
        raise OplogNotFoundError(f"No oplog available at {oplog_ns}", namespace=oplog_ns)

    sort = [("$natural", 1 if first else -1)]
    entry = conn.find_one(oplog_ns, namespace_query(db, coll), sort=sort)
    if entry is None or "ts" not in entry:
        return OplogTime()
    return OplogTime.from_timestamp(entry["ts"])


def validate_oplog_window(conn, oplog_ns: str, start: OplogTime, end: OplogTime) -> OplogTime:
    """确认 [start, end] 仍在源端oplog中，返回当前最早的位置"""
    first = get_side_oplog_time(conn, oplog_ns, "", "", first=True)
    if first.empty():
        raise OplogWindowError(f"Oplog {oplog_ns} is empty, nothing to replay from", position=start)

    if not start.empty() and start < first:
        raise OplogWindowError(
            f"oplog_start {start} is older than the first oplog entry {first}; "
            f"the requested window is no longer available",
            position=start,
        )

    if not end.empty() and end < first:
        raise OplogWindowError(
            f"oplog_end {end} is older than the first oplog entry {first}", position=end
        )

    logger.info("Oplog window on source starts at %s", first)
    return first
