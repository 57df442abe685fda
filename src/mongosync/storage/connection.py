"""
MongoDB连接
连接认证以及同步引擎用到的驱动操作
"""
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import pymongo
from pymongo import MongoClient, CursorType
from pymongo.errors import PyMongoError

from ..data_models.base import ConnectError
from ..data_models.oplog import NamespaceString


logger = logging.getLogger(__name__)

# pymongo 4已不支持MONGODB-CR，旧认证方式退回到最早的SCRAM机制
LEGACY_AUTH_MECHANISM = "SCRAM-SHA-1"


class MongoConnection:
    """单个MongoDB节点的连接，同一时刻只属于一个线程"""

    def __init__(self, client: MongoClient, server: str = ""):
        self.client = client
        self.server = server

    def _collection(self, ns: str):
        nss = NamespaceString(ns)
        return self.client[nss.db()][nss.coll()]

    def server_version(self) -> str:
        """服务器版本字符串，如 "3.0.15" """
        return self.client.admin.command("buildInfo")["version"]

    def find(self, ns: str, query: Optional[Mapping[str, Any]] = None,
             sort: Optional[List[Tuple[str, int]]] = None, limit: int = 0,
             projection: Optional[Mapping[str, Any]] = None,
             no_cursor_timeout: bool = False) -> Iterable[Dict[str, Any]]:
        """普通查询"""
        cursor = self._collection(ns).find(
            query or {}, projection=projection, limit=limit,
            no_cursor_timeout=no_cursor_timeout,
        )
        if sort:
            cursor = cursor.sort(sort)
        return cursor

    def find_one(self, ns: str, query: Optional[Mapping[str, Any]] = None,
                 sort: Optional[List[Tuple[str, int]]] = None) -> Optional[Dict[str, Any]]:
        """查询单个文档"""
        return self._collection(ns).find_one(query or {}, sort=sort)

    def tail(self, ns: str, query: Mapping[str, Any], max_await_ms: int = 1000):
        """在capped集合（oplog）上打开tailable-await游标"""
        return self._collection(ns).find(
            query,
            cursor_type=CursorType.TAILABLE_AWAIT,
            max_await_time_ms=max_await_ms,
        )

    def bulk_write(self, ns: str, requests: Sequence[Any], ordered: bool = True):
        """批量写入"""
        return self._collection(ns).bulk_write(list(requests), ordered=ordered)

    def insert_one(self, ns: str, document: Mapping[str, Any]):
        """插入单个文档"""
        return self._collection(ns).insert_one(dict(document))

    def run_command(self, db: str, command: Mapping[str, Any]) -> Dict[str, Any]:
        """在指定数据库上执行命令（保持命令体键的顺序）"""
        return self.client[db].command(dict(command))

    def list_collection_names(self, db: str, filter: Optional[Mapping[str, Any]] = None) -> List[str]:
        """列出集合名"""
        return self.client[db].list_collection_names(filter=filter)

    def list_indexes(self, ns: str) -> List[Dict[str, Any]]:
        """列出集合的索引定义"""
        return [dict(index) for index in self._collection(ns).list_indexes()]

    def collection_exists(self, ns: str) -> bool:
        """集合是否存在"""
        nss = NamespaceString(ns)
        return nss.coll() in self.client[nss.db()].list_collection_names(
            filter={"name": nss.coll()}
        )

    def close(self):
        """关闭连接"""
        self.client.close()

    def __repr__(self) -> str:
        return f"MongoConnection({self.server!r})"


def build_client_kwargs(auth_db: str, user: str, passwd: str, use_mcr: bool) -> Dict[str, Any]:
    """构造MongoClient参数"""
    kwargs: Dict[str, Any] = {
        # oplog只存在于具体节点上，直接连接该节点
        "directConnection": True,
        "appname": "mongosync",
    }
    if user:
        kwargs["username"] = user
        kwargs["password"] = passwd
        kwargs["authSource"] = auth_db or "admin"
        if use_mcr:
            kwargs["authMechanism"] = LEGACY_AUTH_MECHANISM
    return kwargs


def connect_and_auth(srv_ip_port: str, auth_db: str = "admin", user: str = "",
                     passwd: str = "", use_mcr: bool = False,
                     timeout_ms: int = 10000) -> MongoConnection:
    """连接并认证，失败时抛出ConnectError"""
    kwargs = build_client_kwargs(auth_db, user, passwd, use_mcr)
    client = None
    try:
        client = pymongo.MongoClient(
            host=f"mongodb://{srv_ip_port}",
            serverSelectionTimeoutMS=timeout_ms,
            **kwargs,
        )
        # 立即验证连接和认证
        client.admin.command("ping")
    except PyMongoError as e:
        if client is not None:
            client.close()
        raise ConnectError(f"Failed to connect to {srv_ip_port}: {e}", server=srv_ip_port) from e

    logger.info("Connected to %s", srv_ip_port)
    return MongoConnection(client, srv_ip_port)
