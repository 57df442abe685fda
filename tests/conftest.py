"""Shared fixtures and an in-memory stand-in for MongoConnection."""

import re
import threading
from typing import Any, Callable, Dict, List, Optional

import pytest
from bson.timestamp import Timestamp
from pymongo.errors import AutoReconnect

from mongosync.config.settings import Settings, SyncSettings, MonitoringSettings


OPLOG_NS = "local.oplog.rs"


def oplog_entry(sec: int, no: int, op: str, ns: str, o: Dict[str, Any],
                o2: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Build a raw oplog document."""
    entry = {"ts": Timestamp(sec, no), "op": op, "ns": ns, "o": o}
    if o2 is not None:
        entry["o2"] = o2
    return entry


def _ts_bound(query: Dict[str, Any]):
    """Find the ts clause added by the reader's position query."""
    if "ts" in query:
        return query["ts"]
    for clause in query.get("$and", []):
        if "ts" in clause:
            return clause["ts"]
    return None


def _value_matches(value: Any, condition: Any) -> bool:
    if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
        for op, arg in condition.items():
            if op == "$regex" and not (isinstance(value, str) and re.search(arg, value)):
                return False
            if op == "$ne" and value == arg:
                return False
        return True
    return value == condition


def matches(document: Dict[str, Any], query: Optional[Dict[str, Any]]) -> bool:
    """Tiny subset of the query language: $and, plus equality, $regex and $ne on top-level fields."""
    for key, condition in (query or {}).items():
        if key == "$and":
            if not all(matches(document, clause) for clause in condition):
                return False
            continue
        if key.startswith("$"):
            continue
        if not _value_matches(document.get(key), condition):
            return False
    return True


class FakeCursor:
    """Iterates canned documents; calls on_exhausted once it runs dry."""

    def __init__(self, documents: List[Dict[str, Any]], alive: bool = False,
                 on_exhausted: Optional[Callable[[], None]] = None):
        self.documents = list(documents)
        self.alive = alive
        self.on_exhausted = on_exhausted
        self.closed = False

    def __iter__(self):
        while self.documents:
            yield self.documents.pop(0)
        if self.on_exhausted:
            self.on_exhausted()

    def close(self):
        self.closed = True


class FakeConnection:
    """Records writes and commands, serves finds and tails from memory."""

    def __init__(self, version: str = "3.0.15", server: str = "fake:27017"):
        self.version = version
        self.server = server
        self.collections: Dict[str, List[Dict[str, Any]]] = {}
        self.indexes: Dict[str, List[Dict[str, Any]]] = {}

        self.writes: List[tuple] = []
        self.commands: List[tuple] = []
        self.inserts: List[tuple] = []
        self.tail_queries: List[Dict[str, Any]] = []
        self.cursors: List[FakeCursor] = []

        # failure injection
        self.fail_writes = 0
        self.write_error: Exception = AutoReconnect("connection reset")
        self.command_errors: Dict[str, Exception] = {}
        self.write_delay: Optional[threading.Event] = None

        self.on_tail_exhausted: Optional[Callable[[], None]] = None
        self.close_count = 0
        self.lock = threading.Lock()

    # data setup

    @property
    def oplog(self) -> List[Dict[str, Any]]:
        return self.collections.setdefault(OPLOG_NS, [])

    def add_documents(self, ns: str, documents: List[Dict[str, Any]]):
        self.collections.setdefault(ns, []).extend(documents)

    # MongoConnection interface

    def server_version(self) -> str:
        return self.version

    def find(self, ns, query=None, sort=None, limit=0, projection=None, no_cursor_timeout=False):
        documents = [d for d in self.collections.get(ns, []) if matches(d, query)]
        if limit:
            documents = documents[:limit]
        cursor = FakeCursor(documents)
        self.cursors.append(cursor)
        return cursor

    def find_one(self, ns, query=None, sort=None):
        documents = [d for d in self.collections.get(ns, []) if matches(d, query)]
        if sort and sort[0][1] < 0:
            documents = list(reversed(documents))
        return documents[0] if documents else None

    def tail(self, ns, query, max_await_ms=1000):
        self.tail_queries.append(query)
        bound = _ts_bound(query)
        documents = []
        for document in self.collections.get(ns, []):
            if bound is not None:
                if "$gt" in bound and not document["ts"] > bound["$gt"]:
                    continue
                if "$gte" in bound and not document["ts"] >= bound["$gte"]:
                    continue
                if "$lte" in bound and not document["ts"] <= bound["$lte"]:
                    continue
            if not matches(document, query):
                continue
            documents.append(document)
        cursor = FakeCursor(documents, on_exhausted=self.on_tail_exhausted)
        self.cursors.append(cursor)
        return cursor

    def bulk_write(self, ns, requests, ordered=True):
        if self.write_delay is not None:
            self.write_delay.wait(5)
        with self.lock:
            if self.fail_writes:
                self.fail_writes -= 1
                raise self.write_error
            self.writes.append((ns, list(requests)))

    def insert_one(self, ns, document):
        with self.lock:
            self.inserts.append((ns, dict(document)))

    def run_command(self, db, command):
        name = next(iter(command))
        with self.lock:
            self.commands.append((db, dict(command)))
        if name in self.command_errors:
            raise self.command_errors[name]
        return {"ok": 1}

    def list_collection_names(self, db, filter=None):
        prefix = f"{db}."
        names = [ns[len(prefix):] for ns in self.collections if ns.startswith(prefix)]
        if filter and "name" in filter:
            names = [name for name in names if name == filter["name"]]
        return names

    def list_indexes(self, ns):
        return [dict(index) for index in self.indexes.get(ns, [])]

    def collection_exists(self, ns):
        return ns in self.collections

    def close(self):
        with self.lock:
            self.close_count += 1

    # helpers

    def written(self, ns: Optional[str] = None) -> List[Any]:
        """All write models in the order they were written."""
        return [request for wns, requests in self.writes if ns is None or wns == ns
                for request in requests]


class FakeConnector:
    """Stands in for connect_and_auth, returning a fake per server."""

    def __init__(self, connections: Dict[str, FakeConnection]):
        self.connections = connections
        self.calls: List[tuple] = []

    def __call__(self, srv, auth_db="admin", user="", passwd="", use_mcr=False, timeout_ms=10000):
        self.calls.append((srv, auth_db, user, use_mcr))
        return self.connections[srv]


@pytest.fixture
def src_conn() -> FakeConnection:
    return FakeConnection(version="3.0.15", server="src:27017")


@pytest.fixture
def dst_conn() -> FakeConnection:
    return FakeConnection(version="3.0.15", server="dst:27017")


@pytest.fixture
def fast_settings() -> Settings:
    """Settings with short intervals and no background process metrics."""
    return Settings(
        sync=SyncSettings(
            writer_threads=2,
            write_queue_size=2,
            write_max_retries=2,
            write_retry_interval=0.01,
            tail_await_ms=10,
            tail_reopen_interval=0.01,
            tail_flush_interval=60.0,
        ),
        monitoring=MonitoringSettings(collect_process_metrics=False),
    )
