"""Tests for the oplog query builder, namespace matcher and tailing reader."""

import re
import threading

import pytest
from bson.timestamp import Timestamp

from mongosync.data_models.base import ConfigurationError
from mongosync.data_models.oplog import OplogEntry, OplogTime
from mongosync.replication.oplog_reader import (
    NamespaceMatcher,
    OplogReader,
    build_oplog_query,
    position_query,
    prefix_filter,
)

from .conftest import OPLOG_NS, FakeConnection, oplog_entry


class TestQueryBuilder:
    """Tests for the server-side oplog query."""

    def test_whole_instance_excludes_local_and_config(self):
        query = build_oplog_query("", "")
        pattern = query["ns"]["$not"]
        assert isinstance(pattern, re.Pattern)
        assert pattern.match("local.oplog.rs")
        assert pattern.match("config.system.sessions")
        assert not pattern.match("foo.bar")

    def test_database_scope(self):
        query = build_oplog_query("foo", "")
        clauses = query["$or"]
        assert {"ns": {"$regex": r"^foo\."}} in clauses
        assert {"ns": "admin.$cmd", "o.applyOps": {"$exists": True}} in clauses

    def test_collection_scope(self):
        clauses = build_oplog_query("foo", "bar")["$or"]
        assert {"ns": "foo.bar"} in clauses
        assert {"ns": "foo.$cmd"} in clauses
        assert {"ns": "foo.system.indexes", "o.ns": "foo.bar"} in clauses
        assert {"ns": "admin.$cmd", "o.renameCollection": "foo.bar"} in clauses

    def test_filter_applies_to_inserts_only(self):
        query = build_oplog_query("foo", "bar", {"kind": "a"})
        scope, doc_filter = query["$and"]
        assert "$or" in scope
        assert doc_filter == {"$or": [{"op": {"$ne": "i"}}, {"o.kind": "a"}]}

    def test_prefix_filter_recurses_into_logical_operators(self):
        rewritten = prefix_filter({"a": 1, "$or": [{"b": {"$gt": 2}}, {"$and": [{"c": 3}]}]})
        assert rewritten == {"o.a": 1, "$or": [{"o.b": {"$gt": 2}}, {"$and": [{"o.c": 3}]}]}

    def test_prefix_filter_rejects_other_operators(self):
        with pytest.raises(ConfigurationError):
            prefix_filter({"$where": "this.a > 1"})

    def test_position_query(self):
        begin = OplogTime(10, 2)
        assert position_query({}, begin, inclusive=True) == {"ts": {"$gte": Timestamp(10, 2)}}
        assert position_query({"ns": "foo.bar"}, begin, inclusive=False) == {
            "$and": [{"ts": {"$gt": Timestamp(10, 2)}}, {"ns": "foo.bar"}]
        }
        assert position_query({"ns": "foo.bar"}, OplogTime(), inclusive=False) == {"ns": "foo.bar"}

    def test_position_query_with_end(self):
        assert position_query({}, OplogTime(10, 2), inclusive=False, end=OplogTime(12, 0)) == {
            "ts": {"$gt": Timestamp(10, 2), "$lte": Timestamp(12, 0)}
        }
        assert position_query({"ns": "foo.bar"}, OplogTime(), inclusive=False, end=OplogTime(12, 0)) == {
            "$and": [{"ts": {"$lte": Timestamp(12, 0)}}, {"ns": "foo.bar"}]
        }


class TestNamespaceMatcher:
    """Tests for client-side scope matching."""

    def entry(self, op, ns, o):
        return OplogEntry({"ts": Timestamp(1, 1), "op": op, "ns": ns, "o": o})

    def test_collection_scope(self):
        matcher = NamespaceMatcher("foo", "bar")
        assert matcher.matches(self.entry("i", "foo.bar", {"_id": 1}))
        assert not matcher.matches(self.entry("i", "foo.baz", {"_id": 1}))
        assert not matcher.matches(self.entry("i", "other.bar", {"_id": 1}))

    def test_index_insert_targets_its_ns(self):
        matcher = NamespaceMatcher("foo", "bar")
        assert matcher.matches(self.entry("i", "foo.system.indexes", {"ns": "foo.bar", "name": "a_1"}))
        assert not matcher.matches(self.entry("i", "foo.system.indexes", {"ns": "foo.baz", "name": "a_1"}))

    def test_other_system_collections(self):
        assert not NamespaceMatcher("foo", "").matches(self.entry("i", "foo.system.js", {"_id": 1}))

    def test_commands(self):
        matcher = NamespaceMatcher("foo", "")
        assert matcher.matches(self.entry("c", "foo.$cmd", {"drop": "bar"}))
        assert not matcher.matches(self.entry("c", "other.$cmd", {"drop": "bar"}))
        assert matcher.matches(self.entry("c", "admin.$cmd", {"renameCollection": "foo.a", "to": "foo.b"}))
        assert matcher.matches(self.entry("c", "admin.$cmd", {"applyOps": []}))

    def test_whole_instance_skips_internal_databases(self):
        matcher = NamespaceMatcher("", "")
        assert matcher.matches(self.entry("i", "foo.bar", {"_id": 1}))
        assert not matcher.matches(self.entry("i", "config.sessions", {"_id": 1}))
        assert not matcher.matches(self.entry("c", "admin.$cmd", {"create": "x"}))


@pytest.fixture
def conn() -> FakeConnection:
    conn = FakeConnection()
    conn.add_documents(OPLOG_NS, [
        oplog_entry(10, 1, "i", "foo.bar", {"_id": 1}),
        oplog_entry(10, 2, "i", "foo.bar", {"_id": 2}),
        oplog_entry(11, 1, "i", "foo.bar", {"_id": 3}),
        oplog_entry(13, 1, "i", "foo.bar", {"_id": 4}),
    ])
    return conn


def positions(entries):
    return [entry.position for entry in entries]


class TestOplogReader:
    """Tests for OplogReader.entries."""

    def test_inclusive_start_and_end(self, conn):
        reader = OplogReader(conn, OPLOG_NS, {}, begin=OplogTime(10, 2), inclusive=True,
                             end=OplogTime(11, 1))
        assert positions(reader.entries()) == [OplogTime(10, 2), OplogTime(11, 1)]
        assert reader.reached_end
        assert reader.last_read == OplogTime(11, 1)

    def test_exclusive_start(self, conn):
        reader = OplogReader(conn, OPLOG_NS, {}, begin=OplogTime(10, 2), inclusive=False,
                             end=OplogTime(11, 1))
        assert positions(reader.entries()) == [OplogTime(11, 1)]

    def test_end_between_entries(self, conn):
        reader = OplogReader(conn, OPLOG_NS, {}, end=OplogTime(12, 0))
        assert positions(reader.entries()) == [OplogTime(10, 1), OplogTime(10, 2), OplogTime(11, 1)]
        assert conn.cursors[-1].closed

    def test_runs_until_stopped(self, conn):
        stop_event = threading.Event()
        reader = OplogReader(conn, OPLOG_NS, {}, stop_event=stop_event, on_idle=stop_event.set)
        assert len(list(reader.entries())) == 4
        assert reader.last_read == OplogTime(13, 1)
        assert not reader.reached_end

    def test_stop_between_entries(self, conn):
        stop_event = threading.Event()
        reader = OplogReader(conn, OPLOG_NS, {}, stop_event=stop_event)
        seen = []
        for entry in reader.entries():
            seen.append(entry.position)
            stop_event.set()
        assert seen == [OplogTime(10, 1)]

    def test_reopens_dead_cursor_after_last_read(self, conn):
        stop_event = threading.Event()
        idle_calls = []

        def on_idle():
            idle_calls.append(1)
            if len(idle_calls) == 1:
                conn.oplog.append(oplog_entry(14, 1, "d", "foo.bar", {"_id": 1}))
            else:
                stop_event.set()

        reader = OplogReader(conn, OPLOG_NS, {"ns": "foo.bar"}, stop_event=stop_event,
                             reopen_interval=0.01, on_idle=on_idle)
        assert positions(reader.entries())[-1] == OplogTime(14, 1)
        assert len(conn.tail_queries) == 2
        assert conn.tail_queries[1] == {
            "$and": [{"ts": {"$gt": Timestamp(13, 1)}}, {"ns": "foo.bar"}]
        }
        assert all(cursor.closed for cursor in conn.cursors)

    def test_end_reached_by_entries_outside_the_scope(self):
        conn = FakeConnection()
        conn.add_documents(OPLOG_NS, [
            oplog_entry(100, 1, "i", "foo.bar", {"_id": 1}),
            oplog_entry(101, 1, "i", "foo.other", {"_id": 2}),
            oplog_entry(102, 1, "i", "foo.other", {"_id": 3}),
        ])
        reader = OplogReader(conn, OPLOG_NS, {"ns": "foo.bar"}, end=OplogTime(100, 5),
                             reopen_interval=0.01)

        assert positions(reader.entries()) == [OplogTime(100, 1)]
        assert reader.reached_end
        assert all(cursor.closed for cursor in conn.cursors)

    def test_waits_until_source_passes_end(self):
        conn = FakeConnection()
        conn.add_documents(OPLOG_NS, [oplog_entry(100, 1, "i", "foo.bar", {"_id": 1})])
        idle_calls = []

        def on_idle():
            idle_calls.append(1)
            if len(idle_calls) == 2:
                conn.oplog.append(oplog_entry(106, 1, "i", "foo.other", {"_id": 2}))

        reader = OplogReader(conn, OPLOG_NS, {"ns": "foo.bar"}, end=OplogTime(105, 0),
                             reopen_interval=0.01, on_idle=on_idle)

        assert positions(reader.entries()) == [OplogTime(100, 1)]
        assert reader.reached_end
        assert len(idle_calls) == 3
