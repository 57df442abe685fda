"""Tests for task options and their validation."""

import pytest
from pydantic import ValidationError

from mongosync.data_models.base import ConfigurationError
from mongosync.data_models.oplog import OplogTime
from mongosync.data_models.options import DEFAULT_DST_OPLOG_NS, Options, validate_options


def make_options(**kwargs) -> Options:
    values = {"src_srv": "src:27017", "dst_srv": "dst:27017"}
    values.update(kwargs)
    return Options(**values)


class TestOptions:
    """Tests for Options defaults and derived names."""

    def test_defaults(self):
        opt = Options()
        assert opt.src_auth_db == "admin"
        assert opt.dst_oplog_ns == DEFAULT_DST_OPLOG_NS
        assert opt.oplog_start.empty()
        assert opt.filter == {}

    def test_target_names_default_to_source(self):
        opt = make_options(db="foo", coll="bar")
        assert opt.target_db == "foo"
        assert opt.target_coll == "bar"
        assert opt.dst_ns.ns() == "foo.bar"

    def test_renamed_targets(self):
        opt = make_options(db="foo", dst_db="foo2", coll="bar", dst_coll="baz")
        assert opt.src_ns.ns() == "foo.bar"
        assert opt.dst_ns.ns() == "foo2.baz"

    def test_bounds_parsed_from_strings(self):
        opt = make_options(oplog=True, oplog_start="10,1", oplog_end="20:0")
        assert opt.oplog_start == OplogTime(10, 1)
        assert opt.oplog_end == OplogTime(20, 0)
        assert opt.has_bounds

    def test_bad_bound_is_rejected(self):
        with pytest.raises(ValidationError):
            make_options(oplog=True, oplog_start="soon")

    def test_frozen(self):
        opt = make_options(db="foo")
        with pytest.raises(ValidationError):
            opt.db = "bar"


class TestValidateOptions:
    """Tests for the option combinations that are rejected."""

    @pytest.mark.parametrize("kwargs", [
        {"src_srv": "", "db": "foo"},
        {"dst_srv": "", "db": "foo"},
        {"coll": "bar"},
        {"db": "foo", "dst_coll": "baz"},
        {"dst_db": "foo2", "oplog": True},
        {"db": "foo", "oplog": True, "oplog_start": "20,0", "oplog_end": "10,0"},
        {"db": "foo", "oplog_start": "10,0"},
        {},
        {"raw_oplog": True, "dst_oplog_ns": "nocollection"},
        {"db": "foo", "coll": "bar", "oplog": True, "filter": {"$expr": {"$gt": ["$a", 1]}}},
        {"db": "foo", "raw_oplog": True, "filter": {"$or": [{"$where": "this.a > 1"}]}},
    ])
    def test_rejected(self, kwargs):
        with pytest.raises(ConfigurationError):
            validate_options(make_options(**kwargs))

    @pytest.mark.parametrize("kwargs", [
        {"db": "foo"},
        {"db": "foo", "coll": "bar", "dst_coll": "baz"},
        {"oplog": True},
        {"raw_oplog": True},
        {"raw_oplog": True, "oplog_start": "10,0", "oplog_end": "10,0"},
        {"db": "foo", "oplog": True, "oplog_start": "10,0"},
        {"db": "foo", "oplog": True, "filter": {"kind": "a", "$or": [{"n": {"$gt": 1}}, {"n": 0}]}},
        {"db": "foo", "filter": {"$expr": {"$gt": ["$a", 1]}}},
    ])
    def test_accepted(self, kwargs):
        opt = make_options(**kwargs)
        assert validate_options(opt) is opt

    def test_error_code(self):
        with pytest.raises(ConfigurationError) as exc_info:
            validate_options(make_options())
        assert exc_info.value.error_code == "CONFIGURATION"
