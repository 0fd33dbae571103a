"""Unit tests for op parsing and resolution."""

from concurrent.futures import ThreadPoolExecutor
from unittest.mock import Mock

import pytest
from bson import Timestamp

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../../'))

from oplog_listener.errors import DocFetchError
from oplog_listener.processing.field_filter import FieldFilter, build_filter_tree
from oplog_listener.processing.models import Op, OpKind
from oplog_listener.processing.op_resolver import OpResolver, is_partial_update

NS = "shop.products"


def make_op(code, o, o2=None, ts=Timestamp(100, 1)):
    entry = {"op": code, "ns": NS, "o": o, "ts": ts}
    if o2 is not None:
        entry["o2"] = o2
    return Op.from_entry(entry)


@pytest.fixture
def field_filter():
    return FieldFilter(build_filter_tree({"profile": {"name": True}}))


class TestOp:
    """Test Op parsing."""

    def test_insert(self):
        op = make_op("i", {"_id": 1, "a": 1})
        assert op.kind == OpKind.INSERT
        assert op.id == 1
        assert op.namespace == NS
        assert op.position == Timestamp(100, 1)
        assert op.is_upsert_kind

    def test_update_takes_id_from_o2(self):
        op = make_op("u", {"$set": {"a": 1}}, o2={"_id": 9})
        assert op.kind == OpKind.UPDATE
        assert op.id == 9
        assert op.target == {"_id": 9}

    @pytest.mark.parametrize("code,kind", [("d", OpKind.DELETE), ("n", OpKind.OTHER), ("c", OpKind.OTHER)])
    def test_other_kinds(self, code, kind):
        op = make_op(code, {"_id": 1})
        assert op.kind == kind
        assert not op.is_upsert_kind


class TestIsPartialUpdate:
    """Test is_partial_update."""

    def test_operator_update(self):
        assert is_partial_update(make_op("u", {"$set": {"a": 1}}, o2={"_id": 1}))

    def test_replacement_update(self):
        assert not is_partial_update(make_op("u", {"_id": 1, "a": 1}, o2={"_id": 1}))

    def test_insert(self):
        assert not is_partial_update(make_op("i", {"_id": 1}))


class TestOpResolver:
    """Test OpResolver."""

    def test_insert_resolves_to_payload(self, field_filter):
        op = make_op("i", {"_id": 1, "profile": {"name": "A"}})
        assert OpResolver(field_filter).resolve(op).result() == {"_id": 1, "profile": {"name": "A"}}

    def test_replacement_update_resolves_to_payload(self, field_filter):
        getter = Mock()
        op = make_op("u", {"_id": 1, "profile": {"name": "B"}}, o2={"_id": 1})
        assert OpResolver(field_filter, getter).resolve(op).result() == {"_id": 1, "profile": {"name": "B"}}
        getter.assert_not_called()

    @pytest.mark.parametrize("code", ["d", "n", "c"])
    def test_non_upsert_ops_resolve_to_none(self, field_filter, code):
        getter = Mock()
        assert OpResolver(field_filter, getter).resolve(make_op(code, {"_id": 1})).result() is None
        getter.assert_not_called()

    def test_relevant_partial_update_fetches_full_doc(self, field_filter):
        current = {"_id": 5, "profile": {"name": "New", "email": "e"}}
        getter = Mock(return_value=current)
        op = make_op("u", {"$set": {"profile.name": "New"}}, o2={"_id": 5})

        assert OpResolver(field_filter, getter).resolve(op).result() == current
        getter.assert_called_once_with(5)

    def test_irrelevant_partial_update_is_skipped_without_fetch(self, field_filter):
        getter = Mock()
        op = make_op("u", {"$set": {"internal.counter": 5}}, o2={"_id": 5})

        assert OpResolver(field_filter, getter).resolve(op).result() is None
        getter.assert_not_called()

    def test_fetch_runs_on_executor(self, field_filter):
        getter = Mock(return_value={"_id": 5, "profile": {"name": "x"}})
        op = make_op("u", {"$unset": {"profile.name": ""}}, o2={"_id": 5})
        with ThreadPoolExecutor(max_workers=1) as executor:
            future = OpResolver(field_filter, getter, executor).resolve(op)
            assert future.result(timeout=5) == {"_id": 5, "profile": {"name": "x"}}

    def test_fetch_error_is_wrapped(self, field_filter):
        getter = Mock(side_effect=RuntimeError("connection reset"))
        op = make_op("u", {"$set": {"profile.name": "x"}}, o2={"_id": 5})

        future = OpResolver(field_filter, getter).resolve(op)
        assert isinstance(future.exception(), DocFetchError)

    def test_missing_doc_getter(self, field_filter):
        op = make_op("u", {"$set": {"profile.name": "x"}}, o2={"_id": 5})
        assert isinstance(OpResolver(field_filter).resolve(op).exception(), DocFetchError)


class TestFilterOp:
    """Test OpResolver.filter_op."""

    def test_allow_all_filter(self):
        op = make_op("u", {"$set": {"anything": 1}}, o2={"_id": 1})
        assert OpResolver(FieldFilter()).filter_op(op)

    def test_version_marker_is_ignored(self, field_filter):
        op = make_op("u", {"$v": 1, "$set": {"internal": 1}}, o2={"_id": 1})
        assert not OpResolver(field_filter).filter_op(op)

    def test_unset(self, field_filter):
        op = make_op("u", {"$unset": {"profile.name": True}}, o2={"_id": 1})
        assert OpResolver(field_filter).filter_op(op)

    def test_unknown_operator_needs_update(self, field_filter):
        op = make_op("u", {"$inc": {"internal.counter": 1}}, o2={"_id": 1})
        assert OpResolver(field_filter).filter_op(op)

    def test_any_relevant_field_is_enough(self, field_filter):
        op = make_op("u", {"$set": {"internal": 1, "profile.name": "x"}}, o2={"_id": 1})
        assert OpResolver(field_filter).filter_op(op)
