"""
JSON Pointer resolution, JSON Patch application and diff.
"""

import pytest

from dkv.core.errors import MalformedInput, PatchApplyError, PointerNotFound
from dkv.core.pointer import (
    apply_patch,
    apply_pointer,
    diff,
    escape_token,
    json_equal,
    parse_pointer,
    resolve_pointer,
    unescape_token,
)


DOC = {
    "foo": ["bar", "baz"],
    "": 0,
    "a/b": 1,
    "m~n": 8,
    "nested": {"x": {"y": [1, 2, {"z": True}]}},
}


class TestPointer:
    """RFC 6901 resolution."""

    def test_empty_pointer_is_whole_document(self):
        assert apply_pointer(DOC, "") is DOC

    def test_rfc_examples(self):
        assert apply_pointer(DOC, "/foo") == ["bar", "baz"]
        assert apply_pointer(DOC, "/foo/0") == "bar"
        assert apply_pointer(DOC, "/") == 0
        assert apply_pointer(DOC, "/a~1b") == 1
        assert apply_pointer(DOC, "/m~0n") == 8

    def test_nested_array_member(self):
        assert apply_pointer(DOC, "/nested/x/y/2/z") is True

    def test_raw_returns_resolution_record(self):
        record = apply_pointer(DOC, "/foo/1", raw=True)
        assert record == {"target": "baz", "parent": ["bar", "baz"], "key": 1}

    def test_root_resolution_has_no_parent(self):
        resolution = resolve_pointer(DOC, "")
        assert resolution.parent is None
        assert resolution.key is None

    def test_missing_member(self):
        with pytest.raises(PointerNotFound):
            apply_pointer(DOC, "/missing")

    def test_index_out_of_bounds(self):
        with pytest.raises(PointerNotFound):
            apply_pointer(DOC, "/foo/2")

    def test_leading_zero_index_rejected(self):
        with pytest.raises(PointerNotFound):
            apply_pointer(DOC, "/foo/01")

    def test_end_of_array_not_readable(self):
        with pytest.raises(PointerNotFound):
            apply_pointer(DOC, "/foo/-")

    def test_cannot_descend_into_scalar(self):
        with pytest.raises(PointerNotFound):
            apply_pointer(DOC, "/a~1b/c")

    def test_pointer_must_start_with_slash(self):
        with pytest.raises(MalformedInput):
            parse_pointer("foo")

    def test_invalid_escape(self):
        with pytest.raises(MalformedInput):
            unescape_token("a~2b")

    def test_escape_unescape(self):
        assert escape_token("a/b~c") == "a~1b~0c"
        assert unescape_token("a~1b~0c") == "a/b~c"
        # ~01 decodes to ~1, not /
        assert unescape_token("~01") == "~1"


class TestPatchApply:
    """RFC 6902 operations."""

    def test_add_member_and_append(self):
        doc = {"list": [1, 2]}
        result = apply_patch(doc, [
            {"op": "add", "path": "/name", "value": "x"},
            {"op": "add", "path": "/list/-", "value": 3},
            {"op": "add", "path": "/list/0", "value": 0},
        ])
        assert result == {"name": "x", "list": [0, 1, 2, 3]}

    def test_input_document_untouched(self):
        doc = {"a": {"b": 1}}
        apply_patch(doc, [{"op": "replace", "path": "/a/b", "value": 2}])
        assert doc == {"a": {"b": 1}}

    def test_remove_and_replace(self):
        result = apply_patch({"a": 1, "b": [1, 2, 3]}, [
            {"op": "remove", "path": "/a"},
            {"op": "replace", "path": "/b/1", "value": "two"},
        ])
        assert result == {"b": [1, "two", 3]}

    def test_replace_root(self):
        assert apply_patch({"a": 1}, [{"op": "replace", "path": "", "value": [1]}]) == [1]

    def test_move_and_copy(self):
        result = apply_patch({"a": {"x": 1}, "b": {}}, [
            {"op": "copy", "from": "/a/x", "path": "/b/copied"},
            {"op": "move", "from": "/a", "path": "/c"},
        ])
        assert result == {"b": {"copied": 1}, "c": {"x": 1}}

    def test_move_into_own_child_fails(self):
        with pytest.raises(PatchApplyError) as exc_info:
            apply_patch({"a": {"b": {}}}, [{"op": "move", "from": "/a", "path": "/a/b/c"}])
        assert exc_info.value.index == 0

    def test_remove_root_fails(self):
        with pytest.raises(PatchApplyError):
            apply_patch({"a": 1}, [{"op": "remove", "path": ""}])

    def test_test_op_number_equality(self):
        assert apply_patch({"n": 1}, [{"op": "test", "path": "/n", "value": 1.0}]) == {"n": 1}

    def test_test_op_bool_is_not_number(self):
        with pytest.raises(PatchApplyError):
            apply_patch({"n": 1}, [{"op": "test", "path": "/n", "value": True}])

    def test_test_only_patch_never_changes_document(self):
        doc = {"a": [1, {"b": None}], "c": "x"}
        ops = [
            {"op": "test", "path": "/a/1/b", "value": None},
            {"op": "test", "path": "/c", "value": "x"},
            {"op": "test", "path": "", "value": {"c": "x", "a": [1, {"b": None}]}},
        ]
        assert apply_patch(doc, ops) == doc

    def test_all_or_nothing(self):
        doc = {"a": 1}
        with pytest.raises(PatchApplyError) as exc_info:
            apply_patch(doc, [
                {"op": "replace", "path": "/a", "value": 2},
                {"op": "test", "path": "/a", "value": 3},
            ])
        assert exc_info.value.index == 1
        assert doc == {"a": 1}

    def test_failing_index_reported(self):
        with pytest.raises(PatchApplyError) as exc_info:
            apply_patch({"a": 1}, [
                {"op": "add", "path": "/b", "value": 1},
                {"op": "add", "path": "/c", "value": 1},
                {"op": "remove", "path": "/missing"},
            ])
        assert exc_info.value.index == 2

    @pytest.mark.parametrize("ops", [
        {"op": "add", "path": "/a", "value": 1},
        [{"op": "frobnicate", "path": "/a"}],
        [{"op": "add", "value": 1}],
        [{"op": "add", "path": "/a"}],
        [{"op": "move", "path": "/a"}],
        [{"op": "add", "path": "a", "value": 1}],
        ["not an object"],
    ])
    def test_malformed_patch_documents(self, ops):
        with pytest.raises(MalformedInput):
            apply_patch({}, ops)


class TestDiff:
    """Diffs must reproduce the new document when applied to the old one."""

    @pytest.mark.parametrize("old, new", [
        ({}, {"a": 1}),
        ({"a": 1, "b": 2}, {"b": 3, "c": [1]}),
        ({"list": [1, 2, 3, 4]}, {"list": [1, 5]}),
        ({"list": [1]}, {"list": [1, 2, {"x": None}]}),
        ({"a": {"b": {"c": 1}}}, {"a": {"b": {"c": 1, "d/e": "~"}}}),
        ({"a": 1}, [1, 2]),
        ("text", 42),
        ({"a": 1}, {}),
    ])
    def test_round_trip(self, old, new):
        assert json_equal(apply_patch(old, diff(old, new)), new)

    def test_equal_documents_produce_empty_diff(self):
        assert diff({"a": [1, 2.0]}, {"a": [1, 2]}) == []

    def test_none_means_no_previous_snapshot(self):
        assert diff(None, {"a": 1}) == [{"op": "add", "path": "/a", "value": 1}]

    def test_trailing_array_removals_from_the_end(self):
        ops = diff([1, 2, 3], [1])
        assert ops == [
            {"op": "remove", "path": "/2"},
            {"op": "remove", "path": "/1"},
        ]

    def test_scalar_root_becomes_replace(self):
        assert diff(1, 2) == [{"op": "replace", "path": "", "value": 2}]
