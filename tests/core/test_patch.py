"""Tests for structural patch/merge."""

import pytest

from gitray.core.patch import (
    DELETE,
    META_KEY,
    PATCH_MARKER,
    deep_equal,
    diff,
    is_empty_patch,
    is_patch,
    merge,
)
from gitray.exceptions import PatchApplicationError


class TestDiff:
    """Tests for computing patches."""

    def test_nested_change(self):
        old = {"a": 1, "b": {"x": 1, "y": 2}}
        new = {"a": 1, "b": {"x": 1, "y": 3}}
        assert diff(old, new) == {"$$patch": True, "b": {"$$patch": True, "y": 3}}

    def test_no_change_is_empty(self):
        patch = diff({"a": [1, 2], "b": {"c": None}}, {"a": [1, 2], "b": {"c": None}})
        assert is_empty_patch(patch)

    def test_lists_replaced_wholesale(self):
        patch = diff({"tags": [1, 2, 3]}, {"tags": [1, 2, 4]})
        assert patch == {PATCH_MARKER: True, "tags": [1, 2, 4]}

    def test_type_strict_comparison(self):
        """1 and True are different values."""
        assert diff({"flag": 1}, {"flag": True}) == {PATCH_MARKER: True, "flag": True}
        assert diff({"n": 1}, {"n": 1.0}) == {PATCH_MARKER: True}

    def test_new_key(self):
        assert diff({}, {"a": {"b": 1}}) == {PATCH_MARKER: True, "a": {"b": 1}}

    def test_dict_replacing_scalar(self):
        assert diff({"a": 1}, {"a": {"b": 1}}) == {PATCH_MARKER: True, "a": {"b": 1}}

    def test_meta_attached(self):
        patch = diff({"a": 1}, {"a": 2}, meta={"author": "device-1"})
        assert patch[META_KEY] == {"author": "device-1"}
        assert merge({"a": 1}, patch) == {"a": 2}

    def test_removed_keys_ignored_by_default(self):
        assert is_empty_patch(diff({"a": 1, "b": 2}, {"a": 1}))

    def test_removed_keys_with_deletions(self):
        patch = diff({"a": 1, "b": 2}, {"a": 1}, deletions=True)
        assert patch == {PATCH_MARKER: True, "b": DELETE}
        assert merge({"a": 1, "b": 2}, patch) == {"a": 1}


class TestMerge:
    """Tests for applying patches."""

    def test_example(self):
        old = {"a": 1, "b": {"x": 1, "y": 2}}
        patch = {"$$patch": True, "b": {"$$patch": True, "y": 3}}
        assert merge(old, patch) == {"a": 1, "b": {"x": 1, "y": 3}}

    def test_does_not_mutate_target(self):
        target = {"a": {"b": 1}}
        merge(target, {PATCH_MARKER: True, "a": {PATCH_MARKER: True, "b": 2}})
        assert target == {"a": {"b": 1}}

    def test_round_trip(self):
        old = {"name": "Book", "settings": {"currency": "EUR", "week": 1}, "tags": []}
        new = {
            "name": "Book",
            "settings": {"currency": "USD", "week": 1, "tz": "UTC"},
            "tags": ["a"],
            "extra": None,
        }
        merged = merge(old, diff(old, new))
        for key, value in new.items():
            assert deep_equal(merged[key], value)

    def test_idempotent(self):
        old = {"a": 1, "b": {"x": 1}}
        patch = diff(old, {"a": 2, "b": {"x": 2, "y": 3}})
        once = merge(old, patch)
        assert merge(once, patch) == once

    def test_disjoint_fields_both_survive(self):
        """Two devices editing different fields of the same object."""
        base = {"settings": {"currency": "EUR", "week": 1}}
        from_a = diff(base, {"settings": {"currency": "USD", "week": 1}})
        from_b = diff(base, {"settings": {"currency": "EUR", "week": 0}})
        merged = merge(merge(base, from_a), from_b)
        assert merged == {"settings": {"currency": "USD", "week": 0}}

    def test_sub_patch_into_non_dict(self):
        patch = {PATCH_MARKER: True, "a": {PATCH_MARKER: True, "b": 1}}
        merged = merge({"a": 5}, patch)
        assert merged == {"a": {"b": 1}}

    def test_none_target(self):
        assert merge(None, {PATCH_MARKER: True, "a": 1}) == {"a": 1}

    @pytest.mark.parametrize(
        "patch",
        [
            {"a": 1},
            {PATCH_MARKER: 1, "a": 1},
            {PATCH_MARKER: "true", "a": 1},
            {PATCH_MARKER: True, "a": {PATCH_MARKER: False, "b": 1}},
            ["not", "a", "dict"],
        ],
    )
    def test_malformed_patch_rejected(self, patch):
        target = {"a": 0, "b": {"c": 1}}
        with pytest.raises(PatchApplicationError):
            merge(target, patch)
        assert target == {"a": 0, "b": {"c": 1}}


class TestHelpers:
    def test_is_patch(self):
        assert is_patch({PATCH_MARKER: True})
        assert not is_patch({PATCH_MARKER: 1})
        assert not is_patch({"a": 1})
        assert not is_patch(None)

    def test_deep_equal(self):
        assert deep_equal({"a": [1, {"b": 2}]}, {"a": [1, {"b": 2}]})
        assert not deep_equal({"a": [1]}, {"a": [True]})
        assert not deep_equal(0, False)
        assert deep_equal(1, 1.0)
        assert not deep_equal({"a": 1}, {"a": 1, "b": 2})
