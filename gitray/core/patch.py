"""Structural patch/merge for nested metadata objects.

A patch is a dict tagged with ``PATCH_MARKER``. For every key of the new
object whose value changed it holds either a nested patch (both sides are
plain dicts) or the new value verbatim; lists are always replaced wholesale.
Merging applies "set" operations only, so two devices that edited disjoint
fields of the same object while offline both keep their change.

Field removal is expressed with the ``DELETE`` sentinel, which ``diff`` only
emits when asked to track deletions.

Example:
    >>> old = {"a": 1, "b": {"x": 1, "y": 2}}
    >>> new = {"a": 1, "b": {"x": 1, "y": 3}}
    >>> diff(old, new)
    {'$$patch': True, 'b': {'$$patch': True, 'y': 3}}
"""

import copy
from typing import Any

from ..exceptions import PatchApplicationError

PATCH_MARKER = "$$patch"
META_KEY = "$$meta"
DELETE_MARKER = "$$delete"

# Sentinel patch value removing a key from the merge target.
DELETE: dict[str, bool] = {DELETE_MARKER: True}

_RESERVED_KEYS = (PATCH_MARKER, META_KEY)

Patch = dict[str, Any]


def deep_equal(a: Any, b: Any) -> bool:
    """Deep equality that does not conflate bool/int/float."""
    if type(a) is not type(b):
        if isinstance(a, (int, float)) and isinstance(b, (int, float)):
            if isinstance(a, bool) or isinstance(b, bool):
                return False
            return a == b
        return False
    if isinstance(a, dict):
        if a.keys() != b.keys():
            return False
        return all(deep_equal(a[k], b[k]) for k in a)
    if isinstance(a, (list, tuple)):
        if len(a) != len(b):
            return False
        return all(deep_equal(x, y) for x, y in zip(a, b))
    return a == b


def is_patch(value: Any) -> bool:
    return isinstance(value, dict) and value.get(PATCH_MARKER) is True


def is_delete(value: Any) -> bool:
    return (
        isinstance(value, dict)
        and len(value) == 1
        and value.get(DELETE_MARKER) is True
    )


def is_empty_patch(patch: Patch) -> bool:
    """True when the patch carries no changes."""
    return all(key in _RESERVED_KEYS for key in patch)


def diff(
    old: dict[str, Any] | None,
    new: dict[str, Any],
    meta: dict[str, Any] | None = None,
    deletions: bool = False,
) -> Patch:
    """Compute the patch turning ``old`` into ``new``.

    Args:
        old: Previous object (None is treated as empty)
        new: Updated object
        meta: Optional metadata stored under ``$$meta``; ignored by merge
        deletions: Emit ``DELETE`` for keys only present in ``old``

    Returns:
        A tagged patch. It is empty (only markers) when nothing changed.
    """
    old = old or {}
    patch: Patch = {PATCH_MARKER: True}
    if meta:
        patch[META_KEY] = copy.deepcopy(meta)

    for key, new_value in new.items():
        if key in old and deep_equal(old[key], new_value):
            continue
        old_value = old.get(key)
        if isinstance(new_value, dict) and isinstance(old_value, dict):
            nested = diff(old_value, new_value, deletions=deletions)
            if not is_empty_patch(nested):
                patch[key] = nested
        else:
            patch[key] = copy.deepcopy(new_value)

    if deletions:
        for key in old:
            if key not in new:
                patch[key] = dict(DELETE)

    return patch


def validate(patch: Any) -> None:
    """Check that ``patch`` and every nested patch are well formed.

    Raises:
        PatchApplicationError: If a marker is missing or not exactly True
    """
    if not isinstance(patch, dict):
        raise PatchApplicationError(
            f"Patch must be a dict, got {type(patch).__name__}"
        )
    if patch.get(PATCH_MARKER) is not True:
        raise PatchApplicationError(
            f"Patch marker {PATCH_MARKER!r} must be True, "
            f"got {patch.get(PATCH_MARKER)!r}"
        )
    for key, value in patch.items():
        if key in _RESERVED_KEYS or not isinstance(value, dict):
            continue
        if PATCH_MARKER in value:
            validate(value)
        elif DELETE_MARKER in value and not is_delete(value):
            raise PatchApplicationError(f"Malformed delete marker at {key!r}")


def merge(target: dict[str, Any] | None, patch: Patch) -> dict[str, Any]:
    """Apply ``patch`` to a copy of ``target``.

    The patch is validated first, so a malformed patch leaves nothing
    half-applied.

    Raises:
        PatchApplicationError: If the patch is malformed
    """
    validate(patch)
    return _merge(copy.deepcopy(target) if target else {}, patch)


def _merge(result: dict[str, Any], patch: Patch) -> dict[str, Any]:
    for key, value in patch.items():
        if key in _RESERVED_KEYS:
            continue
        if is_patch(value):
            current = result.get(key)
            result[key] = _merge(current if isinstance(current, dict) else {}, value)
        elif is_delete(value):
            result.pop(key, None)
        else:
            result[key] = copy.deepcopy(value)
    return result
