"""Path-level diffing between two store snapshots.

Collections, chunks and assets are flattened into one path namespace before
comparison, so a diff is a single pass over each snapshot.
"""

from .structure import StoreStructure


def build_path_map(structure: StoreStructure | None) -> dict[str, str | None]:
    """Map every path in ``structure`` to its hash, in flattening order."""
    path_map: dict[str, str | None] = {}
    if structure is None:
        return path_map
    for ref in structure.refs():
        if not ref.path:
            continue
        path_map[ref.path] = ref.hash or None
    return path_map


def diff(
    a: StoreStructure | None, b: StoreStructure | None
) -> tuple[list[str], list[str]]:
    """Compute the paths that changed going from ``a`` to ``b``.

    Args:
        a: Base snapshot (e.g. last synced); None means empty
        b: Target snapshot (e.g. current remote); None means empty

    Returns:
        Tuple of (changed_paths, deleted_paths). A path is changed when it is
        in ``b`` and either absent from ``a`` or present with a different
        hash; a missing hash on either side always counts as changed. A path
        is deleted when it is in ``a`` but not in ``b``.
    """
    a_map = build_path_map(a)
    b_map = build_path_map(b)

    changed = [
        path
        for path, b_hash in b_map.items()
        if b_hash is None or a_map.get(path) != b_hash
    ]
    deleted = [path for path in a_map if path not in b_map]
    return changed, deleted
