"""Object/path model of a remote store.

A store is laid out as::

    meta.json                          root metadata
    <collection>/meta.json             collection metadata
    <collection>/<entry>-<start>.json  chunk of collection items
    <collection>/assets/<name>         binary assets

``StoreStructure`` is the comparison representation (paths and hashes only),
``StoreDetail`` the working representation carrying decoded content and any
payload that still has to be uploaded.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator

logger = logging.getLogger(__name__)

ROOT_META_PATH = "meta.json"
META_FILE_NAME = "meta.json"
ASSETS_DIR = "assets"


@dataclass(frozen=True)
class ContentRef:
    """A stored blob identified by its path and content hash."""

    path: str
    hash: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "hash": self.hash}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ContentRef":
        return cls(path=data["path"], hash=data.get("hash"))


@dataclass
class Collection:
    """A named collection: metadata, ordered chunks and binary assets."""

    name: str
    meta: ContentRef
    chunks: list[ContentRef] = field(default_factory=list)
    assets: list[ContentRef] = field(default_factory=list)

    def refs(self) -> Iterator[ContentRef]:
        yield self.meta
        yield from self.chunks
        yield from self.assets

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "meta": self.meta.to_dict(),
            "chunks": [c.to_dict() for c in self.chunks],
            "assets": [a.to_dict() for a in self.assets],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Collection":
        return cls(
            name=data["name"],
            meta=ContentRef.from_dict(data["meta"]),
            chunks=[ContentRef.from_dict(c) for c in data.get("chunks", [])],
            assets=[ContentRef.from_dict(a) for a in data.get("assets", [])],
        )


@dataclass
class StoreStructure:
    """Snapshot of a whole remote tree."""

    meta: ContentRef = field(default_factory=lambda: ContentRef(ROOT_META_PATH))
    collections: list[Collection] = field(default_factory=list)

    def __post_init__(self):
        names = [c.name for c in self.collections]
        if len(names) != len(set(names)):
            raise ValueError(f"Duplicate collection names in structure: {names}")
        meta_paths = [c.meta.path for c in self.collections]
        if len(meta_paths) != len(set(meta_paths)):
            raise ValueError(f"Duplicate collection meta paths: {meta_paths}")

    def refs(self) -> Iterator[ContentRef]:
        """Iterate every ref in flattening order."""
        yield self.meta
        for collection in self.collections:
            yield from collection.refs()

    def get_collection(self, name: str) -> Collection | None:
        return next((c for c in self.collections if c.name == name), None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "meta": self.meta.to_dict(),
            "collections": [c.to_dict() for c in self.collections],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StoreStructure":
        return cls(
            meta=ContentRef.from_dict(data["meta"]),
            collections=[Collection.from_dict(c) for c in data.get("collections", [])],
        )


@dataclass
class DetailEntry:
    """A ContentRef paired with its materialized content.

    ``content`` holds decoded JSON for meta and chunk files. ``payload`` holds
    the raw bytes when the entry has not been persisted remotely yet.
    """

    path: str
    hash: str | None = None
    content: Any = None
    payload: bytes | None = None

    @property
    def ref(self) -> ContentRef:
        return ContentRef(self.path, self.hash)


@dataclass
class CollectionDetail:
    name: str
    meta: DetailEntry
    chunks: list[DetailEntry] = field(default_factory=list)
    assets: list[DetailEntry] = field(default_factory=list)

    def entries(self) -> Iterator[DetailEntry]:
        yield self.meta
        yield from self.chunks
        yield from self.assets


@dataclass
class StoreDetail:
    """Working representation of a store, with content attached."""

    meta: DetailEntry
    collections: list[CollectionDetail] = field(default_factory=list)

    def entries(self) -> Iterator[DetailEntry]:
        yield self.meta
        for collection in self.collections:
            yield from collection.entries()

    def files(self) -> dict[str, DetailEntry]:
        """Map every path to its entry."""
        return {entry.path: entry for entry in self.entries()}

    def structure(self) -> StoreStructure:
        """Project to the comparison representation."""
        return StoreStructure(
            meta=self.meta.ref,
            collections=[
                Collection(
                    name=c.name,
                    meta=c.meta.ref,
                    chunks=[e.ref for e in c.chunks],
                    assets=[e.ref for e in c.assets],
                )
                for c in self.collections
            ],
        )


def collection_meta_path(collection: str) -> str:
    return f"{collection}/{META_FILE_NAME}"


def chunk_path(collection: str, entry_name: str, start: int) -> str:
    return f"{collection}/{entry_name}-{start}.json"


def asset_dir(collection: str) -> str:
    return f"{collection}/{ASSETS_DIR}"


def tree_to_structure(
    entries: Iterable[tuple[str, str | None]], entry_name: str = "entry"
) -> StoreStructure:
    """Build a StoreStructure from a flat blob listing.

    Args:
        entries: ``(path, hash)`` pairs for every blob in the tree
        entry_name: Prefix of chunk files inside a collection directory

    Returns:
        StoreStructure with chunks sorted by their numeric start index and
        assets sorted by path. Files that don't fit the layout are ignored.
    """
    chunk_pattern = re.compile(rf"^{re.escape(entry_name)}-(\d+)\.json$")
    root_meta = ContentRef(ROOT_META_PATH)
    collections: dict[str, dict[str, Any]] = {}

    for path, sha in entries:
        if not path:
            continue
        parts = path.split("/")
        if len(parts) == 1:
            if path == ROOT_META_PATH:
                root_meta = ContentRef(path, sha)
            continue

        name = parts[0]
        data = collections.setdefault(
            name,
            {
                "meta": ContentRef(collection_meta_path(name)),
                "chunks": [],
                "assets": [],
            },
        )
        if len(parts) == 2 and parts[1] == META_FILE_NAME:
            data["meta"] = ContentRef(path, sha)
        elif len(parts) >= 3 and parts[1] == ASSETS_DIR:
            data["assets"].append(ContentRef(path, sha))
        elif len(parts) == 2 and (match := chunk_pattern.match(parts[1])):
            data["chunks"].append((int(match.group(1)), ContentRef(path, sha)))
        else:
            logger.debug(f"Ignoring file outside the store layout: {path}")

    return StoreStructure(
        meta=root_meta,
        collections=[
            Collection(
                name=name,
                meta=data["meta"],
                chunks=[ref for _, ref in sorted(data["chunks"], key=lambda c: c[0])],
                assets=sorted(data["assets"], key=lambda a: a.path),
            )
            for name, data in collections.items()
        ],
    )


def encode_json(content: Any) -> bytes:
    """Serialize JSON content the way it is stored remotely."""
    return json.dumps(content, indent=2, ensure_ascii=False).encode("utf-8")


def decode_json(payload: bytes) -> Any:
    return json.loads(payload.decode("utf-8"))
