"""Binary asset extraction.

Items may carry binary values (``Asset`` or raw ``bytes``) anywhere in their
fields. Before items are chunked into JSON those binaries are pulled out,
stored as separate files under ``<collection>/assets/`` and replaced by a
string reference.
"""

import base64
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Iterator

from .sha import git_blob_sha1
from .structure import asset_dir

ASSET_MARKER = "$$asset"
DEFAULT_CONTENT_TYPE = "application/octet-stream"

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(frozen=True)
class Asset:
    """A named binary payload."""

    name: str
    data: bytes
    content_type: str = DEFAULT_CONTENT_TYPE


Binary = Asset | bytes | bytearray

# Maps a binary to (value stored in the item, path the binary is written to).
PathFn = Callable[[Binary], tuple[str, str]]


@dataclass
class ExtractedAsset:
    path: str
    binary: Binary

    @property
    def data(self) -> bytes:
        return binary_data(self.binary)


@dataclass
class ExtractResult:
    items: list[dict[str, Any]]
    assets: list[ExtractedAsset] = field(default_factory=list)


def is_binary(value: Any) -> bool:
    return isinstance(value, (Asset, bytes, bytearray))


def binary_data(binary: Binary) -> bytes:
    if isinstance(binary, Asset):
        return binary.data
    return bytes(binary)


def binary_name(binary: Binary) -> str:
    name = binary.name if isinstance(binary, Asset) else "asset"
    return _UNSAFE_NAME_CHARS.sub("_", name).strip("._") or "asset"


def default_asset_path(collection: str, binary: Binary) -> str:
    """Content-addressed asset path: ``<collection>/assets/<hash12>-<name>``."""
    digest = git_blob_sha1(binary_data(binary))[:12]
    return f"{asset_dir(collection)}/{digest}-{binary_name(binary)}"


def extract_assets(items: Iterable[dict[str, Any]], path_fn: PathFn) -> ExtractResult:
    """Replace every binary value in ``items`` with its stored reference.

    Args:
        items: Items to scan; nested dicts and lists are walked recursively
        path_fn: Called once per binary, returns (stored value, asset path)

    Returns:
        ExtractResult with new item objects and one asset per binary found.
        The input items are left untouched.
    """
    assets: list[ExtractedAsset] = []

    def walk(value: Any) -> Any:
        if is_binary(value):
            stored, path = path_fn(value)
            assets.append(ExtractedAsset(path=path, binary=value))
            return stored
        if isinstance(value, dict):
            return {k: walk(v) for k, v in value.items()}
        if isinstance(value, list):
            return [walk(v) for v in value]
        return value

    return ExtractResult(items=[walk(item) for item in items], assets=assets)


def encode_assets(value: Any) -> Any:
    """Make binary values JSON-safe so items can be persisted locally."""
    if is_binary(value):
        if isinstance(value, Asset):
            name, content_type = value.name, value.content_type
        else:
            name, content_type = "asset", DEFAULT_CONTENT_TYPE
        return {
            ASSET_MARKER: {
                "name": name,
                "content_type": content_type,
                "data": base64.b64encode(binary_data(value)).decode("ascii"),
            }
        }
    if isinstance(value, dict):
        return {k: encode_assets(v) for k, v in value.items()}
    if isinstance(value, list):
        return [encode_assets(v) for v in value]
    return value


def decode_assets(value: Any) -> Any:
    """Inverse of ``encode_assets``."""
    if isinstance(value, dict):
        if len(value) == 1 and isinstance(value.get(ASSET_MARKER), dict):
            spec = value[ASSET_MARKER]
            return Asset(
                name=spec.get("name", "asset"),
                data=base64.b64decode(spec.get("data", "")),
                content_type=spec.get("content_type", DEFAULT_CONTENT_TYPE),
            )
        return {k: decode_assets(v) for k, v in value.items()}
    if isinstance(value, list):
        return [decode_assets(v) for v in value]
    return value


def iter_strings(value: Any) -> Iterator[str]:
    """Yield every string value nested in ``value``."""
    if isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for v in value.values():
            yield from iter_strings(v)
    elif isinstance(value, list):
        for v in value:
            yield from iter_strings(v)
