"""In-process remote store, used for offline mode and tests."""

import asyncio
import hashlib
import logging
from typing import Dict, Iterable, List, Optional

from ..core.sha import git_blob_sha1
from ..core.structure import (
    ROOT_META_PATH,
    ContentRef,
    StoreStructure,
    encode_json,
    tree_to_structure,
)
from ..exceptions import (
    HashMismatchError,
    RemoteError,
    RemoteUnavailableError,
    StoreNotFoundError,
)
from .base import RemoteStore

logger = logging.getLogger(__name__)


class MemoryRemote(RemoteStore):
    """
    Remote store keeping every repository as a ``path -> bytes`` dict.

    Commits replace the whole dict at once, so readers never observe a partial
    commit. Failures and latency can be injected to exercise retry paths.

    Args:
        owner: Account the stores belong to
        repo_prefix: Prefix of every store name
        entry_name: Chunk file prefix used when parsing trees
        latency: Seconds each call sleeps before doing its work
    """

    def __init__(
        self,
        owner: str = "local",
        repo_prefix: str = "gitray-db",
        entry_name: str = "entry",
        latency: float = 0.0,
    ):
        self.owner = owner
        self.repo_prefix = repo_prefix
        self.entry_name = entry_name
        self.latency = latency
        self.stores: Dict[str, Dict[str, bytes]] = {}
        self.commits: Dict[str, List[str]] = {}
        self.calls: Dict[str, int] = {}
        self._failures: List[Exception] = []

    def fail_commits(self, count: int = 1, error: Optional[Exception] = None) -> None:
        """Make the next ``count`` commits raise ``error``."""
        for _ in range(count):
            self._failures.append(
                error or RemoteUnavailableError("Injected commit failure", 503)
            )

    async def _call(self, name: str) -> None:
        self.calls[name] = self.calls.get(name, 0) + 1
        if self.latency:
            await asyncio.sleep(self.latency)

    def _files(self, store: str) -> Dict[str, bytes]:
        files = self.stores.get(store)
        if files is None:
            raise StoreNotFoundError(f"Store not found: {store}", 404)
        return files

    def files(self, store: str) -> Dict[str, bytes]:
        """Snapshot of a store's files."""
        return dict(self._files(store))

    def put_file(self, store: str, path: str, content: bytes) -> None:
        """Write a file directly, as another device would."""
        self.stores[store] = {**self._files(store), path: content}

    def remove_file(self, store: str, path: str) -> None:
        files = dict(self._files(store))
        files.pop(path, None)
        self.stores[store] = files

    async def fetch_structure(self, store: str) -> StoreStructure:
        await self._call("fetch_structure")
        files = self._files(store)
        return tree_to_structure(
            ((path, git_blob_sha1(data)) for path, data in sorted(files.items())),
            entry_name=self.entry_name,
        )

    async def fetch_content(
        self, store: str, refs: Iterable[ContentRef]
    ) -> Dict[str, bytes]:
        await self._call("fetch_content")
        files = self._files(store)
        result = {}
        for ref in refs:
            if not ref.hash:
                continue
            data = files.get(ref.path)
            actual = git_blob_sha1(data) if data is not None else None
            if actual != ref.hash:
                raise HashMismatchError(ref.path, ref.hash, actual)
            result[ref.path] = data
        return result

    async def commit(
        self,
        store: str,
        files: Dict[str, bytes],
        deletions: Iterable[str],
        message: str,
    ) -> str:
        await self._call("commit")
        current = self._files(store)
        if self._failures:
            raise self._failures.pop(0)

        updated = dict(current)
        for path in deletions:
            updated.pop(path, None)
        updated.update(files)
        self.stores[store] = updated

        history = self.commits.setdefault(store, [])
        commit_id = hashlib.sha1(
            f"{store}:{len(history)}:{message}".encode("utf-8")
        ).hexdigest()
        history.append(commit_id)
        logger.debug(f"Committed {len(files)} file(s) to {store}: {message}")
        return commit_id

    async def create_store(self, name: str) -> str:
        await self._call("create_store")
        full_name = f"{self.owner}/{self.repo_prefix}-{name}"
        if full_name in self.stores:
            raise RemoteError(f"Store already exists: {full_name}", 422)
        self.stores[full_name] = {ROOT_META_PATH: encode_json({})}
        self.commits[full_name] = []
        return full_name

    async def list_stores(self) -> List[str]:
        await self._call("list_stores")
        prefix = f"{self.repo_prefix}-"
        return sorted(
            name
            for name in self.stores
            if name.split("/")[-1].startswith(prefix)
        )

    def asset_url(self, store: str, path: str) -> str:
        return f"memory://{store}/{path}"
