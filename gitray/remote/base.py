"""
Remote object store boundary.

A remote store is a git repository: a tree of blobs addressed by path, each
identified by its git blob id. This module defines the operations the sync
engine needs from it, so that the GitHub backend and the in-memory backend
are interchangeable.
"""

from abc import ABC, abstractmethod
from typing import Dict, Iterable, List

from ..core.structure import ContentRef, StoreStructure
from ..exceptions import StoreNotFoundError


class RemoteStore(ABC):
    """
    Abstract base class for remote object stores.

    Store names passed to these methods are the full remote names returned by
    ``create_store`` / ``list_stores``.
    """

    @abstractmethod
    async def fetch_structure(self, store: str) -> StoreStructure:
        """
        Fetch the current tree of a store.

        Args:
            store: Remote store name

        Returns:
            StoreStructure with a hash for every existing path

        Raises:
            StoreNotFoundError: If the store does not exist
            RemoteUnavailableError: If the remote cannot be reached
        """

    @abstractmethod
    async def fetch_content(
        self, store: str, refs: Iterable[ContentRef]
    ) -> Dict[str, bytes]:
        """
        Download blobs.

        Args:
            store: Remote store name
            refs: Refs to download; refs without a hash are skipped

        Returns:
            Mapping of path to raw content

        Raises:
            HashMismatchError: If a downloaded blob does not match its hash
            RemoteUnavailableError: If the remote cannot be reached
        """

    @abstractmethod
    async def commit(
        self,
        store: str,
        files: Dict[str, bytes],
        deletions: Iterable[str],
        message: str,
    ) -> str:
        """
        Write and delete paths in a single atomic commit.

        Args:
            store: Remote store name
            files: Path -> new content
            deletions: Paths to remove
            message: Commit message

        Returns:
            Id of the new commit

        Raises:
            HashMismatchError: If the remote computed a different blob id
            RemoteError: If the remote refused the commit
        """

    @abstractmethod
    async def create_store(self, name: str) -> str:
        """
        Create an empty store with an initial ``meta.json``.

        Args:
            name: Short store name

        Returns:
            Full remote store name
        """

    @abstractmethod
    async def list_stores(self) -> List[str]:
        """List the full names of every store owned by this client."""

    @abstractmethod
    def asset_url(self, store: str, path: str) -> str:
        """URL (or stable reference) under which an asset path is served."""

    def asset_path(self, store: str, reference: str) -> str:
        """Inverse of ``asset_url``; plain paths are returned unchanged."""
        prefix = self.asset_url(store, "")
        if prefix and reference.startswith(prefix):
            return reference[len(prefix) :]
        return reference

    async def fetch_asset(self, store: str, reference: str) -> bytes:
        """
        Download one asset by path or URL.

        Raises:
            StoreNotFoundError: If the asset does not exist
        """
        path = self.asset_path(store, reference)
        structure = await self.fetch_structure(store)
        for collection in structure.collections:
            for ref in collection.assets:
                if ref.path == path:
                    content = await self.fetch_content(store, [ref])
                    return content[path]
        raise StoreNotFoundError(f"Asset not found in {store}: {path}", 404)

    async def close(self) -> None:
        """Release network resources."""

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
