"""Tests for the in-process remote store."""

import pytest

from gitray.core.sha import git_blob_sha1
from gitray.core.structure import ContentRef, encode_json
from gitray.exceptions import (
    HashMismatchError,
    RemoteError,
    RemoteUnavailableError,
    StoreNotFoundError,
)


class TestMemoryRemote:
    """Tests for MemoryRemote."""

    @pytest.mark.asyncio
    async def test_create_store_seeds_meta(self, memory_remote):
        store = await memory_remote.create_store("book")
        assert store == "me/gitray-db-book"
        assert memory_remote.files(store) == {"meta.json": encode_json({})}

        structure = await memory_remote.fetch_structure(store)
        assert structure.meta == ContentRef("meta.json", git_blob_sha1(b"{}"))
        assert structure.collections == []

    @pytest.mark.asyncio
    async def test_create_duplicate_store(self, memory_remote):
        await memory_remote.create_store("book")
        with pytest.raises(RemoteError) as exc_info:
            await memory_remote.create_store("book")
        assert exc_info.value.status_code == 422

    @pytest.mark.asyncio
    async def test_list_stores_filters_prefix(self, memory_remote):
        await memory_remote.create_store("b")
        await memory_remote.create_store("a")
        memory_remote.stores["me/unrelated"] = {}
        assert await memory_remote.list_stores() == [
            "me/gitray-db-a",
            "me/gitray-db-b",
        ]

    @pytest.mark.asyncio
    async def test_missing_store(self, memory_remote):
        with pytest.raises(StoreNotFoundError):
            await memory_remote.fetch_structure("me/nope")

    @pytest.mark.asyncio
    async def test_commit_and_fetch(self, memory_remote):
        store = await memory_remote.create_store("book")
        chunk = encode_json([{"id": "1"}])
        await memory_remote.commit(
            store, {"bills/entry-0.json": chunk}, [], "add bills"
        )

        structure = await memory_remote.fetch_structure(store)
        bills = structure.get_collection("bills")
        assert bills.chunks == [ContentRef("bills/entry-0.json", git_blob_sha1(chunk))]

        content = await memory_remote.fetch_content(store, bills.chunks)
        assert content == {"bills/entry-0.json": chunk}
        assert len(memory_remote.commits[store]) == 1

    @pytest.mark.asyncio
    async def test_commit_deletions(self, memory_remote):
        store = await memory_remote.create_store("book")
        memory_remote.put_file(store, "bills/entry-0.json", b"[]")
        await memory_remote.commit(store, {}, ["bills/entry-0.json"], "delete")
        assert "bills/entry-0.json" not in memory_remote.files(store)

    @pytest.mark.asyncio
    async def test_fetch_content_verifies_hash(self, memory_remote):
        store = await memory_remote.create_store("book")
        memory_remote.put_file(store, "bills/entry-0.json", b"[]")
        with pytest.raises(HashMismatchError) as exc_info:
            await memory_remote.fetch_content(
                store, [ContentRef("bills/entry-0.json", "0" * 40)]
            )
        assert exc_info.value.path == "bills/entry-0.json"

    @pytest.mark.asyncio
    async def test_fetch_content_skips_unhashed(self, memory_remote):
        store = await memory_remote.create_store("book")
        assert await memory_remote.fetch_content(store, [ContentRef("x.json")]) == {}

    @pytest.mark.asyncio
    async def test_injected_commit_failures(self, memory_remote):
        store = await memory_remote.create_store("book")
        memory_remote.fail_commits(2)

        for _ in range(2):
            with pytest.raises(RemoteUnavailableError):
                await memory_remote.commit(store, {"a/meta.json": b"{}"}, [], "m")
        assert "a/meta.json" not in memory_remote.files(store)

        await memory_remote.commit(store, {"a/meta.json": b"{}"}, [], "m")
        assert "a/meta.json" in memory_remote.files(store)
        assert memory_remote.calls["commit"] == 3

    @pytest.mark.asyncio
    async def test_fetch_asset_by_url(self, memory_remote):
        store = await memory_remote.create_store("book")
        memory_remote.put_file(store, "bills/assets/abc-img.png", b"\x89PNG")
        url = memory_remote.asset_url(store, "bills/assets/abc-img.png")

        assert memory_remote.asset_path(store, url) == "bills/assets/abc-img.png"
        assert await memory_remote.fetch_asset(store, url) == b"\x89PNG"
        assert (
            await memory_remote.fetch_asset(store, "bills/assets/abc-img.png")
            == b"\x89PNG"
        )
        with pytest.raises(StoreNotFoundError):
            await memory_remote.fetch_asset(store, "bills/assets/missing.png")
