"""Tests for git-compatible content addressing."""

import hashlib

import pytest

from gitray.core.sha import (
    OFFLOAD_THRESHOLD,
    git_blob_sha1,
    hash_content,
    is_git_sha,
)


class TestGitBlobSha1:
    """Tests for git_blob_sha1."""

    def test_empty_blob_matches_git(self):
        """The empty blob id is well known."""
        assert git_blob_sha1(b"") == "e69de29bb2d1d6434b8b29ae775ad8c2e48c5391"

    def test_text_blob_matches_git(self):
        """`echo hello | git hash-object --stdin`."""
        assert git_blob_sha1(b"hello\n") == "ce013625030ba8dba906f756967f9e9ca394464a"

    def test_header_is_part_of_digest(self):
        content = b'{"a": 1}'
        expected = hashlib.sha1(b"blob 8\x00" + content).hexdigest()
        assert git_blob_sha1(content) == expected
        assert git_blob_sha1(content) != hashlib.sha1(content).hexdigest()

    def test_is_stable(self):
        content = b"same bytes"
        assert git_blob_sha1(content) == git_blob_sha1(bytearray(content))
        assert git_blob_sha1(content) == git_blob_sha1(memoryview(content))

    def test_different_content_different_hash(self):
        assert git_blob_sha1(b"a") != git_blob_sha1(b"b")


class TestHashContent:
    """Tests for the async hashing entry point."""

    @pytest.mark.asyncio
    async def test_small_payload(self):
        assert await hash_content(b"hello\n") == git_blob_sha1(b"hello\n")

    @pytest.mark.asyncio
    async def test_large_payload_offloaded(self):
        """Payloads above the threshold give the same digest on a worker thread."""
        content = b"x" * (OFFLOAD_THRESHOLD + 1)
        assert await hash_content(content) == git_blob_sha1(content)


class TestIsGitSha:
    def test_valid(self):
        assert is_git_sha(git_blob_sha1(b"abc"))

    @pytest.mark.parametrize(
        "value",
        [
            None,
            "",
            "abc",
            "E69DE29BB2D1D6434B8B29AE775AD8C2E48C5391",
            "g69de29bb2d1d6434b8b29ae775ad8c2e48c5391",
            "e69de29bb2d1d6434b8b29ae775ad8c2e48c53911",
        ],
    )
    def test_invalid(self, value):
        assert not is_git_sha(value)
