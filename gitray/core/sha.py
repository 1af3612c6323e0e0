"""Content addressing compatible with git blob object ids.

A blob id is the SHA-1 of ``b"blob <length>\\0" + content``. Computing the
same digest locally lets the differ decide that a path is unchanged without
downloading it.
"""

import asyncio
import hashlib
import string

# Payloads above this size are hashed on a worker thread.
OFFLOAD_THRESHOLD = 100_000

_SHA1_HEX_LEN = 40


def git_blob_sha1(content: bytes | bytearray | memoryview) -> str:
    """Compute the git blob id of ``content`` as lowercase hex."""
    data = bytes(content)
    header = f"blob {len(data)}\x00".encode("ascii")
    return hashlib.sha1(header + data).hexdigest()


async def hash_content(content: bytes | bytearray | memoryview) -> str:
    """Compute the git blob id, offloading large payloads to a thread."""
    if len(content) > OFFLOAD_THRESHOLD:
        return await asyncio.to_thread(git_blob_sha1, content)
    return git_blob_sha1(content)


def is_git_sha(value: object) -> bool:
    return (
        isinstance(value, str)
        and len(value) == _SHA1_HEX_LEN
        and all(c in string.hexdigits and not c.isupper() for c in value)
    )
