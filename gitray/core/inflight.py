"""Coalescing of identical concurrent requests."""

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def fingerprint(key: Any) -> str:
    """Canonical JSON form of ``key``; equal keys give equal fingerprints."""
    return json.dumps(key, sort_keys=True, separators=(",", ":"), default=str)


class InflightRegistry:
    """Shares one in-flight task between callers asking for the same thing.

    The entry is removed as soon as the task finishes, successfully or not,
    so results are never cached beyond the lifetime of the request.
    """

    def __init__(self):
        self._tasks: Dict[str, asyncio.Task] = {}

    def __len__(self) -> int:
        return len(self._tasks)

    async def run(self, key: Any, factory: Callable[[], Awaitable[T]]) -> T:
        """
        Await ``factory()`` or join an identical request already running.

        Args:
            key: JSON-serializable description of the request
            factory: Creates the awaitable when no identical request runs

        Returns:
            The shared result
        """
        fp = fingerprint(key)
        task = self._tasks.get(fp)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._tasks[fp] = task
            task.add_done_callback(lambda _: self._discard(fp, task))
        else:
            logger.debug(f"Joining in-flight request {fp}")
        return await asyncio.shield(task)

    def _discard(self, fp: str, task: asyncio.Task) -> None:
        if self._tasks.get(fp) is task:
            del self._tasks[fp]
