"""Debounced, non-overlapping execution of a batch callback."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional

logger = logging.getLogger(__name__)

RunListener = Callable[["asyncio.Task[Any]"], None]


class BatchScheduler:
    """
    Coalesce bursts of notifications into single callback runs.

    Every ``notify()`` resets one debounce timer; when the timer elapses the
    callback runs once. At most one run is active at a time. A timer firing
    during a run records a re-run request that is honoured, again after the
    debounce delay, when the run completes. The timer is also re-armed after a
    run whenever ``has_pending()`` reports outstanding work.

    Failed runs are logged, not raised, and each consecutive failure doubles
    the delay up to ``max_delay``.

    Args:
        callback: Coroutine function performing one batch
        delay: Debounce delay in seconds
        max_delay: Upper bound of the back-off delay
        has_pending: Optional check for work left over after a run
    """

    def __init__(
        self,
        callback: Callable[[], Awaitable[Any]],
        delay: float = 2.0,
        max_delay: float = 60.0,
        has_pending: Optional[Callable[[], bool]] = None,
    ):
        self.callback = callback
        self.delay = delay
        self.max_delay = max(max_delay, delay)
        self.has_pending = has_pending

        self.failures = 0
        self.last_error: Optional[BaseException] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._task: Optional[asyncio.Task] = None
        self._rerun = False
        self._closed = False
        self._listeners: List[RunListener] = []

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def scheduled(self) -> bool:
        return self._timer is not None

    @property
    def current_delay(self) -> float:
        return min(self.delay * (2**self.failures), self.max_delay)

    def on_run(self, listener: RunListener) -> Callable[[], None]:
        """Register a listener receiving the task of every run."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def notify(self) -> None:
        """Request a run after the debounce delay, resetting any pending timer."""
        if self._closed:
            return
        self._cancel_timer()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, run deferred until next notify")
            return
        self._timer = loop.call_later(self.current_delay, self._fire)

    def _fire(self) -> None:
        self._timer = None
        if self.running:
            self._rerun = True
            return
        self._start()

    def _start(self) -> "asyncio.Task[Any]":
        task = asyncio.get_running_loop().create_task(self._run())
        self._task = task
        for listener in list(self._listeners):
            try:
                listener(task)
            except Exception:
                logger.exception("Batch run listener failed")
        return task

    async def _run(self) -> Any:
        result = None
        try:
            result = await self.callback()
            self.failures = 0
            self.last_error = None
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failures += 1
            self.last_error = e
            logger.error(
                f"Batch run failed ({self.failures} consecutive), "
                f"retrying in {self.current_delay:.1f}s: {e}"
            )
        finally:
            self._task = None
            if not self._closed:
                rerun, self._rerun = self._rerun, False
                if rerun or (self.has_pending is not None and self.has_pending()):
                    self.notify()
        return result

    async def flush(self) -> Any:
        """Run the callback now and return its result.

        A run already in progress is awaited first so runs never overlap.
        """
        self._cancel_timer()
        if self._task is not None:
            await asyncio.shield(self._task)
            self._cancel_timer()
        self._rerun = False
        return await self._start()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def cancel(self) -> None:
        """Drop the pending timer without touching a run in progress."""
        self._cancel_timer()
        self._rerun = False

    async def close(self) -> None:
        """Stop scheduling and wait for a run in progress to finish."""
        self._closed = True
        self.cancel()
        if self._task is not None:
            await asyncio.shield(self._task)
