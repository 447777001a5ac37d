"""
Trailing-edge debounce for async actions.

`trigger()` (re)starts a quiet-period timer; the action runs once the timer
expires without another trigger. Runs are serialised, and a run is skipped
when the content fingerprint matches the last successful run.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Hashable

logger = logging.getLogger(__name__)

# Returns True when the action completed; only then is its fingerprint recorded
DebouncedAction = Callable[[], Awaitable[bool]]
Fingerprint = Callable[[], Hashable]


class Debouncer:
    """
    Coalesces bursts of triggers into a single action run.

    Args:
        action: Coroutine function to run; returns True on success
        delay: Quiet period in seconds
        fingerprint: Optional content fingerprint; unchanged content is not re-run
        name: Label for log messages
    """

    def __init__(
        self,
        action: DebouncedAction,
        delay: float,
        fingerprint: Fingerprint | None = None,
        name: str = "debounced action",
    ):
        if delay < 0:
            raise ValueError("delay must be non-negative")
        self._action = action
        self.delay = delay
        self._fingerprint = fingerprint
        self.name = name

        self._handle: asyncio.TimerHandle | None = None
        self._running: asyncio.Task[bool] | None = None
        self._lock = asyncio.Lock()
        self._last_fingerprint: Hashable | None = None
        self._closed = False

    @property
    def pending(self) -> bool:
        """A run is scheduled but has not started."""
        return self._handle is not None

    def prime(self, fingerprint: Hashable) -> None:
        """Record content as already handled, e.g. right after loading it."""
        self._last_fingerprint = fingerprint

    def trigger(self) -> None:
        if self._closed:
            return
        if self._handle is not None:
            self._handle.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.delay, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        self._running = asyncio.get_running_loop().create_task(self._run())

    async def flush(self) -> bool:
        """Run now if a run is pending, skipping the rest of the quiet period."""
        if self._handle is None:
            return False
        self.cancel()
        return await self._run()

    async def run_now(self) -> bool:
        """Run immediately whether or not a run is pending."""
        self.cancel()
        return await self._run()

    async def close(self) -> None:
        """Cancel any pending run and wait for a running one to finish."""
        self._closed = True
        self.cancel()
        if self._running is not None and not self._running.done():
            await asyncio.gather(self._running, return_exceptions=True)

    async def _run(self) -> bool:
        async with self._lock:
            fingerprint = self._fingerprint() if self._fingerprint is not None else None
            if fingerprint is not None and fingerprint == self._last_fingerprint:
                logger.debug("%s skipped: content unchanged", self.name)
                return False

            completed = await self._action()
            if completed and fingerprint is not None:
                self._last_fingerprint = fingerprint
            return completed
