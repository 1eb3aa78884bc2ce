"""
Shared cancellation scope for a connection session.

A CancellationScope is the lifetime of one session. It combines two things every spawned
command shares:

- a broadcast cancellation signal (an asyncio.Event) observed by every in-flight wait
  (start detection races and port readiness probes), and
- the set of outstanding completion tasks, one per successfully spawned process, that
  `drain()` waits on during shutdown.

Cancelling the scope stops *waiting*; it never kills a running process. The scope is
single-use: once cancelled it stays cancelled.
"""

import asyncio
import logging
from collections.abc import Awaitable
from typing import TypeVar

from cluster_connect._exceptions import SessionCancelledError

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationScope:
    """
    Cancellation signal plus outstanding-process tracking for one session.

    All methods must be called from the event loop that owns the scope. The tracked set
    is only mutated from that loop (task done callbacks run on it too), so no further
    locking is needed.
    """

    def __init__(self) -> None:
        self._cancelled = asyncio.Event()
        self._pending: set[asyncio.Future[None]] = set()
        self._completed = 0

    @property
    def cancelled(self) -> bool:
        """bool: True once cancel() has been called."""
        return self._cancelled.is_set()

    @property
    def pending_count(self) -> int:
        """int: Number of tracked completions that have not resolved yet."""
        return len(self._pending)

    @property
    def completed_count(self) -> int:
        """int: Number of tracked completions that have resolved."""
        return self._completed

    def cancel(self) -> None:
        """Set the cancellation signal. Calling it again is a no-op."""
        if not self._cancelled.is_set():
            _LOGGER.debug("[_scope:CancellationScope] Cancelling scope")
        self._cancelled.set()

    async def wait_cancelled(self) -> None:
        """Block until the scope is cancelled."""
        await self._cancelled.wait()

    def track(self, completion: "asyncio.Future[None]") -> None:
        """
        Register the completion of a spawned process.

        The completion stays pending until it resolves, whatever the outcome, and drain()
        waits for it.

        Args:
            completion (asyncio.Future[None]): Task or future resolving when the process
                has exited and its output has been drained.
        """
        self._pending.add(completion)
        completion.add_done_callback(self._on_completed)

    def _on_completed(self, completion: "asyncio.Future[None]") -> None:
        self._pending.discard(completion)
        self._completed += 1

    async def drain(self) -> None:
        """
        Wait until every tracked completion has resolved.

        There is no timeout. Failures of individual completions are logged, never raised,
        so one crashed watcher cannot prevent the rest from draining.
        """
        while self._pending:
            pending = list(self._pending)
            _LOGGER.debug(
                f"[_scope:CancellationScope] Draining {len(pending)} outstanding process(es)"
            )
            results = await asyncio.gather(*pending, return_exceptions=True)
            for result in results:
                if isinstance(result, BaseException):
                    _LOGGER.error(
                        f"[_scope:CancellationScope] Process completion failed: {result!r}"
                    )

    async def run(self, awaitable: Awaitable[T], timeout: float | None = None) -> T:
        """
        Await `awaitable`, aborting as soon as the scope is cancelled.

        Args:
            awaitable (Awaitable[T]): The coroutine or future to wait for.
            timeout (float | None): Optional deadline in seconds for `awaitable`.

        Returns:
            T: The result of `awaitable`.

        Raises:
            SessionCancelledError: If the scope is (or becomes) cancelled first. The
                awaitable is cancelled and awaited before this is raised.
            TimeoutError: If `timeout` elapses first.
        """
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise SessionCancelledError("Session cancelled")

        work = asyncio.ensure_future(asyncio.wait_for(awaitable, timeout))
        cancel_waiter = asyncio.ensure_future(self._cancelled.wait())
        try:
            await asyncio.wait(
                {work, cancel_waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            cancel_waiter.cancel()

        if work.done():
            return work.result()

        work.cancel()
        await asyncio.wait({work})
        if not work.cancelled():
            # Mark the abandoned outcome as retrieved
            work.exception()
        raise SessionCancelledError("Session cancelled")
