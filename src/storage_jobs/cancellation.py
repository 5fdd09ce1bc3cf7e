"""
Cancellation tokens threaded through queue and storage calls.

A token is created by whoever owns a deadline (an incoming request, the CLI
signal handler, a test) and passed down every call boundary. Callees either
check it between steps or race their awaitables against it with `guard`.
"""
import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

from storage_jobs.errors import Aborted

logger = logging.getLogger(__name__)

T = TypeVar("T")

Callback = Callable[[], Any]


class CancellationToken:
    """One-shot cancellation flag with callbacks and an awaitable event."""

    def __init__(self):
        self._cancelled = False
        self._reason: Optional[str] = None
        self._callbacks: List[Callback] = []
        self._event: Optional[asyncio.Event] = None

    @classmethod
    def with_timeout(cls, seconds: float) -> "CancellationToken":
        """Create a token that cancels itself after `seconds` on the running loop."""
        token = cls()
        loop = asyncio.get_running_loop()
        handle = loop.call_later(seconds, token.cancel, f"timed out after {seconds}s")
        token.add_callback(handle.cancel)
        return token

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: Optional[str] = None) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._reason = reason or "operation was cancelled"
        if self._event is not None:
            self._event.set()

        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            self._run_callback(callback)

    def add_callback(self, callback: Callback) -> Callable[[], None]:
        """
        Register a callback fired once on cancellation.

        Fires immediately when the token is already cancelled. Returns a
        function that unregisters the callback.
        """
        if self._cancelled:
            self._run_callback(callback)
            return lambda: None

        self._callbacks.append(callback)

        def remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return remove

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise Aborted(self._reason or "operation was cancelled")

    async def wait(self) -> None:
        if self._cancelled:
            return
        await self._get_event().wait()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """
        Await `awaitable` unless the token fires first.

        On cancellation the wrapped task is cancelled and `Aborted` is raised.
        """
        if self._cancelled:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            raise Aborted(self._reason or "operation was cancelled")

        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task.done():
            return task.result()

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug(f"Cancelled operation finished with error: {e!r}")
        raise Aborted(self._reason or "operation was cancelled")

    def child(self) -> "CancellationToken":
        """A token cancelled together with this one, but cancellable on its own."""
        child = CancellationToken()
        remove = self.add_callback(lambda: child.cancel(self._reason))
        child.add_callback(remove)
        return child

    def _get_event(self) -> asyncio.Event:
        if self._event is None:
            self._event = asyncio.Event()
            if self._cancelled:
                self._event.set()
        return self._event

    @staticmethod
    def _run_callback(callback: Callback) -> None:
        try:
            callback()
        except Exception as e:
            logger.error(f"Error in cancellation callback: {str(e)}", exc_info=True)

    def __repr__(self) -> str:
        state = f"cancelled: {self._reason}" if self._cancelled else "active"
        return f"<CancellationToken {state}>"
