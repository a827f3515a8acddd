"""
Cooperative cancellation for asyncio suspension points.

A CancellationToken is created when a UI event triggers a dispatch and is
handed to every await the action reaches (timers, HTTP calls, custom steps).
A CancellationScope belongs to a UI context (a loaded page); disposing it
cancels every token it created.

Usage:
    scope = CancellationScope("page:dashboard")
    token = scope.create_token("action:save")
    data = await token.run(client.request("GET", "/api/x"))
    scope.dispose()   # navigating away
"""
import asyncio
from typing import Any, Awaitable, Callable, List, Optional, Set, TypeVar

from loguru import logger

from .errors import OperationCancelled

T = TypeVar('T')


class CancellationToken:
    def __init__(self, name: str = "token", parent: Optional['CancellationToken'] = None):
        self.name = name
        self.reason: Any = None
        self._cancelled = False
        self._callbacks: List[Callable[['CancellationToken'], None]] = []
        self._event = asyncio.Event()
        if parent is not None:
            parent.add_callback(lambda p: self.cancel(p.reason))

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: Any = None) -> bool:
        """
        Cancel the token. Returns False when it was already cancelled.
        """
        if self._cancelled:
            return False
        self._cancelled = True
        self.reason = reason
        self._event.set()
        logger.debug(f"Token '{self.name}' cancelled ({reason})")
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback(self)
            except Exception as e:
                logger.error(f"Cancellation callback failed for '{self.name}': {e}")
        return True

    def add_callback(self, callback: Callable[['CancellationToken'], None]) -> Callable[[], None]:
        """
        Register a callback fired on cancellation (immediately if already cancelled).

        Returns:
            Function that removes the callback
        """
        if self._cancelled:
            callback(self)
            return lambda: None
        self._callbacks.append(callback)

        def remove():
            if callback in self._callbacks:
                self._callbacks.remove(callback)
        return remove

    def raise_if_cancelled(self):
        if self._cancelled:
            raise OperationCancelled(self.reason)

    def child(self, name: str) -> 'CancellationToken':
        return CancellationToken(name, parent=self)

    async def wait(self):
        await self._event.wait()

    async def run(self, awaitable: Awaitable[T]) -> T:
        """
        Await `awaitable` unless the token is cancelled first.

        On cancellation the pending operation is cancelled and its eventual
        result, if any, is discarded.

        Raises:
            OperationCancelled: token cancelled before or while awaiting
        """
        if self._cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise OperationCancelled(self.reason)

        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise

        if self._cancelled:
            if not task.done():
                task.cancel()
            else:
                # Result arrived in the same tick as the cancel: drop it
                _consume(task)
            raise OperationCancelled(self.reason)

        waiter.cancel()
        return task.result()

    async def sleep(self, delay: float):
        await self.run(asyncio.sleep(delay))

    def __repr__(self) -> str:
        state = "cancelled" if self._cancelled else "active"
        return f"CancellationToken({self.name!r}, {state})"


def _consume(task: asyncio.Future):
    if not task.cancelled() and task.exception() is not None:
        logger.debug(f"Discarded error from cancelled operation: {task.exception()}")


class CancellationScope:
    """
    Owner of the tokens created for one UI context.
    """
    def __init__(self, name: str = "scope"):
        self.name = name
        self._tokens: Set[CancellationToken] = set()
        self._disposed = False

    @property
    def disposed(self) -> bool:
        return self._disposed

    @property
    def active_tokens(self) -> int:
        return len(self._tokens)

    def create_token(self, name: str = "token") -> CancellationToken:
        token = CancellationToken(f"{self.name}/{name}")
        if self._disposed:
            token.cancel(f"{self.name} disposed")
            return token
        self._tokens.add(token)
        return token

    def release(self, token: CancellationToken):
        """Forget a token whose operation finished."""
        self._tokens.discard(token)

    def dispose(self, reason: Optional[str] = None):
        if self._disposed:
            return
        self._disposed = True
        tokens, self._tokens = self._tokens, set()
        logger.debug(f"Disposing scope '{self.name}' ({len(tokens)} live tokens)")
        for token in tokens:
            token.cancel(reason or f"{self.name} disposed")
