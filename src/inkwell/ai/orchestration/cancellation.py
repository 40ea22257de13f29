"""Generation-stamped cancellation for conversation turns.

Each user turn is processed under its own :class:`CancellationToken`. The
:class:`CancellationCoordinator` hands out tokens with strictly increasing
generations; issuing a new one supersedes (and cancels) the previous token so
any work still tagged with it becomes stale. Staleness is a plain comparison
against the coordinator, never a shared mutable "current controller".
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, TypeVar

from ..errors import AbortedError

__all__ = ["CancellationToken", "CancellationCoordinator", "race"]

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")
CancelCallback = Callable[[], Any]


class CancellationToken:
    """Cancellation flag for one generation of work."""

    __slots__ = ("generation", "reason", "_event", "_callbacks")

    def __init__(self, generation: int) -> None:
        self.generation = generation
        self.reason = ""
        self._event = asyncio.Event()
        self._callbacks: list[CancelCallback] = []

    def __repr__(self) -> str:
        return f"CancellationToken(generation={self.generation}, cancelled={self.cancelled})"

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "aborted") -> bool:
        """Cancel the token and run registered callbacks once.

        Returns ``False`` when the token was already cancelled.
        """

        if self._event.is_set():
            return False
        self.reason = reason
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:  # pragma: no cover - callbacks are teardown hooks
                LOGGER.exception("Cancellation callback failed for generation %s", self.generation)
        return True

    def on_cancel(self, callback: CancelCallback) -> Callable[[], None]:
        """Register ``callback`` to run on cancellation; returns an unregister hook.

        A callback registered on an already-cancelled token runs immediately.
        """

        if self._event.is_set():
            callback()
            return lambda: None
        self._callbacks.append(callback)

        def _unregister() -> None:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass

        return _unregister

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise AbortedError()


class CancellationCoordinator:
    """Issues tokens and answers "is this token still the current one?"."""

    def __init__(self) -> None:
        self._generation = 0
        self._current: CancellationToken | None = None

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def current(self) -> CancellationToken | None:
        return self._current

    def begin(self) -> CancellationToken:
        """Issue a new token, superseding and cancelling any outstanding one."""

        previous = self._current
        self._generation += 1
        token = CancellationToken(self._generation)
        self._current = token
        if previous is not None and previous.cancel("superseded"):
            LOGGER.debug(
                "Generation %s superseded by %s", previous.generation, token.generation
            )
        return token

    def is_current(self, token: CancellationToken | None) -> bool:
        """Return ``True`` while ``token`` has not been superseded or retired."""

        return token is not None and token is self._current

    def is_active(self, token: CancellationToken | None) -> bool:
        """Return ``True`` if ``token`` is current and has not been cancelled."""

        return self.is_current(token) and not token.cancelled  # type: ignore[union-attr]

    def abort(self) -> CancellationToken | None:
        """Cancel the current token, returning it if there was one to cancel."""

        token = self._current
        if token is None or not token.cancel("aborted"):
            return None
        LOGGER.info("Aborted generation %s", token.generation)
        return token

    def retire(self, token: CancellationToken) -> None:
        """Forget ``token`` once its processing has terminated."""

        if token is self._current:
            self._current = None


def _consume_result(task: asyncio.Future[Any]) -> None:
    if not task.cancelled():
        exc = task.exception()
        if exc is not None:
            LOGGER.debug("Abandoned operation finished with %r", exc)


def _abandon(task: asyncio.Future[Any]) -> None:
    task.cancel()
    task.add_done_callback(_consume_result)


async def race(
    operation: Awaitable[T],
    token: CancellationToken,
    *,
    timeout: float | None = None,
) -> T:
    """Await ``operation`` against ``token`` and an optional timeout.

    The first of the three to finish wins. A losing operation is cancelled and
    abandoned; its outcome is never awaited.

    Raises:
        AbortedError: the token was cancelled first.
        asyncio.TimeoutError: ``timeout`` elapsed first.
    """

    task = asyncio.ensure_future(operation)
    if token.cancelled:
        _abandon(task)
        raise AbortedError()
    waiter = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait(
            {task, waiter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
        )
    except asyncio.CancelledError:
        _abandon(task)
        waiter.cancel()
        raise
    if task in done:
        waiter.cancel()
        return task.result()
    _abandon(task)
    if waiter in done:
        raise AbortedError()
    waiter.cancel()
    raise asyncio.TimeoutError()
