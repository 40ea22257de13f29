"""Conversation state owned by a single writer.

The orchestration loop is the only writer. Every mutating call carries the
caller's :class:`~inkwell.ai.orchestration.cancellation.CancellationToken`
and is ignored when that token is no longer active, so a superseded request
finishing late cannot clobber the state of the request that replaced it.
Observers (the UI) subscribe for change notifications and read snapshots.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Sequence

from ..ai_types import ConversationTurn
from .cancellation import CancellationCoordinator, CancellationToken

__all__ = ["ConversationState", "StateSnapshot", "StateObserver"]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class StateSnapshot:
    history: tuple[ConversationTurn, ...]
    is_loading: bool
    error: str | None
    interrupted: bool
    streaming_content: str
    last_response: str


StateObserver = Callable[[StateSnapshot], None]


class ConversationState:
    """History and UI-facing flags for one conversation."""

    def __init__(self, coordinator: CancellationCoordinator | None = None) -> None:
        self._coordinator = coordinator or CancellationCoordinator()
        self._history: list[ConversationTurn] = []
        self._is_loading = False
        self._error: str | None = None
        self._interrupted = False
        self._streaming_content = ""
        self._last_response = ""
        self._interrupted_content = ""
        self._observers: list[StateObserver] = []

    # ------------------------------------------------------------------
    # Readers
    # ------------------------------------------------------------------
    @property
    def coordinator(self) -> CancellationCoordinator:
        return self._coordinator

    @property
    def history(self) -> tuple[ConversationTurn, ...]:
        return tuple(self._history)

    @property
    def is_loading(self) -> bool:
        return self._is_loading

    @property
    def error(self) -> str | None:
        return self._error

    @property
    def interrupted(self) -> bool:
        return self._interrupted

    @property
    def streaming_content(self) -> str:
        return self._streaming_content

    @property
    def last_response(self) -> str:
        return self._last_response

    @property
    def interrupted_content(self) -> str:
        """Partial text materialized by the most recent interrupt."""

        return self._interrupted_content

    def snapshot(self) -> StateSnapshot:
        return StateSnapshot(
            history=tuple(self._history),
            is_loading=self._is_loading,
            error=self._error,
            interrupted=self._interrupted,
            streaming_content=self._streaming_content,
            last_response=self._last_response,
        )

    def subscribe(self, observer: StateObserver) -> Callable[[], None]:
        self._observers.append(observer)

        def _unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return _unsubscribe

    # ------------------------------------------------------------------
    # Writers (token-guarded)
    # ------------------------------------------------------------------
    def begin_turn(self, token: CancellationToken, user_turn: ConversationTurn) -> bool:
        if not self._accepts(token, "begin_turn"):
            return False
        self._history.append(user_turn)
        self._is_loading = True
        self._error = None
        self._interrupted = False
        self._interrupted_content = ""
        self._streaming_content = ""
        self._notify()
        return True

    def append(self, token: CancellationToken, *turns: ConversationTurn) -> bool:
        if not self._accepts(token, "append"):
            return False
        self._history.extend(turns)
        self._notify()
        return True

    def append_stream(self, token: CancellationToken, text: str) -> bool:
        if not text or not self._accepts(token, "append_stream"):
            return False
        self._streaming_content += text
        self._notify()
        return True

    def clear_stream(self, token: CancellationToken) -> bool:
        if not self._accepts(token, "clear_stream"):
            return False
        if self._streaming_content:
            self._streaming_content = ""
            self._notify()
        return True

    def finish(
        self,
        token: CancellationToken,
        *,
        response: str = "",
        error: str | None = None,
    ) -> bool:
        if not self._accepts(token, "finish"):
            return False
        self._is_loading = False
        self._streaming_content = ""
        self._error = error
        if response:
            self._last_response = response
        self._notify()
        return True

    def interrupt(self, token: CancellationToken) -> bool:
        """Materialize streamed text and mark the turn interrupted.

        Accepted for a cancelled token as long as it has not been superseded;
        runs at most once per turn.
        """

        if not self._coordinator.is_current(token):
            LOGGER.debug("Ignoring interrupt for stale generation %s", token.generation)
            return False
        if self._interrupted or not self._is_loading:
            return False
        partial = self._streaming_content
        if partial:
            self._history.append(ConversationTurn.assistant(partial, interrupted=True))
            self._last_response = partial
        self._interrupted_content = partial
        self._streaming_content = ""
        self._is_loading = False
        self._interrupted = True
        self._error = None
        self._notify()
        return True

    def clear(self) -> None:
        """Reset the conversation; any in-flight request becomes stale."""

        token = self._coordinator.current
        if token is not None:
            token.cancel("cleared")
            self._coordinator.retire(token)
        self._history.clear()
        self._is_loading = False
        self._error = None
        self._interrupted = False
        self._streaming_content = ""
        self._last_response = ""
        self._interrupted_content = ""
        self._notify()

    def _accepts(self, token: CancellationToken, operation: str) -> bool:
        if self._coordinator.is_active(token):
            return True
        LOGGER.debug("Dropping %s from stale generation %s", operation, token.generation)
        return False

    def _notify(self) -> None:
        if not self._observers:
            return
        snapshot = self.snapshot()
        for observer in list(self._observers):
            try:
                observer(snapshot)
            except Exception:  # pragma: no cover - observers belong to the UI
                LOGGER.exception("State observer failed")

    @classmethod
    def with_history(
        cls, history: Sequence[ConversationTurn], coordinator: CancellationCoordinator | None = None
    ) -> "ConversationState":
        state = cls(coordinator)
        state._history.extend(history)
        return state
