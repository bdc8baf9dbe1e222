"""Conversation store: shared state and bounded history.

One ``ConversationStore`` exists per application session.  Every
component reads it; each field has a single writer:

* speech input controller: ``is_listening``
* answer pipeline: ``recognised_text`` and the history
* avatar session: ``is_avatar_connected`` / ``is_avatar_speaking`` and
  clearing ``stop_avatar_speaking``
* stop control: raising ``stop_avatar_speaking``

State snapshots are immutable; every update swaps in a new snapshot
and notifies subscribers synchronously with ``(old, new)``.  The history
is an immutable tuple replaced through a versioned compare-and-set so a
read-modify-write can never be applied on a stale base.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Callable, Iterable, Sequence

from concierge.models import ChatTurn

logger = logging.getLogger(__name__)

_DEFAULT_HISTORY_LIMIT = 20
_MAX_CAS_ATTEMPTS = 8

History = tuple[ChatTurn, ...]


@dataclass(frozen=True)
class ConversationState:
    """Snapshot of the shared flags and display text."""

    is_listening: bool = False
    recognised_text: str = ""
    is_avatar_connected: bool = False
    is_avatar_speaking: bool = False
    stop_avatar_speaking: bool = False


Listener = Callable[[ConversationState, ConversationState], None]


class ConversationStore:
    """Process-wide conversation state with subscriber notification.

    Parameters
    ----------
    history_limit : int
        Maximum number of turns kept; older turns are evicted first.
    """

    def __init__(self, history_limit: int = _DEFAULT_HISTORY_LIMIT) -> None:
        if history_limit < 1:
            raise ValueError("history_limit must be at least 1")
        self.history_limit = history_limit
        self._state = ConversationState()
        self._history: History = ()
        self._history_version = 0
        self._listeners: list[Listener] = []

    # -- state --------------------------------------------------------------

    @property
    def state(self) -> ConversationState:
        return self._state

    def update(self, **changes: object) -> ConversationState:
        """Apply field changes atomically and notify subscribers.

        Unknown field names raise ``TypeError``.  An update that changes
        nothing does not notify.
        """
        old = self._state
        new = replace(old, **changes)
        if new == old:
            return old
        self._state = new
        self._notify(old, new)
        return new

    def request_stop_speaking(self) -> bool:
        """Raise the stop-speaking request.

        Returns False if a request is already pending; pending requests
        are coalesced so the avatar honors them once.
        """
        if self._state.stop_avatar_speaking:
            return False
        self.update(stop_avatar_speaking=True)
        return True

    def acknowledge_stop_speaking(self, still_speaking: bool = False) -> None:
        """Clear a honored stop request.  Called only by the avatar session.

        ``still_speaking`` is True when speech started after the request
        is still playing.
        """
        self.update(stop_avatar_speaking=False, is_avatar_speaking=still_speaking)

    # -- history ------------------------------------------------------------

    @property
    def history(self) -> History:
        """Current history.  The tuple is immutable, so it doubles as a snapshot."""
        return self._history

    @property
    def history_version(self) -> int:
        return self._history_version

    def compare_and_set_history(self, expected_version: int, turns: Iterable[ChatTurn]) -> bool:
        """Replace the history only if nobody changed it since ``expected_version``."""
        if self._history_version != expected_version:
            return False
        capped = tuple(turns)[-self.history_limit:]
        self._history = capped
        self._history_version += 1
        return True

    def update_history(self, fn: Callable[[History], Sequence[ChatTurn]]) -> History:
        """Read-modify-write the history against its latest value.

        ``fn`` receives the current history and returns the new sequence;
        the FIFO cap is applied to the result.  Retries if the history
        moved underneath ``fn``.
        """
        for _ in range(_MAX_CAS_ATTEMPTS):
            version = self._history_version
            base = self._history
            if self.compare_and_set_history(version, fn(base)):
                return self._history
            logger.debug("History changed during update, retrying")
        raise RuntimeError("History update kept racing with concurrent writers")

    def append_turns(self, *turns: ChatTurn) -> History:
        return self.update_history(lambda current: (*current, *turns))

    def clear_history(self) -> None:
        self.update_history(lambda current: ())

    # -- subscription -------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a state listener.  Returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, old: ConversationState, new: ConversationState) -> None:
        for listener in list(self._listeners):
            try:
                listener(old, new)
            except Exception:
                logger.exception("Store listener %r failed", listener)
