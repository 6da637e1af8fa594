"""
auth/events.py -- Commit notifications for auth-token changes.

Pattern: Observer. The store owns one CommitEvents instance and emits a
TokenEvent for every auth_tokens insert/update/delete, but only after the
transaction that made the change has committed. Listeners are registered on
that instance explicitly; there is no module-level hook registry.

Delivery is synchronous and in subscription order. A failing listener is
logged and skipped -- the commit it is reporting on has already happened.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger("signin.auth.events")


class TokenEventKind(str, Enum):
    inserted = "inserted"
    updated = "updated"
    deleted = "deleted"


@dataclass(frozen=True)
class TokenEvent:
    kind: TokenEventKind
    user_id: int | None
    token_id: int | None


TokenListener = Callable[[TokenEvent], None]


class CommitEvents:
    """Synchronous, post-commit event emitter.

    Usage:
        events = CommitEvents()
        events.subscribe(lambda e: print(e.kind))
        events.emit(TokenEvent(TokenEventKind.inserted, user_id=1, token_id=7))
    """

    def __init__(self) -> None:
        self._listeners: list[TokenListener] = []

    def subscribe(self, listener: TokenListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: TokenListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def emit(self, event: TokenEvent) -> None:
        # Copy so a listener may unsubscribe itself during delivery.
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Commit listener %r failed on %s event", listener, event.kind.value)
