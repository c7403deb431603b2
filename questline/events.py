"""Engine → outside world notifications.

Events and their handler arguments:

    scene_token      (session_key, text)                    incremental text
    scene_committed  (session_key, scene)                   parsed + validated
    save_status      (session_key, status, error)           queued/saved/failed
    progress         (session_key, choice_text, history_len, committed)

Handlers run synchronously in the emitting coroutine. A failing handler is
logged and does not affect the engine or the other handlers.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from typing import Any, Literal

logger = logging.getLogger(__name__)

EventName = Literal["scene_token", "scene_committed", "save_status", "progress"]
Handler = Callable[..., Any]


class EventHub:
    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)

    def subscribe(self, event: EventName, handler: Handler) -> Callable[[], None]:
        """Register a handler. Returns a function that unsubscribes it."""
        self._handlers[event].append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers[event]:
                self._handlers[event].remove(handler)

        return unsubscribe

    def emit(self, event: EventName, *args: Any) -> None:
        for handler in list(self._handlers.get(event, ())):
            try:
                handler(*args)
            except Exception:
                logger.exception("Handler for %s failed", event)
