"""In-process event bus with idempotent delivery."""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Awaitable, Callable

from forkcascade.core.log import logger

Handler = Callable[[object], Awaitable[None]]


class EventBus:
    """Named event types, async handlers, at-most-once per dedupe key.

    A key is only remembered once every handler has succeeded, so a
    failed delivery can be published again.
    """

    def __init__(self):
        self._handlers: dict[type, list[Handler]] = defaultdict(list)
        self._delivered: set[str] = set()
        self.published: list = []

    def subscribe(self, event_type: type, handler: Handler) -> None:
        self._handlers[event_type].append(handler)

    def seen(self, event) -> bool:
        return event.dedupe_key in self._delivered

    async def publish(self, event) -> bool:
        """Deliver event to its handlers; False if it was a duplicate."""
        key = event.dedupe_key
        if key in self._delivered:
            logger.debug(f"Dropping duplicate event {key}")
            return False

        handlers = self._handlers.get(type(event), [])
        logger.info(
            f"Publishing {event.kind}",
            event=key,
            handlers=len(handlers),
        )
        self._delivered.add(key)
        try:
            for handler in handlers:
                await handler(event)
        except Exception:
            self._delivered.discard(key)
            raise
        self.published.append(event)
        return True
