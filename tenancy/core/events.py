"""In-process event dispatch.

Models emit named events (``api.user.create`` ...) with positional payloads.
Subscribers are fire-and-forget: a failing handler is logged and never
interrupts the operation that emitted the event.
"""

import inspect
import logging
from collections import defaultdict
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

Handler = Callable[..., Any]

WILDCARD = "*"


class EventDispatcher:
    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)

    def subscribe(self, event: str, handler: Handler) -> None:
        """Register ``handler`` for ``event``.

        Handlers subscribed to ``"*"`` receive every event, with the event
        name prepended to the payload.
        """
        self._handlers[event].append(handler)

    async def emit(self, event: str, *payload: Any) -> None:
        """Call every handler for ``event``. Never raises."""
        for handler in self._handlers.get(event, []):
            await self._call(handler, event, payload)
        for handler in self._handlers.get(WILDCARD, []):
            await self._call(handler, event, (event, *payload))

    @staticmethod
    async def _call(handler: Handler, event: str, args: tuple) -> None:
        try:
            result = handler(*args)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Event handler failed for %s", event)
