"""
Publish/subscribe event bus.

Handlers never run inside ``emit``: while an asyncio loop is running, plain
callables are scheduled with ``call_soon`` and coroutine handlers become
tasks. Without a running loop handlers are invoked in order after the
emitter's bookkeeping, and failures are logged rather than raised.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Set

from .models import now_ms

logger = logging.getLogger(__name__)

WILDCARD = "*"

EventHandler = Callable[["Event"], Any]


@dataclass
class Event:
    """A named notification with a structured payload."""
    name: str
    payload: Any = None
    emitter: str = ""
    timestamp: int = field(default_factory=now_ms)


class EventBus:
    """
    Observer list keyed by event name.

    Subscribing to ``"*"`` receives every event, which is how the
    orchestrator re-emits the events of its components.
    """

    def __init__(self, name: str):
        self.name = name
        self._handlers: Dict[str, List[EventHandler]] = {}
        self._pending: Set[asyncio.Task] = set()

    def subscribe(self, event_name: str, handler: EventHandler) -> Callable[[], None]:
        """Register ``handler``; returns a callable that unsubscribes it."""
        self._handlers.setdefault(event_name, []).append(handler)

        def unsubscribe() -> None:
            self.unsubscribe(event_name, handler)

        return unsubscribe

    def unsubscribe(self, event_name: str, handler: EventHandler) -> None:
        handlers = self._handlers.get(event_name, [])
        if handler in handlers:
            handlers.remove(handler)

    def clear(self) -> None:
        self._handlers.clear()

    def subscriber_count(self, event_name: str) -> int:
        return len(self._handlers.get(event_name, []))

    def emit(self, event_name: str, payload: Any = None) -> int:
        """
        Publish an event.

        Args:
            event_name: Event name
            payload: Structured payload delivered to handlers

        Returns:
            Number of handlers the event was dispatched to
        """
        handlers = list(self._handlers.get(event_name, []))
        if event_name != WILDCARD:
            handlers.extend(self._handlers.get(WILDCARD, []))
        if not handlers:
            return 0

        event = Event(name=event_name, payload=payload, emitter=self.name)

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        for handler in handlers:
            if loop is None:
                self._invoke(handler, event)
            elif inspect.iscoroutinefunction(handler):
                task = loop.create_task(self._invoke_async(handler, event))
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)
            else:
                loop.call_soon(self._invoke, handler, event)

        return len(handlers)

    def _invoke(self, handler: EventHandler, event: Event) -> None:
        try:
            result = handler(event)
            if inspect.iscoroutine(result):
                self._run_coroutine(result, event)
        except Exception as e:
            logger.error(
                f"[{self.name}] Handler for '{event.name}' failed: {e}",
                exc_info=True,
            )

    def _run_coroutine(self, coro, event: Event) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(coro)
            return
        task = loop.create_task(self._await_logged(coro, event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _await_logged(self, coro, event: Event) -> None:
        try:
            await coro
        except Exception as e:
            logger.error(
                f"[{self.name}] Coroutine returned by handler for '{event.name}' failed: {e}",
                exc_info=True,
            )

    async def _invoke_async(self, handler: EventHandler, event: Event) -> None:
        try:
            await handler(event)
        except Exception as e:
            logger.error(
                f"[{self.name}] Async handler for '{event.name}' failed: {e}",
                exc_info=True,
            )
