"""Callback registry used by the transport and the connection.

Components own an ``EventHub`` instead of inheriting emitter behaviour, so
listener bookkeeping (and its cleanup on reconnect) stays explicit.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable

Handler = Callable[..., Any]


@dataclass
class _Listener:
    handler: Handler
    once: bool = False


class EventHub:
    """Named-event subscribe/publish registry.

    Handlers may be plain callables or coroutine functions; ``emit`` awaits
    coroutine handlers in registration order.
    """

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._listeners: dict[str, list[_Listener]] = {}
        self._logger = logger or logging.getLogger("cytube_bot.events")

    def on(self, event: str, handler: Handler | None = None):
        """Register ``handler`` for ``event``. Usable as a decorator."""
        if handler is None:
            def decorator(func: Handler) -> Handler:
                self._add(event, func, once=False)
                return func
            return decorator
        self._add(event, handler, once=False)
        return handler

    def once(self, event: str, handler: Handler) -> Handler:
        """Register ``handler`` to run at most once for ``event``."""
        self._add(event, handler, once=True)
        return handler

    def off(self, event: str, handler: Handler | None = None) -> None:
        """Remove ``handler`` from ``event``, or every handler if omitted."""
        if handler is None:
            self._listeners.pop(event, None)
            return
        remaining = [lst for lst in self._listeners.get(event, []) if lst.handler is not handler]
        if remaining:
            self._listeners[event] = remaining
        else:
            self._listeners.pop(event, None)

    def remove_all_listeners(self, event: str | None = None) -> None:
        if event is None:
            self._listeners.clear()
        else:
            self._listeners.pop(event, None)

    def listener_count(self, event: str | None = None) -> int:
        if event is None:
            return sum(len(v) for v in self._listeners.values())
        return len(self._listeners.get(event, []))

    def event_names(self) -> list[str]:
        return list(self._listeners)

    async def emit(self, event: str, *args: Any) -> int:
        """Dispatch ``event`` to its handlers. Returns the number invoked.

        One-shot listeners are removed before they run, so a re-entrant emit
        cannot fire them twice.
        """
        listeners = list(self._listeners.get(event, []))
        if not listeners:
            return 0

        for lst in listeners:
            if lst.once:
                self._discard(event, lst)

        called = 0
        for lst in listeners:
            called += 1
            try:
                result = lst.handler(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                self._logger.exception("Handler for '%s' raised", event)
        return called

    def _add(self, event: str, handler: Handler, once: bool) -> None:
        self._listeners.setdefault(event, []).append(_Listener(handler, once))

    def _discard(self, event: str, listener: _Listener) -> None:
        # Identity, so an on() of the same handler survives its once() twin
        remaining = [lst for lst in self._listeners.get(event, []) if lst is not listener]
        if remaining:
            self._listeners[event] = remaining
        else:
            self._listeners.pop(event, None)
