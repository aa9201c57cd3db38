"""Two-way event bus: subscribers can answer back to the publisher.

Usage:
    bus = EventBus()

    bus.on("roll-call", lambda event: "Jane")

    async def late(event):
        await asyncio.sleep(0.1)
        return "John"

    bus.on("roll-call", late)

    await bus.all("roll-call")          # ["Jane", "John"]
    await bus.race("roll-call")         # "Jane"
    bus.emit("roll-call", {"room": 4})  # fire-and-forget

    # Forward "roll-call" from another bus, keeping its dispatch mode.
    filter_bus = EventBus()
    filter_bus.relay_on(bus, "roll-call")
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
import inspect
import logging
from typing import Any, Protocol
import weakref

from .events import DispatchMode, Event, RelayBundle
from .exceptions import RelaySourceError
from .task_manager import TaskManager

LOGGER = logging.getLogger(__name__)

Handler = Callable[[Event], Any]


class EventSource(Protocol):
    """Minimal capability a relay source must offer."""

    def on(self, event_type: str, handler: Callable[[Any], Any]) -> Any: ...

    def off(self, event_type: str, handler: Callable[[Any], Any]) -> Any: ...


def _require_source(source: Any) -> None:
    for attribute in ("on", "off"):
        if not callable(getattr(source, attribute, None)):
            raise RelaySourceError(
                f"Relay source {source!r} must provide a callable {attribute}()."
            )


@dataclass
class _RelayEntry:
    """Forwarding listeners a bus installed on one relay source."""

    source: Callable[[], Any]
    listeners: dict[str, Callable[[Any], Any]] = field(default_factory=dict)
    finalizer: weakref.finalize | None = None


async def _settle(outcome: Any) -> Any:
    if inspect.isawaitable(outcome):
        return await outcome
    return outcome


def _as_future(outcome: Any) -> asyncio.Future[Any]:
    if inspect.isawaitable(outcome):
        return asyncio.ensure_future(outcome)
    future = asyncio.get_running_loop().create_future()
    future.set_result(outcome)
    return future


class EventBus:
    """Publish/subscribe hub with fire-and-forget, race and collect-all dispatch.

    Handlers receive a single :class:`Event` and may return a plain value or
    an awaitable. Every dispatch works on a copy of the subscriber list taken
    when the call is made, so subscribing or unsubscribing from inside a
    handler never disturbs an in-flight fan-out.

    All dispatch methods must be called while an asyncio event loop is
    running.
    """

    def __init__(
        self, name: str | None = None, *, log_subscriber_errors: bool = True
    ) -> None:
        self.name = name
        self._log_subscriber_errors = log_subscriber_errors
        self._listeners: dict[str, list[Handler]] = {}
        # Keyed by id(source); entries never own a weakly referenceable source.
        self._relays: dict[int, _RelayEntry] = {}
        self._tasks = TaskManager(
            owner=name or "bus", log_exceptions=log_subscriber_errors
        )

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> EventBus:
        """Build a bus from the ``bus`` section of a loaded configuration."""
        section = config.get("bus") or {}
        return cls(
            name=section.get("name") or None,
            log_subscriber_errors=bool(section.get("log_subscriber_errors", True)),
        )

    # -- registry ---------------------------------------------------------

    def on(
        self,
        event_type: str | Mapping[str, Handler],
        handler: Handler | None = None,
    ) -> None:
        """Subscribe ``handler`` to ``event_type``.

        Args:
            event_type: Event name, or a mapping of event name -> handler which
                is applied in iteration order.
            handler: Callable receiving the :class:`Event`. Registering the
                same handler twice makes it run twice.
        """
        if isinstance(event_type, Mapping):
            if handler is not None:
                raise TypeError("A bindings mapping does not take a separate handler.")
            for name, bound in event_type.items():
                self.on(name, bound)
            return
        if not isinstance(event_type, str):
            raise TypeError(
                f"event_type must be a string or a mapping, not {type(event_type).__name__}."
            )
        if not callable(handler):
            raise TypeError(f"Handler for {event_type!r} must be callable.")
        self._listeners.setdefault(event_type, []).append(handler)
        LOGGER.debug(
            "bus.subscribe",
            extra={"event": "bus.subscribe", "bus": self.name, "event_type": event_type},
        )

    def off(self, event_type: str, handler: Handler | None = None) -> bool:
        """Unsubscribe from ``event_type``.

        With ``handler`` the first registration of that very object (compared
        by identity) is removed; without it every registration for the type
        is dropped. Returns whether anything was removed.
        """
        listeners = self._listeners.get(event_type)
        if listeners is None:
            return False
        if handler is None:
            del self._listeners[event_type]
            return bool(listeners)
        index = next(
            (i for i, listener in enumerate(listeners) if listener is handler), None
        )
        if index is None:
            return False
        del listeners[index]
        if not listeners:
            del self._listeners[event_type]
        LOGGER.debug(
            "bus.unsubscribe",
            extra={"event": "bus.unsubscribe", "bus": self.name, "event_type": event_type},
        )
        return True

    def clear(self, event_type: str | None = None) -> None:
        """Drop the subscribers of one event type, or of every type."""
        if event_type is not None:
            self._listeners.pop(event_type, None)
        else:
            self._listeners.clear()

    def listener_count(self, event_type: str) -> int:
        return len(self._listeners.get(event_type, ()))

    def event_types(self) -> list[str]:
        return list(self._listeners)

    def _snapshot(self, event_type: str) -> list[Handler]:
        return list(self._listeners.get(event_type, ()))

    # -- dispatch ---------------------------------------------------------

    def emit(self, event_type: str, data: Any = None) -> asyncio.Task[None]:
        """Notify every subscriber without collecting results.

        The fan-out runs in a new task, so no subscriber executes inside the
        caller's own call stack. The returned task may be awaited to wait until
        every subscriber has been invoked; awaitables returned by subscribers
        are left running in the background.
        """
        event = Event(event_type, DispatchMode.EMIT, data)
        listeners = self._snapshot(event_type)
        return self._tasks.spawn(
            self._notify(event, listeners), name=f"emit:{event_type}"
        )

    async def _notify(self, event: Event, listeners: list[Handler]) -> None:
        for listener in listeners:
            try:
                outcome = listener(event)
            except Exception as exc:
                self._report_failure(event, exc)
                continue
            if inspect.isawaitable(outcome):
                self._tasks.track(outcome)

    async def race(self, event_type: str, data: Any = None) -> Any:
        """Return the first settled subscriber outcome.

        A failure that settles first is raised to the caller. A subscriber
        that raises synchronously settles immediately with ``None``. Losing
        subscribers are not cancelled. Returns ``None`` when nobody listens.
        """
        listeners = self._snapshot(event_type)
        if not listeners:
            return None
        event = Event(event_type, DispatchMode.RACE, data)
        futures = [_as_future(outcome) for outcome in self._invoke(event, listeners)]
        winner: asyncio.Future[Any] | None = None
        try:
            await asyncio.wait(futures, return_when=asyncio.FIRST_COMPLETED)
            # Among outcomes settled by now, registration order decides.
            winner = next(future for future in futures if future.done())
            return winner.result()
        finally:
            for future in futures:
                if future is not winner:
                    self._tasks.track(future)

    async def all(self, event_type: str, data: Any = None) -> list[Any]:
        """Collect one result per subscriber, in registration order.

        Synchronous failures become ``None`` slots. Failures of returned
        awaitables are not downgraded: the first one is raised. Results
        relayed from other buses are flattened into the list.
        """
        listeners = self._snapshot(event_type)
        if not listeners:
            return []
        event = Event(event_type, DispatchMode.ALL, data)
        settled = await asyncio.gather(
            *(_settle(outcome) for outcome in self._invoke(event, listeners))
        )
        results: list[Any] = []
        for item in settled:
            if isinstance(item, RelayBundle):
                results.extend(item.results)
            else:
                results.append(item)
        return results

    def _invoke(self, event: Event, listeners: list[Handler]) -> list[Any]:
        outcomes: list[Any] = []
        for listener in listeners:
            try:
                outcomes.append(listener(event))
            except Exception as exc:
                self._report_failure(event, exc)
                outcomes.append(None)
        return outcomes

    def _report_failure(self, event: Event, exc: Exception) -> None:
        if not self._log_subscriber_errors:
            return
        LOGGER.warning(
            "bus.subscriber.error",
            extra={
                "event": "bus.subscriber.error",
                "bus": self.name,
                "event_type": event.type,
                "mode": event.mode.value,
                "error_type": type(exc).__name__,
                "error": str(exc),
            },
        )

    # -- relays -----------------------------------------------------------

    def relay_on(self, source: EventSource, *event_types: str) -> None:
        """Forward ``event_types`` dispatched on ``source`` to this bus.

        The dispatch mode of the upstream event is reproduced locally, so an
        upstream ``race`` or ``all`` also sees this bus's subscribers. Values
        that are not :class:`Event` instances are forwarded with ``emit``.
        Relaying a type that is already relayed from ``source`` replaces the
        previous forwarding listener.
        """
        _require_source(source)
        key = id(source)
        entry = self._relays.get(key)
        if entry is None:
            entry = self._relays[key] = self._track_source(source)
        try:
            for event_type in event_types:
                previous = entry.listeners.pop(event_type, None)
                if previous is not None:
                    source.off(event_type, previous)
                listener = self._relay_listener(event_type)
                source.on(event_type, listener)
                entry.listeners[event_type] = listener
                LOGGER.debug(
                    "bus.relay.on",
                    extra={"event": "bus.relay.on", "bus": self.name, "event_type": event_type},
                )
        finally:
            if not entry.listeners:
                self._drop_relay(key)

    def relay_off(self, source: EventSource, *event_types: str) -> None:
        """Stop forwarding ``event_types`` (or every relayed type) from ``source``."""
        _require_source(source)
        key = id(source)
        entry = self._relays.get(key)
        if entry is None:
            return
        try:
            for event_type in event_types or list(entry.listeners):
                listener = entry.listeners.pop(event_type, None)
                if listener is None:
                    continue
                source.off(event_type, listener)
                LOGGER.debug(
                    "bus.relay.off",
                    extra={"event": "bus.relay.off", "bus": self.name, "event_type": event_type},
                )
        finally:
            if not entry.listeners:
                self._drop_relay(key)

    def relayed_types(self, source: EventSource) -> list[str]:
        entry = self._relays.get(id(source))
        return list(entry.listeners) if entry is not None else []

    def _track_source(self, source: Any) -> _RelayEntry:
        try:
            ref = weakref.ref(source)
        except TypeError:
            # Not weakly referenceable: held until relay_off releases it.
            return _RelayEntry(source=lambda: source)
        finalizer = weakref.finalize(source, self._relays.pop, id(source), None)
        finalizer.atexit = False
        return _RelayEntry(source=ref, finalizer=finalizer)

    def _drop_relay(self, key: int) -> None:
        entry = self._relays.pop(key, None)
        if entry is not None and entry.finalizer is not None:
            entry.finalizer.detach()

    def _relay_listener(self, event_type: str) -> Callable[[Any], Any]:
        def forward(incoming: Any) -> Any:
            if isinstance(incoming, Event):
                mode, data = incoming.mode, incoming.data
            else:
                mode, data = DispatchMode.EMIT, incoming
            if mode == DispatchMode.ALL:
                return self._collect_for_relay(event_type, data)
            if mode == DispatchMode.RACE:
                return self.race(event_type, data)
            self.emit(event_type, data)
            return None

        return forward

    async def _collect_for_relay(self, event_type: str, data: Any) -> RelayBundle:
        return RelayBundle(tuple(await self.all(event_type, data)))

    # -- lifecycle --------------------------------------------------------

    async def drain(self) -> None:
        """Wait for every background fan-out and subscriber awaitable to finish."""
        await self._tasks.drain()

    async def aclose(self) -> None:
        """Cancel outstanding background work and drop all relays and subscribers."""
        await self._tasks.cancel_all()
        for entry in list(self._relays.values()):
            source = entry.source()
            if source is not None:
                self.relay_off(source)
        self._listeners.clear()
