"""Event records passed to subscribers and returned through relays."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class DispatchMode(str, Enum):
    """How an event was dispatched and what the publisher expects back."""

    EMIT = "emit"
    RACE = "race"
    ALL = "all"


@dataclass(frozen=True)
class Event:
    """Immutable event handed to every subscriber of a single dispatch."""

    type: str
    mode: DispatchMode
    data: Any = None


@dataclass(frozen=True)
class RelayBundle:
    """Results gathered by a downstream bus on behalf of an upstream ``all``.

    An upstream collector splices ``results`` into its own output in place of
    the single slot the relay listener occupies. Any other value returned by a
    subscriber counts as exactly one slot.
    """

    results: tuple[Any, ...] = ()
