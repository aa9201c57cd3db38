"""Top-level package for twowaybus."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from .bus import EventBus, EventSource
from .events import DispatchMode, Event, RelayBundle
from .exceptions import ConfigValidationError, RelaySourceError, TwoWayBusError

if TYPE_CHECKING:
    from .config import load_config
    from .logging_utils import configure_logging

__all__ = [
    "ConfigValidationError",
    "DispatchMode",
    "Event",
    "EventBus",
    "EventSource",
    "RelayBundle",
    "RelaySourceError",
    "TwoWayBusError",
    "configure_logging",
    "load_config",
]


def __getattr__(name: str) -> Any:
    """Lazily import helpers so pydantic and structlog load only when used."""
    if name == "load_config":
        from .config import load_config

        return load_config
    if name == "configure_logging":
        from .logging_utils import configure_logging

        return configure_logging
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
