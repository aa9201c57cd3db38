"""Domain exception hierarchy for the two-way event bus."""

from __future__ import annotations


class TwoWayBusError(RuntimeError):
    """Base class for all domain-level bus errors."""


class RelaySourceError(TwoWayBusError):
    """Raised when a relay source does not provide ``on``/``off`` or cannot be tracked."""


class ConfigValidationError(TwoWayBusError):
    """Raised when configuration cannot be validated safely."""
