"""Transports that carry the line-oriented link to the peripheral."""
from __future__ import annotations

from .base import (
    DiscoveryListener,
    PeripheralSocket,
    Transport,
    TransportError,
    TransportUnavailableError,
)

__all__ = [
    "DiscoveryListener",
    "PeripheralSocket",
    "Transport",
    "TransportError",
    "TransportUnavailableError",
]
