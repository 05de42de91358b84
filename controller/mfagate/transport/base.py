"""Abstract byte-stream transport keyed by a peripheral address."""
from __future__ import annotations

import abc
import logging
from collections.abc import Awaitable, Callable
from typing import Optional

logger = logging.getLogger(__name__)

# Called with (address, advertised name) whenever a scan reports a device.
DiscoveryListener = Callable[[str, Optional[str]], Awaitable[None]]


class TransportError(RuntimeError):
    """Raised when opening, reading or writing the peripheral link fails."""


class TransportUnavailableError(TransportError):
    """Raised when the host has no usable adapter for this transport."""


class PeripheralSocket(abc.ABC):
    """One open stream to the peripheral. Lines are UTF-8, newline-terminated."""

    def __init__(self, device_name: Optional[str] = None) -> None:
        self.device_name = device_name

    @property
    @abc.abstractmethod
    def is_connected(self) -> bool:
        ...

    @abc.abstractmethod
    async def readline(self) -> Optional[str]:
        """Next line without its terminator, or None at end of stream."""

    @abc.abstractmethod
    async def write(self, data: bytes) -> None:
        """Write raw bytes and flush."""

    @abc.abstractmethod
    async def close(self) -> None:
        """Close the stream; must unblock a pending readline."""


class Transport(abc.ABC):
    """Factory for peripheral sockets plus an optional discovery side-channel."""

    def __init__(self) -> None:
        self._discovery_listener: Optional[DiscoveryListener] = None

    @abc.abstractmethod
    def is_available(self) -> bool:
        ...

    @abc.abstractmethod
    async def open(self, address: str, service_uuid: str) -> PeripheralSocket:
        ...

    @property
    def is_discovering(self) -> bool:
        return False

    def set_discovery_listener(self, listener: Optional[DiscoveryListener]) -> None:
        self._discovery_listener = listener

    async def start_discovery(self) -> bool:
        """Begin scanning; returns False when the transport cannot scan."""
        return False

    async def cancel_discovery(self) -> None:
        return None

    async def _report_device(self, address: str, name: Optional[str]) -> None:
        listener = self._discovery_listener
        if listener is None:
            return
        try:
            await listener(address, name)
        except Exception:
            logger.exception("Discovery listener failed")


__all__ = [
    "DiscoveryListener",
    "TransportError",
    "TransportUnavailableError",
    "PeripheralSocket",
    "Transport",
]
