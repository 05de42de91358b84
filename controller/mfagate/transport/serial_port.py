"""pyserial transport for peripherals bound to a tty (``rfcomm bind``) or any pyserial URL."""
from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional

import serial

from ..protocol import ENCODING
from .base import PeripheralSocket, Transport, TransportError, TransportUnavailableError

logger = logging.getLogger(__name__)


class SerialPeripheralSocket(PeripheralSocket):
    def __init__(self, port: serial.SerialBase, *, device_name: Optional[str] = None) -> None:
        super().__init__(device_name)
        self._port = port
        self._buffer = bytearray()

    @property
    def is_connected(self) -> bool:
        return self._port.is_open

    async def readline(self) -> Optional[str]:
        loop = asyncio.get_running_loop()
        # readline returns early on the port timeout; keep polling until a
        # full line arrives or the port is closed underneath us
        while self._port.is_open:
            try:
                chunk = await loop.run_in_executor(None, self._port.readline)
            except (serial.SerialException, OSError, TypeError) as exc:
                if not self._port.is_open:
                    return None
                raise TransportError(str(exc)) from exc
            if not chunk:
                continue
            self._buffer.extend(chunk)
            if self._buffer.endswith(b"\n"):
                raw = bytes(self._buffer[:-1])
                self._buffer.clear()
                return raw.decode(ENCODING, errors="replace").rstrip("\r")
        return None

    async def write(self, data: bytes) -> None:
        loop = asyncio.get_running_loop()

        def _write() -> None:
            self._port.write(data)
            self._port.flush()

        try:
            await loop.run_in_executor(None, _write)
        except (serial.SerialException, OSError) as exc:
            raise TransportError(str(exc)) from exc

    async def close(self) -> None:
        self._port.close()


class SerialTransport(Transport):
    """Maps peripheral addresses to serial device paths and opens them."""

    def __init__(
        self,
        ports: Dict[str, str],
        *,
        baudrate: int = 9600,
        timeout: float = 0.5,
        device_name: Optional[str] = None,
    ) -> None:
        super().__init__()
        self.ports = {address.strip().upper(): path for address, path in ports.items()}
        self.baudrate = baudrate
        self.timeout = timeout
        self.device_name = device_name

    def is_available(self) -> bool:
        return bool(self.ports)

    async def open(self, address: str, service_uuid: str) -> PeripheralSocket:
        if not self.is_available():
            raise TransportUnavailableError("No serial ports configured")
        path = self.ports.get(address.upper())
        if path is None:
            raise TransportError(f"No serial port mapped for {address}")

        logger.info("Opening serial port %s for %s at %d baud", path, address, self.baudrate)
        loop = asyncio.get_running_loop()
        try:
            port = await loop.run_in_executor(
                None, lambda: serial.serial_for_url(path, baudrate=self.baudrate, timeout=self.timeout)
            )
        except (serial.SerialException, OSError) as exc:
            raise TransportError(str(exc)) from exc

        return SerialPeripheralSocket(port, device_name=self.device_name)


__all__ = ["SerialPeripheralSocket", "SerialTransport"]
