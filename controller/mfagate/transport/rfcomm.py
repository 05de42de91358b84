"""Classic Bluetooth RFCOMM (SPP) transport built on pybluez."""
from __future__ import annotations

import asyncio
import functools
import logging
import socket
from typing import Any, Dict, Optional

from ..protocol import ENCODING
from .base import PeripheralSocket, Transport, TransportError, TransportUnavailableError

logger = logging.getLogger(__name__)

_pybluez: Any = None


def load_pybluez() -> Any:
    """
    Import pybluez on first use.

    pybluez needs the BlueZ headers to build, so it ships as the optional
    ``bluetooth`` extra. Without it the transport reports itself unavailable.
    """
    global _pybluez

    if _pybluez is None:
        try:
            import bluetooth
        except ImportError:
            logger.info("pybluez not installed - RFCOMM transport disabled (pip install 'mfagate-controller[bluetooth]')")
            return None
        _pybluez = bluetooth
        logger.info("pybluez loaded (classic Bluetooth RFCOMM enabled)")
    return _pybluez


class RfcommSocket(PeripheralSocket):
    """Line reader/writer over a connected RFCOMM stream socket."""

    def __init__(self, sock: Any, *, device_name: Optional[str] = None, chunk_size: int = 256) -> None:
        super().__init__(device_name)
        self._sock = sock
        self._chunk_size = chunk_size
        self._buffer = bytearray()
        self._connected = True

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def readline(self) -> Optional[str]:
        loop = asyncio.get_running_loop()
        while True:
            idx = self._buffer.find(b"\n")
            if idx >= 0:
                raw = bytes(self._buffer[:idx])
                del self._buffer[: idx + 1]
                return raw.decode(ENCODING, errors="replace").rstrip("\r")

            try:
                chunk = await loop.run_in_executor(None, self._sock.recv, self._chunk_size)
            except OSError as exc:
                self._connected = False
                raise TransportError(exc.strerror or str(exc)) from exc

            if not chunk:
                self._connected = False
                if self._buffer:
                    raw = bytes(self._buffer)
                    self._buffer.clear()
                    return raw.decode(ENCODING, errors="replace").rstrip("\r")
                return None
            self._buffer.extend(chunk)

    async def write(self, data: bytes) -> None:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._sock.sendall, data)
        except OSError as exc:
            raise TransportError(exc.strerror or str(exc)) from exc

    async def close(self) -> None:
        self._connected = False
        # shutdown wakes a recv blocked in the executor; close alone does not
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self._sock.close()


class RfcommTransport(Transport):
    """
    Opens RFCOMM sockets by MAC address through pybluez.

    The RFCOMM channel is resolved with an SDP query for the service UUID.
    When the module does not answer SDP the configured channel is used
    (HC-05 modules listen on channel 1). Discovery runs a blocking inquiry
    in the executor and reports every device it finds.
    """

    def __init__(self, *, channel: int = 1, chunk_size: int = 256, discovery_seconds: int = 8) -> None:
        super().__init__()
        self.channel = channel
        self.chunk_size = chunk_size
        self.discovery_seconds = discovery_seconds
        self._names: Dict[str, Optional[str]] = {}
        self._discovery_task: Optional[asyncio.Task[None]] = None

    def is_available(self) -> bool:
        return load_pybluez() is not None

    async def open(self, address: str, service_uuid: str) -> PeripheralSocket:
        bluetooth = load_pybluez()
        if bluetooth is None:
            raise TransportUnavailableError("pybluez is not installed")

        loop = asyncio.get_running_loop()
        channel = await loop.run_in_executor(None, self._resolve_channel, bluetooth, address, service_uuid)
        logger.info("Opening RFCOMM socket to %s (service %s, channel %d)", address, service_uuid, channel)

        try:
            sock = bluetooth.BluetoothSocket(bluetooth.RFCOMM)
        except OSError as exc:
            raise TransportError(exc.strerror or str(exc)) from exc
        try:
            await loop.run_in_executor(None, sock.connect, (address, channel))
        except OSError as exc:
            sock.close()
            raise TransportError(exc.strerror or str(exc)) from exc
        except BaseException:
            sock.close()
            raise

        return RfcommSocket(sock, device_name=self._names.get(address.upper()), chunk_size=self.chunk_size)

    def _resolve_channel(self, bluetooth: Any, address: str, service_uuid: str) -> int:
        try:
            services = bluetooth.find_service(uuid=service_uuid, address=address)
        except OSError as exc:
            logger.warning("SDP lookup on %s failed (%s); using channel %d", address, exc, self.channel)
            return self.channel
        for service in services:
            port = service.get("port")
            if port:
                return int(port)
        logger.info("No SDP record for %s on %s; using channel %d", service_uuid, address, self.channel)
        return self.channel

    @property
    def is_discovering(self) -> bool:
        return self._discovery_task is not None and not self._discovery_task.done()

    async def start_discovery(self) -> bool:
        bluetooth = load_pybluez()
        if bluetooth is None:
            return False
        if self.is_discovering:
            return True
        self._discovery_task = asyncio.create_task(self._discover(bluetooth), name="rfcomm-discovery")
        return True

    async def cancel_discovery(self) -> None:
        task, self._discovery_task = self._discovery_task, None
        # a listener may cancel from inside the discovery task itself
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _discover(self, bluetooth: Any) -> None:
        loop = asyncio.get_running_loop()
        inquiry = functools.partial(bluetooth.discover_devices, duration=self.discovery_seconds, lookup_names=True)
        try:
            devices = await loop.run_in_executor(None, inquiry)
        except OSError as exc:
            logger.warning("Bluetooth inquiry failed: %s", exc)
            self._discovery_task = None
            return

        logger.info("Inquiry found %d device(s)", len(devices))
        for address, name in devices:
            self._names[address.upper()] = name
            await self._report_device(address, name)
            if self._discovery_task is not asyncio.current_task():
                return
        self._discovery_task = None


__all__ = ["RfcommSocket", "RfcommTransport", "load_pybluez"]
