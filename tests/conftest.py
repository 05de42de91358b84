from __future__ import annotations

import asyncio
import os
import tempfile
from typing import List, Optional, Tuple

import pytest

# mfagate.main builds its settings at import time
os.environ.setdefault("TRANSPORT", "emulated")
os.environ.setdefault("LOG_DIRECTORY", tempfile.mkdtemp(prefix="mfagate-logs-"))
os.environ.setdefault("EMULATOR__RESPONSE_DELAY_SECONDS", "0")

from mfagate.config import Settings
from mfagate.session_manager import SessionOrchestrator
from mfagate.store import SessionStore
from mfagate.transport import PeripheralSocket, Transport, TransportError


class FakeSocket(PeripheralSocket):
    """Scripted peripheral: tests push lines, EOF or read errors."""

    def __init__(self, device_name: Optional[str] = "HC-05") -> None:
        super().__init__(device_name)
        self.written: List[bytes] = []
        self.closed = False
        self.write_error: Optional[Exception] = None
        self._connected = True
        self._incoming: asyncio.Queue = asyncio.Queue()

    @property
    def is_connected(self) -> bool:
        return self._connected

    def feed(self, line: str) -> None:
        self._incoming.put_nowait(line)

    def end_of_stream(self) -> None:
        self._incoming.put_nowait(None)

    def fail_read(self, exc: Exception) -> None:
        self._incoming.put_nowait(exc)

    async def readline(self) -> Optional[str]:
        item = await self._incoming.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def write(self, data: bytes) -> None:
        if self.write_error is not None:
            raise self.write_error
        self.written.append(data)

    async def close(self) -> None:
        self.closed = True
        self._connected = False
        self._incoming.put_nowait(TransportError("socket closed"))


class FakeTransport(Transport):
    def __init__(
        self,
        *,
        available: bool = True,
        device_name: Optional[str] = "HC-05",
        open_error: Optional[Exception] = None,
    ) -> None:
        super().__init__()
        self.available = available
        self.device_name = device_name
        self.open_error = open_error
        self.opened: List[Tuple[str, str]] = []
        self.sockets: List[FakeSocket] = []
        self.discovering = False
        self.discovery_cancelled = 0

    def is_available(self) -> bool:
        return self.available

    async def open(self, address: str, service_uuid: str) -> PeripheralSocket:
        self.opened.append((address, service_uuid))
        if self.open_error is not None:
            raise self.open_error
        socket = FakeSocket(self.device_name)
        self.sockets.append(socket)
        return socket

    @property
    def last_socket(self) -> FakeSocket:
        return self.sockets[-1]

    @property
    def is_discovering(self) -> bool:
        return self.discovering

    async def start_discovery(self) -> bool:
        self.discovering = True
        return True

    async def cancel_discovery(self) -> None:
        self.discovering = False
        self.discovery_cancelled += 1

    async def announce(self, address: str, name: Optional[str]) -> None:
        await self._report_device(address, name)


async def settle(rounds: int = 10) -> None:
    """Let background tasks (connect, read loop) run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture()
def settings(tmp_path) -> Settings:
    return Settings(_env_file=None, transport="emulated", log_directory=tmp_path)


@pytest.fixture()
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture()
def store() -> SessionStore:
    return SessionStore()


@pytest.fixture()
def orchestrator(transport: FakeTransport, settings: Settings) -> SessionOrchestrator:
    return SessionOrchestrator(transport, settings=settings)
