"""In-process stand-in for the HC-05 + Arduino peripheral."""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Optional

from ..protocol import ENCODING
from .base import PeripheralSocket, Transport

logger = logging.getLogger(__name__)


class EmulatedPeripheralSocket(PeripheralSocket):
    """
    Answers each ``{"biometric": ...}`` line with a decision line.

    ``"ok"`` is allowed, anything else denied; session ids count up from 1
    per connection. Other packets are accepted silently.
    """

    def __init__(self, *, device_name: Optional[str] = None, response_delay: float = 0.0) -> None:
        super().__init__(device_name)
        self.response_delay = response_delay
        self.received: list[str] = []
        self._outgoing: asyncio.Queue[Optional[str]] = asyncio.Queue()
        self._connected = True
        self._next_session_id = 1
        self._pending = b""

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def readline(self) -> Optional[str]:
        if not self._connected and self._outgoing.empty():
            return None
        return await self._outgoing.get()

    async def write(self, data: bytes) -> None:
        self._pending += data
        *lines, self._pending = self._pending.split(b"\n")
        for raw in lines:
            line = raw.decode(ENCODING).strip()
            self.received.append(line)
            response = self._respond(line)
            if response is not None:
                asyncio.get_running_loop().call_later(self.response_delay, self._outgoing.put_nowait, response)

    async def close(self) -> None:
        if self._connected:
            self._connected = False
            self._outgoing.put_nowait(None)

    def _respond(self, line: str) -> Optional[str]:
        try:
            packet = json.loads(line)
        except ValueError:
            logger.debug("Emulated peripheral ignoring %r", line)
            return None
        if not isinstance(packet, dict) or "biometric" not in packet:
            return None

        session_id = self._next_session_id
        self._next_session_id += 1
        result = "allow" if packet["biometric"] == "ok" else "deny"
        return json.dumps({"session_id": session_id, "result": result})


class EmulatedTransport(Transport):
    def __init__(
        self,
        *,
        device_name: str = "HC-05",
        address: str = "98:D3:31:F5:2A:10",
        response_delay: float = 0.0,
    ) -> None:
        super().__init__()
        self.device_name = device_name
        self.address = address
        self.response_delay = response_delay
        self.last_socket: Optional[EmulatedPeripheralSocket] = None
        self._discovering = False
        self._announce_task: Optional[asyncio.Task[None]] = None

    def is_available(self) -> bool:
        return True

    async def open(self, address: str, service_uuid: str) -> PeripheralSocket:
        logger.info("Emulated peripheral accepting %s (service %s)", address, service_uuid)
        self.last_socket = EmulatedPeripheralSocket(
            device_name=self.device_name, response_delay=self.response_delay
        )
        return self.last_socket

    @property
    def is_discovering(self) -> bool:
        return self._discovering

    async def start_discovery(self) -> bool:
        self._discovering = True
        self._announce_task = asyncio.create_task(self._announce(), name="emulated-discovery")
        return True

    async def _announce(self) -> None:
        await asyncio.sleep(0)
        if self._discovering:
            await self._report_device(self.address, self.device_name)

    async def cancel_discovery(self) -> None:
        self._discovering = False


__all__ = ["EmulatedPeripheralSocket", "EmulatedTransport"]
