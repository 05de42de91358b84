"""Peripheral connection lifecycle: connect, read loop, write, disconnect."""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .config import SPP_SERVICE_UUID
from .protocol import decode_line, frame
from .state import Connected, ConnectionFailed, ConnectionIdle, Connecting, Stage
from .store import SessionStore
from .transport import PeripheralSocket, Transport

logger = logging.getLogger(__name__)


def normalize_address(value: str) -> str:
    return value.upper().strip()


def _describe(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


class ConnectionManager:
    """
    Owns the socket to the peripheral and the state transitions it drives.

    Idle -> Connecting -> Connected | Error; Connected -> Idle on disconnect,
    Connected -> Error when the read loop fails. Every failure is recorded in
    the session store instead of being raised.
    """

    def __init__(
        self,
        store: SessionStore,
        transport: Transport,
        *,
        service_uuid: str = SPP_SERVICE_UUID,
        peripheral_name: str = "HC-05",
        min_address_length: int = 11,
    ) -> None:
        self._store = store
        self._transport = transport
        self.service_uuid = service_uuid
        self.peripheral_name = peripheral_name
        self.min_address_length = min_address_length

        self._socket: Optional[PeripheralSocket] = None
        self._reader_task: Optional[asyncio.Task[None]] = None
        self._transport.set_discovery_listener(self.on_device_found)

    @property
    def transport(self) -> Transport:
        return self._transport

    @property
    def is_connected(self) -> bool:
        return self._socket is not None and self._socket.is_connected

    @property
    def reader_task(self) -> Optional[asyncio.Task[None]]:
        return self._reader_task

    async def connect(self, address: str) -> None:
        address = normalize_address(address)
        if not self._transport.is_available():
            self._fail("Bluetooth adapter not available")
            return
        if len(address) < self.min_address_length:
            self._fail("Invalid peripheral MAC address")
            return

        self._store.update(connection_state=Connecting(address))
        try:
            if self._transport.is_discovering:
                await self._transport.cancel_discovery()
            await self._release()
            socket = await self._transport.open(address, self.service_uuid)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._socket = None
            message = _describe(exc)
            logger.warning("Connection to %s failed: %s", address, message)
            self._store.update(connection_state=ConnectionFailed(f"Connection failed: {message}"))
            self._store.append_log(f"Connection error: {message}")
            return

        if self._store.session.connection_state != Connecting(address):
            # disconnected or superseded while the transport was opening
            logger.info("Discarding stale connection to %s", address)
            try:
                await socket.close()
            except Exception as e:
                logger.warning("Error closing stale peripheral socket: %s", e)
            return

        self._socket = socket
        self._store.update(connection_state=Connected(socket.device_name))
        self._store.append_log(f"Connected to {socket.device_name or self.peripheral_name}")
        self._reader_task = asyncio.create_task(self._read_loop(socket), name="peripheral-reader")

    async def disconnect(self) -> None:
        await self._release()
        self._store.update(connection_state=ConnectionIdle(), stage=Stage.BLUETOOTH)
        self._store.append_log("Disconnected from peripheral")

    async def send(self, payload: str) -> bool:
        """Write one line; write errors propagate to the caller."""
        socket = self._socket
        if socket is None or not socket.is_connected:
            self._store.append_log("Bluetooth socket is not connected")
            self._store.update(connection_state=ConnectionFailed("Not connected"))
            return False
        await socket.write(frame(payload))
        return True

    async def start_discovery(self) -> bool:
        if not self._transport.is_available():
            self._store.append_log("Bluetooth adapter not available")
            return False
        if self._transport.is_discovering:
            return True
        started = await self._transport.start_discovery()
        if started:
            self._store.append_log(f"Scanning for {self.peripheral_name}")
        else:
            self._store.append_log("Discovery not supported by this transport")
        return started

    async def on_device_found(self, address: str, name: Optional[str]) -> None:
        if name != self.peripheral_name:
            return
        self._store.update(device_address=normalize_address(address))
        self._store.append_log(f"Found {name} at {normalize_address(address)}")
        await self._transport.cancel_discovery()

    async def dispose(self) -> None:
        """Best-effort teardown; never raises."""
        self._transport.set_discovery_listener(None)
        try:
            if self._transport.is_discovering:
                await self._transport.cancel_discovery()
        except Exception as e:
            logger.warning("Error cancelling discovery: %s", e)
        await self._release()

    def _fail(self, reason: str) -> None:
        logger.warning("Connection rejected: %s", reason)
        self._store.update(connection_state=ConnectionFailed(reason))
        self._store.append_log(reason)

    async def _release(self) -> None:
        socket, self._socket = self._socket, None
        task, self._reader_task = self._reader_task, None
        if socket is not None:
            try:
                await socket.close()
            except Exception as e:
                logger.warning("Error closing peripheral socket: %s", e)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning("Error during reader task cleanup: %s", e)

    async def _read_loop(self, socket: PeripheralSocket) -> None:
        self._store.append_log("Now listening for incoming data")
        try:
            while socket.is_connected:
                try:
                    line = await socket.readline()
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    if socket is not self._socket:
                        # closed underneath us by disconnect or a reconnect
                        break
                    message = _describe(exc)
                    logger.warning("Peripheral read failed: %s", message)
                    self._store.append_log(f"Read error: {message}")
                    self._store.update(connection_state=ConnectionFailed(f"Read failed: {message}"))
                    await self._drop(socket)
                    break
                if line is None:
                    logger.info("Peripheral closed the stream")
                    break
                try:
                    self._publish_decision(line)
                except Exception as exc:
                    logger.exception("Failed to handle peripheral line: %.80r", line)
                    self._store.append_log(f"Bad peripheral data: {_describe(exc)}")
        finally:
            self._store.append_log("Stopped listening for data")

    def _publish_decision(self, line: str) -> None:
        decision = decode_line(line)
        self._store.update(
            last_decision=decision,
            received_json=decision.raw_json if decision.raw_json.strip() else line,
            session_id=decision.session_id,
            final_result=decision.display_result,
            stage=Stage.RESULT,
        )
        self._store.append_log(f"Peripheral response: {decision.result}")

    async def _drop(self, socket: PeripheralSocket) -> None:
        if self._socket is socket:
            self._socket = None
            self._reader_task = None
        try:
            await socket.close()
        except Exception as e:
            logger.warning("Error closing peripheral socket after read failure: %s", e)


__all__ = ["ConnectionManager", "normalize_address"]
