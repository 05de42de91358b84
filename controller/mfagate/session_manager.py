"""Session orchestration for the three-stage Bluetooth + biometric MFA flow."""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .biometrics import BiometricGate, BiometricOutcome, build_snapshot
from .config import Settings, get_settings
from .connection import ConnectionManager, normalize_address
from .protocol import encode_packet, encode_test_packet
from .state import (
    BiometricFailure,
    BiometricIdle,
    BiometricMode,
    BiometricRunning,
    BiometricSuccess,
    Connected,
    Connecting,
    Session,
    SessionEvent,
    Stage,
)
from .store import SessionStore
from .transport import Transport

logger = logging.getLogger(__name__)


class SessionOrchestrator:
    """
    Coordinates address input, the peripheral link, the biometric gate and
    stage navigation for a single session.

    Every public operation is total: failures end up as a connection or
    biometric state value plus an activity log entry, never as an exception.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        settings: Optional[Settings] = None,
        gate: Optional[BiometricGate] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._store = SessionStore(
            Session(
                user_id=self.settings.session.user_id,
                device_address=normalize_address(self.settings.peripheral.default_address),
            ),
            log_capacity=self.settings.session.log_capacity,
            queue_size=self.settings.session.ui_event_queue_size,
        )
        self._connection = ConnectionManager(
            self._store,
            transport,
            service_uuid=self.settings.peripheral.service_uuid,
            peripheral_name=self.settings.peripheral.name,
            min_address_length=self.settings.peripheral.min_address_length,
        )
        self._gate = gate or BiometricGate()
        self._connect_task: Optional[asyncio.Task[None]] = None
        self._heartbeat_task: Optional[asyncio.Task[None]] = None

    # ------------------------------------------------------------------
    # Lifecycle and observation
    # ------------------------------------------------------------------

    @property
    def session(self) -> Session:
        return self._store.session

    @property
    def connection(self) -> ConnectionManager:
        return self._connection

    @property
    def gate(self) -> BiometricGate:
        return self._gate

    def snapshot(self) -> Session:
        return self._store.session

    def subscribe(self) -> asyncio.Queue[SessionEvent]:
        return self._store.subscribe()

    def unsubscribe(self, queue: asyncio.Queue[SessionEvent]) -> None:
        self._store.unsubscribe(queue)

    async def start(self) -> None:
        logger.info("Starting session orchestrator")
        if not self._heartbeat_task or self._heartbeat_task.done():
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(), name="session-heartbeat")

    async def stop(self) -> None:
        logger.info("Stopping session orchestrator")
        for task in (self._heartbeat_task, self._connect_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                except Exception as e:
                    logger.warning("Error stopping background task: %s", e)
        self._heartbeat_task = None
        self._connect_task = None
        await self._connection.dispose()
        logger.info("Session orchestrator stopped")

    # ------------------------------------------------------------------
    # Session inputs
    # ------------------------------------------------------------------

    def set_user_id(self, value: str) -> None:
        self._store.update(user_id=value)

    def set_address(self, value: str) -> None:
        self._store.update(device_address=normalize_address(value))

    def set_permission(self, granted: bool) -> None:
        if granted != self.session.has_bluetooth_permission:
            self._store.append_log("Bluetooth permissions granted" if granted else "Bluetooth permissions denied")
        self._store.update(has_bluetooth_permission=granted)

    # ------------------------------------------------------------------
    # Stage 1: Bluetooth
    # ------------------------------------------------------------------

    def connect(self) -> Optional[asyncio.Task[None]]:
        """Start connecting in the background; returns the task, or None if rejected."""
        address = self.session.device_address
        if len(address) < self.settings.peripheral.min_address_length:
            self._store.append_log("Invalid peripheral MAC address")
            return None

        if self._connect_task and not self._connect_task.done():
            self._connect_task.cancel()
        self._store.update(connection_state=Connecting(address))
        self._connect_task = asyncio.create_task(self._run_connect(address), name="peripheral-connect")
        return self._connect_task

    async def disconnect(self) -> None:
        task, self._connect_task = self._connect_task, None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        try:
            await self._connection.disconnect()
        except Exception as exc:
            logger.exception("Disconnect failed: %s", exc)
        if self.session.stage != Stage.BLUETOOTH:
            self._store.update(stage=Stage.BLUETOOTH)

    async def start_discovery(self) -> bool:
        try:
            return await self._connection.start_discovery()
        except Exception as exc:
            logger.warning("Discovery failed to start: %s", exc)
            self._store.append_log(f"Discovery error: {exc}")
            return False

    def navigate_to_biometrics(self) -> bool:
        if not self.session.can_navigate_to_biometrics:
            return False
        self._store.update(stage=Stage.BIOMETRICS)
        return True

    # ------------------------------------------------------------------
    # Stage 2: Biometrics
    # ------------------------------------------------------------------

    def supports_real_biometric(self) -> bool:
        return self._gate.supports_real_biometric()

    def request_biometric(self) -> None:
        self._store.update(biometric_state=BiometricRunning())

    async def authenticate(self) -> None:
        """Run the real sensor and record whatever it reports."""
        self.request_biometric()
        try:
            outcome = await self._gate.authenticate()
        except Exception as exc:
            logger.exception("Biometric gate failed: %s", exc)
            outcome = BiometricOutcome(success=False, message=str(exc))
        self._record(outcome)

    def emulate_biometric_result(self, success: bool) -> None:
        self._record(self._gate.emulate(success))

    def record_biometric_outcome(
        self,
        success: bool,
        mode: Optional[BiometricMode] = None,
        message: Optional[str] = None,
    ) -> None:
        if success:
            self.record_biometric_success(mode or BiometricMode.DEMO)
        else:
            self.record_biometric_failure(message or "Biometric check failed")

    def record_biometric_success(self, mode: BiometricMode) -> None:
        snapshot = build_snapshot(self.session.user_id, mode)
        self._store.update(
            biometric_state=BiometricSuccess(mode=mode, snapshot=snapshot),
            biometric_value="ok",
        )
        self._store.append_log(f"Biometric success via {mode.label}")

    def record_biometric_failure(self, message: str) -> None:
        self._store.update(biometric_state=BiometricFailure(message), biometric_value="fail")
        self._store.append_log(f"Biometric failed: {message}")

    async def send_packet(self) -> bool:
        """
        Write the biometric token to the peripheral.

        The decision is not awaited here; it arrives through the read loop.
        """
        biometric_value = self.session.biometric_value
        if biometric_value is None:
            self._store.append_log("No biometric result available")
            return False
        payload = encode_packet(biometric_value)
        if not await self._write(payload, error_prefix="I/O error"):
            return False
        self._store.append_log(f"Sent auth packet ({len(payload)} chars)")
        return True

    async def send_test_data(self) -> bool:
        payload = encode_test_packet()
        if not await self._write(payload, error_prefix="I/O error while sending test data"):
            return False
        self._store.append_log(f"Sent test data: {payload}")
        return True

    # ------------------------------------------------------------------
    # Stage 3: Result
    # ------------------------------------------------------------------

    def restart(self) -> None:
        self._store.update(
            stage=Stage.BLUETOOTH,
            biometric_state=BiometricIdle(),
            biometric_value=None,
            received_json=None,
            session_id=None,
            final_result=None,
            last_decision=None,
            last_json_request=None,
        )
        self._store.append_log("Flow restarted")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _run_connect(self, address: str) -> None:
        try:
            await self._connection.connect(address)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # pragma: no cover - connect already converts failures
            logger.exception("Unexpected connect failure: %s", exc)
            self._store.append_log(f"Connection error: {exc}")

    async def _write(self, payload: str, *, error_prefix: str) -> bool:
        if not isinstance(self.session.connection_state, Connected):
            self._store.append_log("Bluetooth socket is not connected")
            return False
        try:
            sent = await self._connection.send(payload)
        except Exception as exc:
            logger.warning("Peripheral write failed: %s", exc)
            self._store.append_log(f"{error_prefix}: {exc}")
            return False
        if sent:
            self._store.update(last_json_request=payload)
        return sent

    def _record(self, outcome: BiometricOutcome) -> None:
        self.record_biometric_outcome(outcome.success, outcome.mode, outcome.message)

    async def _heartbeat_loop(self) -> None:
        """Send periodic heartbeat to UI clients."""
        try:
            while True:
                await asyncio.sleep(self.settings.session.heartbeat_seconds)
                try:
                    self._store.heartbeat()
                except Exception as e:
                    logger.warning("Failed to send heartbeat: %s", e)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Heartbeat loop crashed: %s", e)


__all__ = ["SessionOrchestrator"]
