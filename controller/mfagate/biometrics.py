"""Biometric gate: real sensor or emulated outcome, plus snapshot derivation."""
from __future__ import annotations

import hashlib
import logging
import random
import time
import uuid
from dataclasses import dataclass
from typing import Optional, Protocol

from .state import BiometricMode, BiometricSnapshot

logger = logging.getLogger(__name__)

EMULATED_FAILURE_MESSAGE = "Emulated failure"


@dataclass(frozen=True)
class BiometricOutcome:
    success: bool
    mode: Optional[BiometricMode] = None
    message: Optional[str] = None


class BiometricSensor(Protocol):
    """Platform biometric capability consumed by the gate."""

    def can_authenticate(self) -> bool:
        ...

    def has_face_hardware(self) -> bool:
        ...

    async def authenticate(self) -> bool:
        """Prompt the user; True on a match, False on a rejected attempt."""
        ...


class UnavailableSensor:
    """Sensor for hosts without biometric hardware."""

    def can_authenticate(self) -> bool:
        return False

    def has_face_hardware(self) -> bool:
        return False

    async def authenticate(self) -> bool:
        raise RuntimeError("No biometric sensor on this host")


class BiometricGate:
    """Normalizes real and emulated biometric checks into BiometricOutcome values."""

    def __init__(self, sensor: Optional[BiometricSensor] = None) -> None:
        self.sensor: BiometricSensor = sensor or UnavailableSensor()

    def supports_real_biometric(self) -> bool:
        try:
            return bool(self.sensor.can_authenticate())
        except Exception as e:
            logger.warning("Biometric capability check failed: %s", e)
            return False

    async def authenticate(self) -> BiometricOutcome:
        if not self.supports_real_biometric():
            return BiometricOutcome(success=False, message="Biometric hardware unavailable")
        try:
            matched = await self.sensor.authenticate()
        except Exception as exc:
            logger.warning("Biometric sensor error: %s", exc)
            return BiometricOutcome(success=False, message=f"Error: {exc}")
        if not matched:
            return BiometricOutcome(success=False, message="Biometric did not match, try again")
        return BiometricOutcome(success=True, mode=self._real_mode())

    def emulate(self, success: bool) -> BiometricOutcome:
        if success:
            return BiometricOutcome(success=True, mode=BiometricMode.DEMO)
        return BiometricOutcome(success=False, message=EMULATED_FAILURE_MESSAGE)

    def _real_mode(self) -> BiometricMode:
        try:
            if self.sensor.has_face_hardware():
                return BiometricMode.FACE
        except Exception as e:
            logger.warning("Face capability check failed: %s", e)
        return BiometricMode.FINGERPRINT


def build_snapshot(user_id: str, mode: BiometricMode, *, timestamp: Optional[int] = None) -> BiometricSnapshot:
    """
    Derive the informational snapshot for a successful check.

    The seed mixes user, mode, wall-clock millis and a fresh uuid4; the token
    is its last 16 characters and ``dfa_hash`` its SHA-256 hex digest. This is
    demonstration data, not a credential.
    """
    if timestamp is None:
        timestamp = int(time.time() * 1000)
    seed = f"{user_id}-{mode.name}-{timestamp}-{uuid.uuid4()}"
    return BiometricSnapshot(
        mode=mode,
        timestamp=timestamp,
        signal_quality=random.randint(80, 100),
        token=seed[-16:],
        dfa_hash=hashlib.sha256(seed.encode("utf-8")).hexdigest(),
    )


__all__ = [
    "EMULATED_FAILURE_MESSAGE",
    "BiometricOutcome",
    "BiometricSensor",
    "UnavailableSensor",
    "BiometricGate",
    "build_snapshot",
]
