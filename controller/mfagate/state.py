"""Shared session state definitions for the mfagate controller."""
from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional, Tuple, Union

DEFAULT_ADDRESS = "00:00:00:00:00:00"
DEFAULT_USER_ID = "researcher01"


class Stage(str, enum.Enum):
    """
    Session stages in chronological order:

    1. BLUETOOTH   - Connect to the peripheral by MAC address
    2. BIOMETRICS  - Run a real or emulated biometric check, send the packet
    3. RESULT      - Peripheral answered, show allow/deny

    Only restart and disconnect move backwards (to BLUETOOTH).
    """
    BLUETOOTH = "bluetooth"
    BIOMETRICS = "biometrics"
    RESULT = "result"


class BiometricMode(str, enum.Enum):
    FINGERPRINT = "fingerprint"
    FACE = "face"
    DEMO = "demo"

    @property
    def label(self) -> str:
        return _MODE_LABELS[self]


_MODE_LABELS = {
    BiometricMode.FINGERPRINT: "Real Fingerprint",
    BiometricMode.FACE: "Real Face",
    BiometricMode.DEMO: "Emulated Demo",
}


# ============================================================
# Connection state
# ============================================================

@dataclass(frozen=True)
class ConnectionIdle:
    kind = "idle"


@dataclass(frozen=True)
class Connecting:
    target: str
    kind = "connecting"


@dataclass(frozen=True)
class Connected:
    device_name: Optional[str] = None
    kind = "connected"


@dataclass(frozen=True)
class ConnectionFailed:
    reason: str
    kind = "error"


ConnectionState = Union[ConnectionIdle, Connecting, Connected, ConnectionFailed]


# ============================================================
# Biometric state
# ============================================================

@dataclass(frozen=True)
class BiometricSnapshot:
    """Metadata captured once per successful biometric event."""

    mode: BiometricMode
    timestamp: int
    signal_quality: int
    token: str
    dfa_hash: str


@dataclass(frozen=True)
class BiometricIdle:
    kind = "idle"


@dataclass(frozen=True)
class BiometricRunning:
    kind = "running"


@dataclass(frozen=True)
class BiometricSuccess:
    mode: BiometricMode
    snapshot: BiometricSnapshot
    kind = "success"


@dataclass(frozen=True)
class BiometricFailure:
    message: str
    kind = "failure"


BiometricState = Union[BiometricIdle, BiometricRunning, BiometricSuccess, BiometricFailure]


# ============================================================
# Peripheral decision
# ============================================================

@dataclass(frozen=True)
class Decision:
    """Allow/deny answer parsed from one peripheral line."""

    session_id: Optional[str]
    result: str
    raw_json: str

    @property
    def allow(self) -> bool:
        return self.result.lower() == "allow"

    @property
    def display_result(self) -> str:
        return "Access granted" if self.allow else "Access denied"


# ============================================================
# Session aggregate
# ============================================================

@dataclass(frozen=True)
class Session:
    user_id: str = DEFAULT_USER_ID
    device_address: str = DEFAULT_ADDRESS
    connection_state: ConnectionState = field(default_factory=ConnectionIdle)
    biometric_state: BiometricState = field(default_factory=BiometricIdle)
    last_decision: Optional[Decision] = None
    last_json_request: Optional[str] = None
    has_bluetooth_permission: bool = False
    log: Tuple[str, ...] = ()
    stage: Stage = Stage.BLUETOOTH
    biometric_value: Optional[str] = None
    received_json: Optional[str] = None
    session_id: Optional[str] = None
    final_result: Optional[str] = None

    @property
    def can_navigate_to_biometrics(self) -> bool:
        return isinstance(self.connection_state, Connected)

    @property
    def can_send_packet(self) -> bool:
        return self.can_navigate_to_biometrics and self.biometric_value is not None

    def copy(self, **changes: Any) -> "Session":
        return replace(self, **changes)


def connection_state_payload(state: ConnectionState) -> Dict[str, Any]:
    if isinstance(state, ConnectionIdle):
        return {"kind": state.kind}
    if isinstance(state, Connecting):
        return {"kind": state.kind, "target": state.target}
    if isinstance(state, Connected):
        return {"kind": state.kind, "device_name": state.device_name}
    if isinstance(state, ConnectionFailed):
        return {"kind": state.kind, "reason": state.reason}
    raise TypeError(f"Unknown connection state: {state!r}")


def biometric_state_payload(state: BiometricState) -> Dict[str, Any]:
    if isinstance(state, (BiometricIdle, BiometricRunning)):
        return {"kind": state.kind}
    if isinstance(state, BiometricSuccess):
        snapshot = state.snapshot
        return {
            "kind": state.kind,
            "mode": state.mode.value,
            "label": state.mode.label,
            "snapshot": {
                "mode": snapshot.mode.value,
                "timestamp": snapshot.timestamp,
                "signal_quality": snapshot.signal_quality,
                "token": snapshot.token,
                "dfa_hash": snapshot.dfa_hash,
            },
        }
    if isinstance(state, BiometricFailure):
        return {"kind": state.kind, "message": state.message}
    raise TypeError(f"Unknown biometric state: {state!r}")


def session_payload(session: Session) -> Dict[str, Any]:
    """JSON-ready rendering of a session snapshot for UI clients."""

    decision = session.last_decision
    return {
        "user_id": session.user_id,
        "device_address": session.device_address,
        "connection_state": connection_state_payload(session.connection_state),
        "biometric_state": biometric_state_payload(session.biometric_state),
        "last_decision": None if decision is None else {
            "session_id": decision.session_id,
            "result": decision.result,
            "allow": decision.allow,
            "display_result": decision.display_result,
            "raw_json": decision.raw_json,
        },
        "last_json_request": session.last_json_request,
        "has_bluetooth_permission": session.has_bluetooth_permission,
        "log": list(session.log),
        "stage": session.stage.value,
        "biometric_value": session.biometric_value,
        "received_json": session.received_json,
        "session_id": session.session_id,
        "final_result": session.final_result,
        "can_navigate_to_biometrics": session.can_navigate_to_biometrics,
        "can_send_packet": session.can_send_packet,
    }


@dataclass
class SessionEvent:
    """Event payload distributed to UI clients over the local WebSocket."""

    type: str
    stage: Stage
    data: Dict[str, Any]


__all__ = [
    "DEFAULT_ADDRESS",
    "DEFAULT_USER_ID",
    "Stage",
    "BiometricMode",
    "ConnectionIdle",
    "Connecting",
    "Connected",
    "ConnectionFailed",
    "ConnectionState",
    "BiometricSnapshot",
    "BiometricIdle",
    "BiometricRunning",
    "BiometricSuccess",
    "BiometricFailure",
    "BiometricState",
    "Decision",
    "Session",
    "SessionEvent",
    "connection_state_payload",
    "biometric_state_payload",
    "session_payload",
]
