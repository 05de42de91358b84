"""Central configuration for the mfagate controller service."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Dict, Literal, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ROOT_DIR = Path(__file__).resolve().parents[2]
DEFAULT_ENV_FILE = ROOT_DIR / ".env"

# Serial Port Profile, the service an HC-05 module advertises.
SPP_SERVICE_UUID = "00001101-0000-1000-8000-00805F9B34FB"


# ============================================================
# Nested Configuration Classes
# ============================================================

class PeripheralSettings(BaseModel):
    """Bluetooth peripheral configuration."""
    name: str = Field("HC-05", description="Advertised name used to autofill the address during discovery")
    default_address: str = Field("00:00:00:00:00:00", description="Address shown before the user enters one")
    service_uuid: str = Field(SPP_SERVICE_UUID, description="Service identifier the socket is opened against")
    rfcomm_channel: int = Field(1, description="RFCOMM channel used when the SDP lookup finds no SPP record")
    discovery_seconds: int = Field(8, description="Length of one Bluetooth inquiry")
    min_address_length: int = Field(11, description="Shortest address accepted before any transport attempt")
    read_chunk_size: int = Field(256, description="Bytes requested per socket recv while assembling a line")


class SessionSettings(BaseModel):
    """Session state and UI publishing configuration."""
    user_id: str = Field("researcher01", description="Identifier folded into biometric snapshots")
    log_capacity: int = Field(8, description="Entries kept in the session activity log")
    ui_event_queue_size: int = Field(4, description="Max buffered UI events per subscriber")
    heartbeat_seconds: float = Field(30.0, description="Interval between UI heartbeat events")


class SerialSettings(BaseModel):
    """pyserial transport configuration (rfcomm-bound tty devices)."""
    baudrate: int = Field(9600, description="HC-05 default data-mode baud rate")
    timeout_seconds: float = Field(0.5, description="Read timeout for a single readline poll")
    ports: Dict[str, str] = Field(
        default_factory=dict,
        description="Peripheral address to serial device path, e.g. {'98:D3:31:F5:2A:10': '/dev/rfcomm0'}",
    )


class EmulatorSettings(BaseModel):
    """In-process peripheral used for demos."""
    device_name: str = Field("HC-05", description="Name reported on connect")
    response_delay_seconds: float = Field(0.2, description="Delay before the emulated decision line")


class Settings(BaseSettings):
    """Environment-driven settings for controller subsystems."""

    # Controller HTTP Server
    controller_host: str = Field("0.0.0.0", description="Host interface for local FastAPI server")
    controller_port: int = Field(5000, description="Port for FastAPI server")

    # Transport
    transport: Literal["rfcomm", "serial", "emulated"] = Field(
        "rfcomm", description="Which transport carries the peripheral link"
    )

    # Logging
    log_level: str = Field("INFO", description="Logging level")
    transport_log_level: Optional[str] = Field(None, description="Level for mfagate.transport loggers (defaults to log_level)")
    log_directory: Path = Field(ROOT_DIR / "logs", description="Log directory path")
    log_retention_days: int = Field(14, description="Number of log files to retain")

    # Nested Configuration Objects
    peripheral: PeripheralSettings = Field(default_factory=PeripheralSettings, description="Peripheral settings")
    session: SessionSettings = Field(default_factory=SessionSettings, description="Session settings")
    serial: SerialSettings = Field(default_factory=SerialSettings, description="Serial transport settings")
    emulator: EmulatorSettings = Field(default_factory=EmulatorSettings, description="Emulated peripheral")

    @field_validator("transport", mode="before")
    @classmethod
    def _normalize_transport(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    model_config = SettingsConfigDict(
        env_file=str(DEFAULT_ENV_FILE),
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache()
def get_settings(override_env_file: Optional[Path] = None) -> Settings:
    """Cached Settings instance; accepts optional env override for tests."""

    if override_env_file:
        return Settings(_env_file=str(override_env_file))
    return Settings()
