"""FastAPI entry-point for the mfagate controller."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

from .config import Settings, get_settings
from .logging_config import configure_logging
from .session_manager import SessionOrchestrator
from .state import session_payload
from .transport import Transport
from .transport.emulated import EmulatedTransport
from .transport.rfcomm import RfcommTransport
from .transport.serial_port import SerialTransport

logger = logging.getLogger(__name__)


def build_transport(settings: Settings) -> Transport:
    if settings.transport == "emulated":
        return EmulatedTransport(
            device_name=settings.emulator.device_name,
            response_delay=settings.emulator.response_delay_seconds,
        )
    if settings.transport == "serial":
        return SerialTransport(
            settings.serial.ports,
            baudrate=settings.serial.baudrate,
            timeout=settings.serial.timeout_seconds,
            device_name=settings.peripheral.name,
        )
    return RfcommTransport(
        channel=settings.peripheral.rfcomm_channel,
        chunk_size=settings.peripheral.read_chunk_size,
        discovery_seconds=settings.peripheral.discovery_seconds,
    )


settings: Settings = get_settings()
configure_logging(
    settings.log_level,
    settings.log_directory,
    settings.log_retention_days,
    transport_level=settings.transport_log_level,
)
app = FastAPI(title="mfagate-controller", version="0.1.0")
orchestrator = SessionOrchestrator(build_transport(settings), settings=settings)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> PlainTextResponse:
    """Catch-all exception handler to prevent application crashes."""
    logger.exception(f"Unhandled exception in {request.url.path}: {exc}")
    return PlainTextResponse(
        f"Internal server error: {str(exc)}",
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle request validation errors gracefully."""
    logger.warning(f"Validation error in {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": str(exc)}
    )

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def on_startup() -> None:
    try:
        await orchestrator.start()
        logger.info("Application started (transport=%s)", settings.transport)
    except Exception as e:
        logger.exception(f"Failed to start orchestrator: {e}")


@app.on_event("shutdown")
async def on_shutdown() -> None:
    try:
        await orchestrator.stop()
        logger.info("Application shutdown complete")
    except Exception as e:
        logger.exception(f"Error during shutdown: {e}")


def _state() -> JSONResponse:
    return JSONResponse(session_payload(orchestrator.snapshot()))


class AddressRequest(BaseModel):
    address: str


class UserRequest(BaseModel):
    user_id: str


class PermissionRequest(BaseModel):
    granted: bool = True


class EmulateRequest(BaseModel):
    success: bool = True


@app.get("/healthz")
async def healthcheck() -> JSONResponse:
    return JSONResponse({"status": "ok", "stage": orchestrator.snapshot().stage.value})


@app.get("/state")
async def get_state() -> JSONResponse:
    return _state()


@app.post("/session/address")
async def set_address(payload: AddressRequest) -> JSONResponse:
    orchestrator.set_address(payload.address)
    return _state()


@app.post("/session/user")
async def set_user(payload: UserRequest) -> JSONResponse:
    orchestrator.set_user_id(payload.user_id)
    return _state()


@app.post("/session/permission")
async def set_permission(payload: PermissionRequest) -> JSONResponse:
    orchestrator.set_permission(payload.granted)
    return _state()


@app.post("/session/restart")
async def restart() -> JSONResponse:
    orchestrator.restart()
    return _state()


@app.post("/bluetooth/connect")
async def connect(wait: bool = False) -> JSONResponse:
    """Start connecting; ``?wait=true`` holds the response until the attempt settles."""
    task = orchestrator.connect()
    if wait and task is not None:
        await asyncio.shield(task)
    return _state()


@app.post("/bluetooth/disconnect")
async def disconnect() -> JSONResponse:
    await orchestrator.disconnect()
    return _state()


@app.post("/bluetooth/discovery")
async def start_discovery() -> JSONResponse:
    started = await orchestrator.start_discovery()
    return JSONResponse({"started": started, "state": session_payload(orchestrator.snapshot())})


@app.post("/stage/biometrics")
async def navigate_to_biometrics() -> JSONResponse:
    orchestrator.navigate_to_biometrics()
    return _state()


@app.get("/biometric/capability")
async def biometric_capability() -> JSONResponse:
    return JSONResponse({"real_biometric": orchestrator.supports_real_biometric()})


@app.post("/biometric/request")
async def request_biometric() -> JSONResponse:
    orchestrator.request_biometric()
    return _state()


@app.post("/biometric/authenticate")
async def authenticate() -> JSONResponse:
    await orchestrator.authenticate()
    return _state()


@app.post("/biometric/emulate")
async def emulate(payload: EmulateRequest) -> JSONResponse:
    orchestrator.emulate_biometric_result(payload.success)
    return _state()


@app.post("/packet/send")
async def send_packet() -> JSONResponse:
    await orchestrator.send_packet()
    return _state()


@app.post("/packet/test")
async def send_test_data() -> JSONResponse:
    await orchestrator.send_test_data()
    return _state()


@app.websocket("/ws/ui")
async def ui_socket(ws: WebSocket) -> None:
    await ws.accept()
    queue = orchestrator.subscribe()
    try:
        current = orchestrator.snapshot()
        await ws.send_json({"type": "state", "stage": current.stage.value, "data": session_payload(current)})
        while True:
            try:
                event = await queue.get()
            except asyncio.CancelledError:
                break  # Clean shutdown

            payload: Dict[str, Any] = {
                "type": event.type,
                "stage": event.stage.value,
                "data": event.data,
            }
            try:
                await ws.send_json(payload)
            except Exception as e:
                # WebSocket closed, break out of loop
                logger.debug(f"WebSocket send failed (client disconnected): {e}")
                break
    except WebSocketDisconnect:
        pass
    except asyncio.CancelledError:
        pass  # Clean shutdown
    except Exception as e:
        logger.error(f"Unexpected error in UI websocket: {e}")
    finally:
        orchestrator.unsubscribe(queue)
        try:
            await ws.close()
        except Exception:
            pass


def run() -> None:
    import uvicorn

    uvicorn.run(app, host=settings.controller_host, port=settings.controller_port, log_config=None)


if __name__ == "__main__":
    run()
