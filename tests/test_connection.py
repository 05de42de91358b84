"""
Tests for the connection manager lifecycle and read loop.
"""

import asyncio

import pytest

from conftest import FakeTransport, settle
from mfagate.config import SPP_SERVICE_UUID
from mfagate.connection import ConnectionManager, normalize_address
from mfagate.protocol import decode_line
from mfagate.state import Connected, ConnectionFailed, ConnectionIdle, Stage
from mfagate.transport import TransportError

ADDRESS = "AA:BB:CC:DD:EE:FF"


def log_texts(store):
    return [entry.split(": ", 1)[1] for entry in store.session.log]


class SlowOpenTransport(FakeTransport):
    """open() blocks until the test releases it."""

    def __init__(self) -> None:
        super().__init__()
        self.release = asyncio.Event()

    async def open(self, address, service_uuid):
        await self.release.wait()
        return await super().open(address, service_uuid)


@pytest.fixture()
def manager(store, transport):
    return ConnectionManager(store, transport)


class TestConnect:
    def test_normalize_address(self):
        assert normalize_address("  aa:bb:cc:dd:ee:ff ") == ADDRESS

    @pytest.mark.asyncio
    async def test_success_connects_and_starts_reader(self, manager, store, transport):
        await manager.connect(ADDRESS)
        await settle()

        assert store.session.connection_state == Connected("HC-05")
        assert transport.opened == [(ADDRESS, SPP_SERVICE_UUID)]
        assert manager.reader_task is not None and not manager.reader_task.done()
        assert "Connected to HC-05" in log_texts(store)
        assert "Now listening for incoming data" in log_texts(store)
        await manager.dispose()

    @pytest.mark.asyncio
    async def test_unnamed_device_logs_peripheral_name(self, store):
        manager = ConnectionManager(store, FakeTransport(device_name=None))
        await manager.connect(ADDRESS)

        assert store.session.connection_state == Connected(None)
        assert "Connected to HC-05" in log_texts(store)
        await manager.dispose()

    @pytest.mark.asyncio
    async def test_transport_error(self, store):
        transport = FakeTransport(open_error=TransportError("timeout"))
        manager = ConnectionManager(store, transport)

        await manager.connect(ADDRESS)
        await settle()

        assert store.session.connection_state == ConnectionFailed("Connection failed: timeout")
        assert "Connection error: timeout" in log_texts(store)
        assert manager.reader_task is None
        assert "Now listening for incoming data" not in log_texts(store)

    @pytest.mark.asyncio
    async def test_adapter_missing(self, store):
        transport = FakeTransport(available=False)
        manager = ConnectionManager(store, transport)

        await manager.connect(ADDRESS)

        assert store.session.connection_state == ConnectionFailed("Bluetooth adapter not available")
        assert transport.opened == []

    @pytest.mark.asyncio
    async def test_short_address_is_rejected_before_transport(self, manager, store, transport):
        await manager.connect("AA:BB:CC")

        assert store.session.connection_state == ConnectionFailed("Invalid peripheral MAC address")
        assert transport.opened == []

    @pytest.mark.asyncio
    async def test_reconnect_closes_previous_socket(self, manager, store, transport):
        await manager.connect(ADDRESS)
        first = transport.last_socket
        await manager.connect(ADDRESS)
        await settle()

        assert first.closed is True
        assert len(transport.sockets) == 2
        assert store.session.connection_state == Connected("HC-05")
        await manager.dispose()

    @pytest.mark.asyncio
    async def test_connect_cancels_discovery(self, manager, transport):
        transport.discovering = True
        await manager.connect(ADDRESS)

        assert transport.discovering is False
        await manager.dispose()

    @pytest.mark.asyncio
    async def test_disconnect_while_opening_discards_socket(self, store):
        transport = SlowOpenTransport()
        manager = ConnectionManager(store, transport)

        pending = asyncio.create_task(manager.connect(ADDRESS))
        await settle()
        await manager.disconnect()
        transport.release.set()
        await pending
        await settle()

        assert store.session.connection_state == ConnectionIdle()
        assert transport.last_socket.closed is True
        assert manager.reader_task is None
        assert manager.is_connected is False


class TestReadLoop:
    @pytest.mark.asyncio
    async def test_decision_moves_stage_to_result(self, manager, store, transport):
        await manager.connect(ADDRESS)
        transport.last_socket.feed('{"result":"allow","session_id":7}')
        await settle()

        session = store.session
        assert session.stage is Stage.RESULT
        assert session.last_decision.allow is True
        assert session.session_id == "7"
        assert session.final_result == "Access granted"
        assert session.received_json == session.last_decision.raw_json
        assert "Peripheral response: allow" in log_texts(store)
        await manager.dispose()

    @pytest.mark.asyncio
    async def test_malformed_line_is_a_deny(self, manager, store, transport):
        await manager.connect(ADDRESS)
        transport.last_socket.feed("garbage")
        await settle()

        session = store.session
        assert session.stage is Stage.RESULT
        assert session.received_json == "garbage"
        assert session.final_result == "Access denied"
        assert session.session_id is None
        await manager.dispose()

    @pytest.mark.asyncio
    async def test_blank_line_keeps_received_text(self, manager, store, transport):
        await manager.connect(ADDRESS)
        transport.last_socket.feed("   ")
        await settle()

        assert store.session.received_json == "   "
        assert store.session.last_decision.raw_json == ""
        await manager.dispose()

    @pytest.mark.asyncio
    async def test_end_of_stream_stops_quietly(self, manager, store, transport):
        await manager.connect(ADDRESS)
        transport.last_socket.end_of_stream()
        await settle()

        assert manager.reader_task.done()
        assert store.session.connection_state == Connected("HC-05")
        assert log_texts(store)[-1] == "Stopped listening for data"
        await manager.dispose()

    @pytest.mark.asyncio
    async def test_read_error_sets_error_state(self, manager, store, transport):
        await manager.connect(ADDRESS)
        socket = transport.last_socket
        socket.fail_read(TransportError("link lost"))
        await settle()

        assert store.session.connection_state == ConnectionFailed("Read failed: link lost")
        assert "Read error: link lost" in log_texts(store)
        assert socket.closed is True
        assert manager.is_connected is False

    @pytest.mark.asyncio
    async def test_session_survives_read_error(self, manager, store, transport):
        store.update(biometric_value="ok", device_address=ADDRESS)
        await manager.connect(ADDRESS)
        transport.last_socket.fail_read(TransportError("boom"))
        await settle()

        assert store.session.biometric_value == "ok"
        assert store.session.device_address == ADDRESS

    @pytest.mark.asyncio
    async def test_deeply_nested_line_keeps_loop_alive(self, manager, store, transport):
        await manager.connect(ADDRESS)
        transport.last_socket.feed("[" * 100000)
        await settle()
        assert store.session.final_result == "Access denied"

        transport.last_socket.feed('{"result":"allow","session_id":7}')
        await settle()

        assert not manager.reader_task.done()
        assert store.session.final_result == "Access granted"
        assert store.session.session_id == "7"
        await manager.dispose()

    @pytest.mark.asyncio
    async def test_handler_failure_is_logged_and_loop_continues(self, manager, store, transport, monkeypatch):
        calls = []

        def flaky_decode(line):
            calls.append(line)
            if len(calls) == 1:
                raise ValueError("decoder exploded")
            return decode_line(line)

        monkeypatch.setattr("mfagate.connection.decode_line", flaky_decode)
        await manager.connect(ADDRESS)
        transport.last_socket.feed("first")
        transport.last_socket.feed('{"result":"allow"}')
        await settle()

        assert "Bad peripheral data: decoder exploded" in log_texts(store)
        assert store.session.final_result == "Access granted"
        assert store.session.connection_state == Connected("HC-05")
        await manager.dispose()


class TestDisconnectAndSend:
    @pytest.mark.asyncio
    async def test_disconnect_closes_and_resets(self, manager, store, transport):
        await manager.connect(ADDRESS)
        store.update(stage=Stage.BIOMETRICS)
        reader = manager.reader_task

        await manager.disconnect()
        await settle()

        assert transport.last_socket.closed is True
        assert reader.done()
        assert store.session.connection_state == ConnectionIdle()
        assert store.session.stage is Stage.BLUETOOTH
        assert "Disconnected from peripheral" in log_texts(store)
        assert not any(text.startswith("Read error") for text in log_texts(store))

    @pytest.mark.asyncio
    async def test_disconnect_is_idempotent(self, manager, store):
        await manager.disconnect()
        await manager.disconnect()

        assert store.session.connection_state == ConnectionIdle()

    @pytest.mark.asyncio
    async def test_disconnect_swallows_close_errors(self, manager, store, transport):
        await manager.connect(ADDRESS)

        async def broken_close():
            raise OSError("already gone")

        transport.last_socket.close = broken_close
        await manager.disconnect()

        assert store.session.connection_state == ConnectionIdle()

    @pytest.mark.asyncio
    async def test_send_writes_line(self, manager, transport):
        await manager.connect(ADDRESS)

        assert await manager.send('{"biometric": "ok"}') is True
        assert transport.last_socket.written == [b'{"biometric": "ok"}\n']
        await manager.dispose()

    @pytest.mark.asyncio
    async def test_send_without_socket(self, manager, store):
        assert await manager.send("x") is False
        assert store.session.connection_state == ConnectionFailed("Not connected")
        assert "Bluetooth socket is not connected" in log_texts(store)

    @pytest.mark.asyncio
    async def test_send_propagates_write_errors(self, manager, transport):
        await manager.connect(ADDRESS)
        transport.last_socket.write_error = TransportError("broken pipe")

        with pytest.raises(TransportError):
            await manager.send("x")
        await manager.dispose()


class TestDiscoveryAndDispose:
    @pytest.mark.asyncio
    async def test_matching_device_fills_address(self, manager, store, transport):
        assert await manager.start_discovery() is True
        await transport.announce("98:d3:31:f5:2a:10", "HC-05")

        assert store.session.device_address == "98:D3:31:F5:2A:10"
        assert transport.discovering is False

    @pytest.mark.asyncio
    async def test_other_devices_are_ignored(self, manager, store, transport):
        await manager.start_discovery()
        await transport.announce("11:22:33:44:55:66", "Headphones")

        assert store.session.device_address == "00:00:00:00:00:00"
        assert transport.discovering is True

    @pytest.mark.asyncio
    async def test_discovery_without_adapter(self, store):
        manager = ConnectionManager(store, FakeTransport(available=False))

        assert await manager.start_discovery() is False

    @pytest.mark.asyncio
    async def test_dispose_releases_everything(self, manager, store, transport):
        await manager.connect(ADDRESS)
        transport.discovering = True

        await manager.dispose()
        await transport.announce("98:D3:31:F5:2A:10", "HC-05")

        assert transport.last_socket.closed is True
        assert transport.discovering is False
        assert store.session.device_address == "00:00:00:00:00:00"

    @pytest.mark.asyncio
    async def test_dispose_without_connection(self, manager):
        await manager.dispose()
        await asyncio.sleep(0)
