"""Hardware bridge adapter against the simulated reader."""

import asyncio
import threading

import pytest

from eightball.core.errors import (
    ConnectionFailed,
    ConnectionTimeout,
    HardwareUnavailable,
    InitializationError,
    NotConnected,
    ReaderCommandError,
)
from eightball.rfid.bridge import (
    ConnectionConfig,
    EventKind,
    HardwareBridge,
    TagReportMode,
    Transport,
    TriggerMode,
    normalize_event,
    normalize_result,
)
from eightball.rfid.simulator import SimulatedReader


def _bridge(reader=None, **config):
    reader = reader if reader is not None else SimulatedReader()
    return reader, HardwareBridge(reader, ConnectionConfig(**config))


class TestCapability:
    def test_missing_binding_is_unavailable(self):
        bridge = HardwareBridge(None)
        assert bridge.is_api_available() is False
        assert bridge.get_status().supported is False
        with pytest.raises(HardwareUnavailable):
            asyncio.run(bridge.connect())

    def test_binding_without_initialize_is_unavailable(self):
        assert HardwareBridge(object()).is_api_available() is False

    def test_simulated_reader_is_available(self):
        _, bridge = _bridge()
        assert bridge.is_api_available() is True


class TestInitialize:
    def test_concurrent_initialize_runs_vendor_once(self):
        reader, bridge = _bridge()

        async def run():
            await asyncio.gather(bridge.initialize(), bridge.initialize(), bridge.initialize())

        asyncio.run(run())
        assert reader.calls["initialize"] == 1
        assert reader.calls["set_event_listener"] == 1
        assert bridge.initialized

    def test_vendor_failure_raises_initialization_error(self):
        reader, bridge = _bridge(SimulatedReader(fail={"initialize"}))
        with pytest.raises(InitializationError):
            asyncio.run(bridge.initialize())
        assert not bridge.initialized
        assert bridge.get_status().last_error

    def test_config_overrides_are_merged(self):
        _, bridge = _bridge()
        asyncio.run(bridge.initialize({"transport": "bluetooth", "connection_timeout": 3}))
        assert bridge.config.transport is Transport.BLUETOOTH
        assert bridge.config.connection_timeout == 3
        assert bridge.config.trigger_mode is TriggerMode.MANUAL


class TestConnect:
    def test_connect_auto_initializes_and_configures_reader(self):
        reader, bridge = _bridge(tag_report_mode=TagReportMode.BATCH, trigger_mode=TriggerMode.AUTO)
        events = []
        bridge.add_listener(events.append)

        asyncio.run(bridge.connect())

        assert bridge.connected
        assert reader.calls["initialize"] == 1
        assert reader.tag_report_mode == "batch"
        assert reader.trigger_mode == "auto"
        assert reader.transport == "usb"
        assert [(e.kind, e.connected) for e in events] == [(EventKind.CONNECTION_CHANGED, True)]

    def test_redundant_connect_is_safe(self):
        reader, bridge = _bridge()

        async def run():
            await asyncio.gather(bridge.connect(), bridge.connect())
            await bridge.connect()

        asyncio.run(run())
        assert reader.calls["connect"] == 1

    def test_connect_times_out_when_vendor_never_answers(self):
        reader, bridge = _bridge(SimulatedReader(silent={"connect"}), connection_timeout=0.05)
        with pytest.raises(ConnectionTimeout):
            asyncio.run(bridge.connect())
        assert not bridge.connected
        assert "timed out" in bridge.get_status().last_error

    def test_vendor_failure_raises_connection_failed(self):
        _, bridge = _bridge(SimulatedReader(fail={"connect"}, error_message="Device not found"))
        with pytest.raises(ConnectionFailed, match="Device not found"):
            asyncio.run(bridge.connect())
        assert not bridge.connected

    def test_configuration_failure_tears_connection_down(self):
        reader, bridge = _bridge(SimulatedReader(fail={"set_trigger_mode"}))
        with pytest.raises(ConnectionFailed):
            asyncio.run(bridge.connect())
        assert reader.calls["disconnect"] == 1
        assert reader.connected is False
        assert not bridge.connected


class TestScanning:
    def test_start_requires_connection(self):
        _, bridge = _bridge()
        with pytest.raises(NotConnected):
            asyncio.run(bridge.start_scanning("s1"))

    def test_start_and_stop(self):
        reader, bridge = _bridge()

        async def run():
            await bridge.connect()
            await bridge.start_scanning("s1")
            assert reader.inventory_running
            await bridge.start_scanning("s1")
            await bridge.stop_scanning()
            await bridge.stop_scanning()

        asyncio.run(run())
        assert reader.calls["start_inventory"] == 1
        assert reader.calls["stop_inventory"] == 1
        assert not bridge.scanning

    def test_vendor_start_failure(self):
        _, bridge = _bridge(SimulatedReader(fail={"start_inventory"}))

        async def run():
            await bridge.connect()
            await bridge.start_scanning()

        with pytest.raises(ReaderCommandError):
            asyncio.run(run())
        assert not bridge.scanning

    def test_battery_level_is_clamped(self):
        _, bridge = _bridge(SimulatedReader(battery_level=140))

        async def run():
            await bridge.connect()
            return await bridge.get_battery_level()

        assert asyncio.run(run()) == 100

    def test_battery_requires_connection(self):
        _, bridge = _bridge()
        with pytest.raises(NotConnected):
            asyncio.run(bridge.get_battery_level())


class TestDisconnect:
    def test_disconnect_stops_scanning_first(self):
        reader, bridge = _bridge()
        events = []
        bridge.add_listener(events.append)

        async def run():
            await bridge.connect()
            await bridge.start_scanning()
            await bridge.disconnect()

        asyncio.run(run())
        assert reader.calls["stop_inventory"] == 1
        assert reader.calls["disconnect"] == 1
        assert not bridge.connected and not bridge.scanning
        assert events[-1].connected is False

    def test_failed_stop_does_not_block_disconnect(self):
        reader, bridge = _bridge(SimulatedReader(fail={"stop_inventory"}))

        async def run():
            await bridge.connect()
            await bridge.start_scanning()
            await bridge.disconnect()

        asyncio.run(run())
        assert reader.calls["disconnect"] == 1
        assert not bridge.connected and not bridge.scanning

    def test_vendor_disconnect_failure_still_clears_flags(self):
        _, bridge = _bridge(SimulatedReader(fail={"disconnect"}))

        async def run():
            await bridge.connect()
            await bridge.start_scanning()
            await bridge.disconnect()

        with pytest.raises(ConnectionFailed):
            asyncio.run(run())
        assert not bridge.connected and not bridge.scanning

    def test_disconnect_when_not_connected_is_noop(self):
        reader, bridge = _bridge()
        asyncio.run(bridge.disconnect())
        assert reader.calls["disconnect"] == 0


class LateReplyReader(SimulatedReader):
    """Holds the connect callback so the test decides when (and how often) it fires."""

    def __init__(self):
        super().__init__()
        self.pending = []

    def connect(self, transport, callback):
        self.calls["connect"] += 1
        self.pending.append(callback)


class TestExactlyOnce:
    def test_late_callback_after_timeout_is_ignored(self):
        reader = LateReplyReader()
        bridge = HardwareBridge(reader, ConnectionConfig(connection_timeout=0.02))

        async def run():
            with pytest.raises(ConnectionTimeout):
                await bridge.connect()
            reader.pending[0]({"status": "success"})
            reader.pending[0]({"status": "error", "message": "late"})
            await asyncio.sleep(0.01)

        asyncio.run(run())
        assert not bridge.connected

    def test_second_reply_does_not_override_first(self):
        class ChattyReader(SimulatedReader):
            def initialize(self, callback):
                self.calls["initialize"] += 1
                callback({"success": True})
                callback({"success": False, "message": "ignored"})

        bridge = HardwareBridge(ChattyReader())
        asyncio.run(bridge.initialize())
        assert bridge.initialized


class TestEvents:
    def test_tag_event_aliases_and_default_rssi(self):
        evt = normalize_event({"type": "tagRead", "data": {"tag": "A1"}})
        assert evt.kind is EventKind.TAG_READ
        assert evt.tag == "A1"
        assert evt.rssi == -50

    def test_epc_preferred(self):
        evt = normalize_event({"type": "tag", "data": {"epc": "E1", "tag": "T1", "rssi": -30}})
        assert evt.tag == "E1"
        assert evt.rssi == -30

    def test_unknown_event_types_are_dropped(self):
        assert normalize_event({"type": "firmware", "data": {}}) is None
        assert normalize_event("garbage") is None
        assert normalize_event({"type": "tag", "data": {}}) is None

    def test_malformed_payloads_do_not_raise(self):
        assert normalize_event({"type": "tag", "data": ["E1"]}) is None
        assert normalize_event({"type": "battery", "data": "low"}) is None
        evt = normalize_event({"type": "tag", "data": {"epc": "E1", "rssi": "strong", "timestamp": 1e30}})
        assert evt.tag == "E1"
        assert evt.rssi == -50
        assert evt.timestamp is not None

    def test_malformed_vendor_event_is_dropped_on_emit(self):
        reader, bridge = _bridge()
        seen = []
        bridge.add_listener(seen.append)

        async def run():
            await bridge.initialize()
            reader.emit_raw({"type": "tag", "data": "E1"})
            reader.emit_tag("E2")

        asyncio.run(run())
        assert [e.tag for e in seen] == ["E2"]

    def test_battery_and_error_events(self):
        assert normalize_event({"type": "battery", "data": {"level": -4}}).battery_level == 0
        err = normalize_event({"type": "error", "data": {"message": "Antenna fault", "code": 7}})
        assert err.kind is EventKind.ERROR
        assert err.error_message == "Antenna fault"
        assert err.error_code == "7"

    def test_listener_failure_does_not_stop_delivery(self):
        reader, bridge = _bridge()
        seen = []

        def broken(event):
            raise RuntimeError("boom")

        bridge.add_listener(broken)
        bridge.add_listener(seen.append)

        async def run():
            await bridge.initialize()
            reader.emit_tag("A1")
            reader.emit_raw({"type": "unknown"})

        asyncio.run(run())
        assert [e.tag for e in seen] == ["A1"]

    def test_connection_drop_updates_status(self):
        reader, bridge = _bridge()

        async def run():
            await bridge.connect()
            await bridge.start_scanning()
            reader.drop_connection()

        asyncio.run(run())
        status = bridge.get_status()
        assert status.connected is False
        assert status.scanning is False

    def test_events_from_foreign_thread_are_marshalled(self):
        reader, bridge = _bridge()
        threads = []
        bridge.add_listener(lambda e: threads.append(threading.get_ident()))

        async def run():
            await bridge.initialize()
            await asyncio.to_thread(reader.emit_tag, "A1")
            await asyncio.sleep(0.01)
            return threading.get_ident()

        loop_thread = asyncio.run(run())
        assert threads == [loop_thread]

    def test_close_removes_vendor_listener(self):
        reader, bridge = _bridge()
        seen = []
        bridge.add_listener(seen.append)
        asyncio.run(bridge.initialize())
        bridge.close()
        reader.emit_tag("A1")
        assert seen == []
        assert reader.calls["remove_event_listener"] == 1
        assert not bridge.initialized


class TestResults:
    @pytest.mark.parametrize(
        "raw, ok",
        [
            (None, True),
            (True, True),
            (False, False),
            ({"status": "success"}, True),
            ({"status": "error", "message": "x"}, False),
            ({"success": True}, True),
            ({"success": False}, False),
            ({"error": "bad"}, False),
        ],
    )
    def test_result_shapes(self, raw, ok):
        assert normalize_result(raw).ok is ok

    def test_message_is_kept(self):
        assert normalize_result({"status": "error", "message": "Reader busy"}).message == "Reader busy"
