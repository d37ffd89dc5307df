"""Scanner state machine, duplicate filter and controller lifecycle."""

import asyncio
import logging
from datetime import datetime, timezone

import pytest

from eightball.core.errors import ConnectionFailed, HardwareUnavailable, NotConnected
from eightball.rfid import scanner as scanner_module
from eightball.rfid.bridge import HardwareBridge, Transport
from eightball.rfid.scanner import (
    CONNECTION_LOST,
    BatteryLevelChanged,
    Connected,
    ConnectionChanged,
    Disconnected,
    DuplicateFilter,
    Initialized,
    Reset,
    ScannedTag,
    ScannerController,
    ScannerPhase,
    ScannerState,
    ScanningStarted,
    TagAccepted,
    reduce,
)
from eightball.rfid.simulator import SimulatedReader


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def _controller(reader=None, **kw):
    reader = reader if reader is not None else SimulatedReader()
    clock = FakeClock()
    scanner = ScannerController(HardwareBridge(reader), clock=clock, **kw)
    return reader, scanner, clock


def _tag(rfid_tag="A1"):
    return ScannedTag(rfid_tag=rfid_tag, rssi=-40, timestamp=datetime.now(timezone.utc))


class TestDuplicateFilter:
    def test_window_example(self):
        f = DuplicateFilter(window=1.0)
        assert f.accept("A1", 0.0) is True
        assert f.accept("A1", 0.5) is False
        assert f.accept("A1", 1.5) is True

    def test_tags_are_independent(self):
        f = DuplicateFilter(window=1.0)
        assert f.accept("A1", 0.0)
        assert f.accept("B2", 0.1)

    def test_clear(self):
        f = DuplicateFilter(window=10.0)
        f.accept("A1", 0.0)
        f.clear()
        assert f.accept("A1", 0.1)
        assert len(f) == 1

    def test_prunes_expired_entries(self):
        f = DuplicateFilter(window=1.0)
        for i in range(DuplicateFilter.PRUNE_AT):
            f.accept(f"T{i}", 0.0)
        f.accept("late", 5.0)
        assert len(f) == 1


class TestReducer:
    def test_reduce_does_not_mutate(self):
        state = ScannerState(supported=True)
        new = reduce(state, Initialized())
        assert state.initialized is False
        assert new.initialized is True

    def test_phases(self):
        s = ScannerState()
        assert s.phase is ScannerPhase.UNSUPPORTED
        s = ScannerState(supported=True)
        assert s.phase is ScannerPhase.SUPPORTED
        s = reduce(s, Initialized())
        assert s.phase is ScannerPhase.INITIALIZED
        s = reduce(s, Connected(Transport.USB))
        assert s.phase is ScannerPhase.CONNECTED
        s = reduce(s, ScanningStarted("s1", datetime.now(timezone.utc)))
        assert s.phase is ScannerPhase.SCANNING
        s = reduce(s, Disconnected())
        assert s.phase is ScannerPhase.INITIALIZED

    def test_scanning_never_starts_without_connection(self):
        s = ScannerState(supported=True, initialized=True)
        assert reduce(s, ScanningStarted("s1", datetime.now(timezone.utc))) is s

    def test_lost_connection_clears_connected_and_scanning_together(self):
        s = ScannerState(supported=True, initialized=True, connected=True, scanning=True)
        s = reduce(s, ConnectionChanged(False))
        assert (s.connected, s.scanning) == (False, False)
        assert s.last_error == CONNECTION_LOST

    def test_history_is_capped_newest_first(self):
        s = ScannerState(supported=True)
        for t in ("A", "B", "C", "D"):
            s = reduce(s, TagAccepted(_tag(t), max_history=3))
        assert [t.rfid_tag for t in s.scanned_tags] == ["D", "C", "B"]
        assert s.scan_count == 4
        assert s.last_scanned_tag.rfid_tag == "D"

    def test_battery_is_clamped(self):
        assert reduce(ScannerState(), BatteryLevelChanged(250)).battery_level == 100

    def test_reset_keeps_capability(self):
        s = ScannerState(supported=True, initialized=True, connected=True, scan_count=3)
        s = reduce(s, Reset())
        assert s == ScannerState(supported=True)

    def test_unknown_action(self):
        with pytest.raises(TypeError):
            reduce(ScannerState(), object())


class TestController:
    def test_unsupported_actions_fail_before_io(self):
        scanner = ScannerController(HardwareBridge(None))
        assert scanner.state.phase is ScannerPhase.UNSUPPORTED
        for action in (scanner.initialize, scanner.connect, scanner.disconnect, scanner.start_scanning, scanner.stop_scanning):
            with pytest.raises(HardwareUnavailable):
                asyncio.run(action())

    def test_start_scanning_requires_connection(self):
        _, scanner, _ = _controller()
        asyncio.run(scanner.initialize())
        with pytest.raises(NotConnected):
            asyncio.run(scanner.start_scanning())
        assert scanner.state.scanning is False
        assert scanner.state.last_error == "RFID reader not connected"

    def test_connect_reads_battery(self):
        _, scanner, _ = _controller(SimulatedReader(battery_level=64))
        asyncio.run(scanner.connect())
        assert scanner.state.phase is ScannerPhase.CONNECTED
        assert scanner.state.battery_level == 64

    def test_battery_failure_does_not_fail_connect(self):
        _, scanner, _ = _controller(SimulatedReader(fail={"get_battery_level"}))
        asyncio.run(scanner.connect())
        assert scanner.state.connected is True

    def test_connect_failure_stays_initialized(self):
        _, scanner, _ = _controller(SimulatedReader(fail={"connect"}))

        with pytest.raises(ConnectionFailed):
            asyncio.run(scanner.connect())
        assert scanner.state.phase is ScannerPhase.INITIALIZED
        assert scanner.state.last_error

    def test_duplicate_reads_are_filtered(self):
        reader, scanner, clock = _controller(duplicate_filter_window=1.0)
        accepted = []
        scanner.on_tag_scanned = accepted.append

        async def run():
            await scanner.open()
            await scanner.connect()
            session_id = await scanner.start_scanning()
            reader.emit_tag("A1")
            clock.now = 0.5
            reader.emit_tag("A1")
            clock.now = 1.5
            reader.emit_tag("A1")
            return session_id

        session_id = asyncio.run(run())
        assert [t.rfid_tag for t in accepted] == ["A1", "A1"]
        assert all(t.session_id == session_id for t in accepted)
        assert scanner.state.scan_count == 2

    def test_clear_scanned_tags_resets_dedup(self):
        reader, scanner, _ = _controller(duplicate_filter_window=60.0)

        async def run():
            await scanner.open()
            reader.emit_tag("A1")
            scanner.clear_scanned_tags()
            assert scanner.state.scan_count == 0
            reader.emit_tag("A1")

        asyncio.run(run())
        assert scanner.state.scan_count == 1

    def test_callback_failure_is_isolated(self):
        reader, scanner, clock = _controller()

        def broken(tag):
            raise ValueError("bad handler")

        scanner.on_tag_scanned = broken

        async def run():
            await scanner.open()
            reader.emit_tag("A1")
            clock.now = 5
            reader.emit_tag("B2")

        asyncio.run(run())
        assert scanner.state.scan_count == 2

    def test_async_callback_failure_is_logged(self, caplog):
        reader, scanner, _ = _controller()

        async def broken(tag):
            raise ValueError("bad async handler")

        scanner.on_tag_scanned = broken

        async def run():
            await scanner.open()
            reader.emit_tag("A1")
            for _ in range(3):
                await asyncio.sleep(0)

        with caplog.at_level(logging.ERROR, logger="eightball.rfid.scanner"):
            asyncio.run(run())
        assert scanner.state.scan_count == 1
        assert "Error in async scanner callback" in caplog.text
        assert not scanner_module._callback_tasks

    def test_disconnect_event_mid_scan(self):
        reader, scanner, _ = _controller()
        changes = []
        scanner.on_connection_changed = changes.append

        async def run():
            await scanner.open()
            await scanner.connect()
            await scanner.start_scanning()
            reader.drop_connection()

        asyncio.run(run())
        assert scanner.state.connected is False
        assert scanner.state.scanning is False
        assert scanner.state.last_error == CONNECTION_LOST
        assert changes[-1] is False

    def test_requested_disconnect_is_not_an_error(self):
        _, scanner, _ = _controller()

        async def run():
            await scanner.open()
            await scanner.connect()
            await scanner.start_scanning()
            await scanner.disconnect()

        asyncio.run(run())
        assert scanner.state.phase is ScannerPhase.INITIALIZED
        assert scanner.state.last_error is None

    def test_battery_and_error_events(self):
        reader, scanner, _ = _controller()
        levels, errors = [], []
        scanner.on_battery_level_changed = levels.append
        scanner.on_error = errors.append

        async def run():
            await scanner.open()
            reader.emit_battery(12)
            reader.emit_error("Antenna fault")

        asyncio.run(run())
        assert levels == [12]
        assert errors == ["Antenna fault"]
        assert scanner.state.last_error == "Antenna fault"

    def test_check_connection_syncs_from_bridge(self):
        reader, scanner, _ = _controller()

        async def run():
            await scanner.connect()
            # Status changed behind the controller's back
            scanner.bridge._status.connected = False
            return scanner.check_connection()

        assert asyncio.run(run()) is False
        assert scanner.state.connected is False


class TestLifecycle:
    def test_context_manager_stops_then_disconnects(self):
        reader = SimulatedReader()
        scanner = ScannerController(HardwareBridge(reader))

        async def run():
            async with scanner:
                await scanner.connect()
                await scanner.start_scanning()

        asyncio.run(run())
        assert reader.calls["stop_inventory"] == 1
        assert reader.calls["disconnect"] == 1
        assert scanner.state.connected is False

    def test_close_is_best_effort(self):
        reader = SimulatedReader(fail={"stop_inventory", "disconnect"})
        scanner = ScannerController(HardwareBridge(reader))

        async def run():
            await scanner.open()
            await scanner.connect()
            await scanner.start_scanning()
            await scanner.close()

        asyncio.run(run())
        assert reader.calls["disconnect"] == 1
        assert scanner.state.connected is False

    def test_auto_connect_failure_is_logged_not_raised(self):
        scanner = ScannerController(HardwareBridge(SimulatedReader(fail={"connect"})), auto_connect=True)
        asyncio.run(scanner.open())
        assert scanner.state.phase is ScannerPhase.INITIALIZED

    def test_open_unsupported(self):
        scanner = ScannerController(HardwareBridge(None))
        asyncio.run(scanner.open())
        asyncio.run(scanner.close())
        assert scanner.state.phase is ScannerPhase.UNSUPPORTED
