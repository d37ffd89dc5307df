"""Reader state machine and tag de-duplication.

``reduce`` is the only place ``ScannerState`` changes; ``ScannerController``
performs the I/O against the bridge and feeds the outcomes through it.

    unsupported | supported -> initialized -> connected -> scanning
"""

from __future__ import annotations

import asyncio
import enum
import inspect
import logging
import time
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable

from eightball.core.errors import HardwareError, HardwareUnavailable, NotConnected
from eightball.rfid.bridge import ConnectionConfig, EventKind, HardwareBridge, ReaderEvent, Transport

logger = logging.getLogger(__name__)

CONNECTION_LOST = "RFID reader connection lost"


class ScannerPhase(str, enum.Enum):
    UNSUPPORTED = "unsupported"
    SUPPORTED = "supported"
    INITIALIZED = "initialized"
    CONNECTED = "connected"
    SCANNING = "scanning"


@dataclass(frozen=True)
class ScannedTag:
    rfid_tag: str
    rssi: int
    timestamp: datetime
    session_id: str | None = None


@dataclass(frozen=True)
class ScannerState:
    supported: bool = False
    initialized: bool = False
    connected: bool = False
    scanning: bool = False
    battery_level: int = 0
    transport: Transport = Transport.USB
    last_error: str | None = None
    session_id: str | None = None
    session_started_at: datetime | None = None
    scanned_tags: tuple[ScannedTag, ...] = ()
    last_scanned_tag: ScannedTag | None = None
    scan_count: int = 0

    @property
    def phase(self) -> ScannerPhase:
        if not self.supported:
            return ScannerPhase.UNSUPPORTED
        if self.scanning:
            return ScannerPhase.SCANNING
        if self.connected:
            return ScannerPhase.CONNECTED
        if self.initialized:
            return ScannerPhase.INITIALIZED
        return ScannerPhase.SUPPORTED


# ---- actions ----

@dataclass(frozen=True)
class Initialized:
    pass


@dataclass(frozen=True)
class Connected:
    transport: Transport


@dataclass(frozen=True)
class Disconnected:
    pass


@dataclass(frozen=True)
class ScanningStarted:
    session_id: str
    started_at: datetime


@dataclass(frozen=True)
class ScanningStopped:
    pass


@dataclass(frozen=True)
class ConnectionChanged:
    connected: bool


@dataclass(frozen=True)
class StatusSynced:
    connected: bool
    scanning: bool


@dataclass(frozen=True)
class BatteryLevelChanged:
    level: int


@dataclass(frozen=True)
class ErrorRecorded:
    message: str


@dataclass(frozen=True)
class TagAccepted:
    tag: ScannedTag
    max_history: int


@dataclass(frozen=True)
class TagsCleared:
    pass


@dataclass(frozen=True)
class Reset:
    pass


def reduce(state: ScannerState, action: Any) -> ScannerState:
    """Return the state after ``action``. Never mutates ``state``."""
    if isinstance(action, Initialized):
        return replace(state, initialized=True, last_error=None)

    if isinstance(action, Connected):
        return replace(state, initialized=True, connected=True, transport=action.transport, last_error=None)

    if isinstance(action, Disconnected):
        return replace(state, connected=False, scanning=False, session_id=None, session_started_at=None)

    if isinstance(action, ScanningStarted):
        if not state.connected:
            return state
        return replace(
            state,
            scanning=True,
            session_id=action.session_id,
            session_started_at=action.started_at,
            last_error=None,
        )

    if isinstance(action, ScanningStopped):
        return replace(state, scanning=False)

    if isinstance(action, ConnectionChanged):
        if action.connected:
            return replace(state, initialized=True, connected=True)
        return replace(state, connected=False, scanning=False, last_error=CONNECTION_LOST)

    if isinstance(action, StatusSynced):
        return replace(state, connected=action.connected, scanning=action.scanning and action.connected)

    if isinstance(action, BatteryLevelChanged):
        return replace(state, battery_level=max(0, min(100, action.level)))

    if isinstance(action, ErrorRecorded):
        return replace(state, last_error=action.message)

    if isinstance(action, TagAccepted):
        history = (action.tag,) + state.scanned_tags
        return replace(
            state,
            scanned_tags=history[: max(0, action.max_history)],
            last_scanned_tag=action.tag,
            scan_count=state.scan_count + 1,
        )

    if isinstance(action, TagsCleared):
        return replace(state, scanned_tags=(), last_scanned_tag=None, scan_count=0)

    if isinstance(action, Reset):
        return ScannerState(supported=state.supported, transport=state.transport)

    raise TypeError(f"Unknown scanner action: {action!r}")


class DuplicateFilter:
    """Rejects a tag seen within ``window`` seconds of its last accepted read."""

    # Entries older than the window are pruned once the index grows past this
    PRUNE_AT = 4096

    def __init__(self, window: float = 1.0):
        self.window = window
        self._last_accepted: dict[str, float] = {}

    def accept(self, rfid_tag: str, now: float) -> bool:
        last = self._last_accepted.get(rfid_tag)
        if last is not None and now - last < self.window:
            return False
        self._last_accepted[rfid_tag] = now
        if len(self._last_accepted) > self.PRUNE_AT:
            self._prune(now)
        return True

    def _prune(self, now: float) -> None:
        self._last_accepted = {t: ts for t, ts in self._last_accepted.items() if now - ts < self.window}

    def clear(self) -> None:
        self._last_accepted.clear()

    def __len__(self) -> int:
        return len(self._last_accepted)


_callback_tasks: set[asyncio.Future] = set()


def _callback_done(task: asyncio.Future) -> None:
    _callback_tasks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Error in async scanner callback", exc_info=exc)


def _invoke(callback: Callable | None, *args: Any) -> None:
    if callback is None:
        return
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            _callback_tasks.add(task)
            task.add_done_callback(_callback_done)
    except Exception:
        logger.exception("Error in scanner callback %s", getattr(callback, "__name__", callback))


class ScannerController:
    """Drives one HardwareBridge and keeps a ScannerState in step with it.

    Callbacks (``on_tag_scanned``, ``on_connection_changed``, ``on_error``,
    ``on_battery_level_changed``) are plain attributes so an owner can attach
    after construction. Exceptions raised by a callback are logged and dropped.
    """

    def __init__(
        self,
        bridge: HardwareBridge,
        *,
        duplicate_filter_window: float = 1.0,
        max_tag_history: int = 1000,
        connection_config: ConnectionConfig | None = None,
        auto_initialize: bool = True,
        auto_connect: bool = False,
        clock: Callable[[], float] = time.monotonic,
        on_tag_scanned: Callable[[ScannedTag], Any] | None = None,
        on_connection_changed: Callable[[bool], Any] | None = None,
        on_error: Callable[[str], Any] | None = None,
        on_battery_level_changed: Callable[[int], Any] | None = None,
    ):
        self.bridge = bridge
        self.connection_config = connection_config
        self.max_tag_history = max_tag_history
        self.auto_initialize = auto_initialize
        self.auto_connect = auto_connect
        self.duplicates = DuplicateFilter(duplicate_filter_window)
        self.on_tag_scanned = on_tag_scanned
        self.on_connection_changed = on_connection_changed
        self.on_error = on_error
        self.on_battery_level_changed = on_battery_level_changed
        self._clock = clock
        self._opened = False
        self._disconnecting = False
        self.state = ScannerState(supported=bridge.is_api_available(), transport=bridge.config.transport)

    def dispatch(self, action: Any) -> ScannerState:
        self.state = reduce(self.state, action)
        return self.state

    def _require_supported(self) -> None:
        if not self.state.supported:
            raise HardwareUnavailable("RFID hardware API not available")

    def _record(self, error: HardwareError) -> None:
        logger.warning("RFID action failed: %s", error.message)
        self.dispatch(ErrorRecorded(error.message))

    # ---- actions ----

    async def initialize(self) -> None:
        self._require_supported()
        if self.state.initialized:
            return
        try:
            await self.bridge.initialize(self.connection_config)
        except HardwareError as e:
            self._record(e)
            raise
        self.dispatch(Initialized())

    async def connect(self) -> None:
        self._require_supported()
        if self.state.connected:
            return
        if not self.state.initialized:
            await self.initialize()
        try:
            await self.bridge.connect()
        except HardwareError as e:
            self._record(e)
            raise
        self.dispatch(Connected(self.bridge.config.transport))

        try:
            await self.get_battery_level()
        except HardwareError as e:
            logger.warning("Could not read battery level after connect: %s", e.message)

    async def disconnect(self) -> None:
        self._require_supported()
        if not self.state.connected:
            return
        self._disconnecting = True
        try:
            await self.bridge.disconnect()
        except HardwareError as e:
            self._record(e)
            raise
        finally:
            self._disconnecting = False
            self.dispatch(Disconnected())

    async def start_scanning(self, session_id: str | None = None) -> str:
        """Start an inventory run and return the session id it is tagged with."""
        self._require_supported()
        if not self.state.connected:
            error = NotConnected("RFID reader not connected")
            self._record(error)
            raise error
        if self.state.scanning:
            return self.state.session_id
        session_id = session_id or str(uuid.uuid4())
        try:
            await self.bridge.start_scanning(session_id)
        except HardwareError as e:
            self._record(e)
            raise
        self.dispatch(ScanningStarted(session_id, datetime.now(timezone.utc)))
        return session_id

    async def stop_scanning(self) -> None:
        self._require_supported()
        if not self.state.scanning:
            return
        try:
            await self.bridge.stop_scanning()
        except HardwareError as e:
            self._record(e)
            raise
        self.dispatch(ScanningStopped())

    async def get_battery_level(self) -> int:
        self._require_supported()
        level = await self.bridge.get_battery_level()
        self.dispatch(BatteryLevelChanged(level))
        return level

    def check_connection(self) -> bool:
        status = self.bridge.get_status()
        if status.connected != self.state.connected or status.scanning != self.state.scanning:
            self.dispatch(StatusSynced(status.connected, status.scanning))
        return self.state.connected

    def clear_scanned_tags(self) -> None:
        self.duplicates.clear()
        self.dispatch(TagsCleared())

    def reset(self) -> None:
        self.duplicates.clear()
        self.dispatch(Reset())

    # ---- events ----

    def handle_event(self, event: ReaderEvent) -> None:
        if event.kind is EventKind.TAG_READ:
            self._handle_tag(event)
        elif event.kind is EventKind.CONNECTION_CHANGED:
            if not event.connected and self._disconnecting:
                # Requested by us, not a lost link
                self.dispatch(Disconnected())
            else:
                self.dispatch(ConnectionChanged(bool(event.connected)))
                if not event.connected:
                    logger.warning(CONNECTION_LOST)
            _invoke(self.on_connection_changed, bool(event.connected))
        elif event.kind is EventKind.BATTERY_STATUS:
            self.dispatch(BatteryLevelChanged(event.battery_level or 0))
            _invoke(self.on_battery_level_changed, self.state.battery_level)
        elif event.kind is EventKind.ERROR:
            message = event.error_message or "Unknown error"
            self.dispatch(ErrorRecorded(message))
            _invoke(self.on_error, message)

    def _handle_tag(self, event: ReaderEvent) -> None:
        if not self.duplicates.accept(event.tag, self._clock()):
            return
        tag = ScannedTag(
            rfid_tag=event.tag,
            rssi=event.rssi if event.rssi is not None else -50,
            timestamp=event.timestamp or datetime.now(timezone.utc),
            session_id=self.state.session_id,
        )
        self.dispatch(TagAccepted(tag, self.max_tag_history))
        _invoke(self.on_tag_scanned, tag)

    # ---- lifecycle ----

    async def open(self) -> "ScannerController":
        if self._opened:
            return self
        self.bridge.add_listener(self.handle_event)
        self._opened = True
        if not self.state.supported:
            logger.info("RFID hardware API not available; scanner stays unsupported")
            return self
        try:
            if self.auto_initialize:
                await self.initialize()
            if self.auto_connect:
                await self.connect()
        except HardwareError as e:
            logger.warning("RFID auto-setup failed: %s", e.message)
        return self

    async def close(self) -> None:
        if self.state.supported and self.state.scanning:
            try:
                await self.stop_scanning()
            except HardwareError as e:
                logger.warning("Stopping scan on close failed: %s", e.message)
        if self.state.supported and self.state.connected:
            try:
                await self.disconnect()
            except HardwareError as e:
                logger.warning("Disconnecting on close failed: %s", e.message)
        self.bridge.remove_listener(self.handle_event)
        self._opened = False

    async def __aenter__(self) -> "ScannerController":
        return await self.open()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
