"""Hardware bridge adapter for handheld RFID readers.

The vendor SDK is injected by the host as a ``binding`` object whose methods
take a completion callback (``binding.connect("usb", callback)``). This module
turns that surface into awaitables that resolve exactly once, and folds the
vendor's event stream into four normalized kinds.

Binding methods used:

    initialize(cb)                 connect(transport, cb)      disconnect(cb)
    start_inventory(cb)            stop_inventory(cb)          get_battery_level(cb)
    set_tag_report_mode(mode, cb)  set_trigger_mode(mode, cb)  get_connection_status(cb)
    set_event_listener(listener)   remove_event_listener()
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable

from eightball.core.errors import (
    ConnectionFailed,
    ConnectionTimeout,
    HardwareError,
    HardwareUnavailable,
    InitializationError,
    NotConnected,
    ReaderCommandError,
)

logger = logging.getLogger(__name__)

DEFAULT_RSSI = -50


class Transport(str, enum.Enum):
    USB = "usb"
    BLUETOOTH = "bluetooth"
    SERIAL = "serial"


class TagReportMode(str, enum.Enum):
    IMMEDIATE = "immediate"
    BATCH = "batch"


class TriggerMode(str, enum.Enum):
    MANUAL = "manual"
    AUTO = "auto"


class EventKind(str, enum.Enum):
    TAG_READ = "tagRead"
    CONNECTION_CHANGED = "connectionChanged"
    BATTERY_STATUS = "batteryStatus"
    ERROR = "error"


# Vendor event type -> normalized kind. Anything else is dropped.
_VENDOR_EVENT_TYPES = {
    "tag": EventKind.TAG_READ,
    "tagread": EventKind.TAG_READ,
    "tag_read": EventKind.TAG_READ,
    "connection": EventKind.CONNECTION_CHANGED,
    "connectionchanged": EventKind.CONNECTION_CHANGED,
    "connection_changed": EventKind.CONNECTION_CHANGED,
    "battery": EventKind.BATTERY_STATUS,
    "batterystatus": EventKind.BATTERY_STATUS,
    "battery_status": EventKind.BATTERY_STATUS,
    "error": EventKind.ERROR,
}


@dataclass
class ConnectionConfig:
    transport: Transport = Transport.USB
    connection_timeout: float = 10.0  # seconds
    tag_report_mode: TagReportMode = TagReportMode.IMMEDIATE
    trigger_mode: TriggerMode = TriggerMode.MANUAL

    def merged(self, overrides: "ConnectionConfig | dict | None") -> "ConnectionConfig":
        if overrides is None:
            return replace(self)
        if isinstance(overrides, ConnectionConfig):
            return replace(overrides)
        values = {k: v for k, v in overrides.items() if v is not None}
        if "transport" in values:
            values["transport"] = Transport(values["transport"])
        if "tag_report_mode" in values:
            values["tag_report_mode"] = TagReportMode(values["tag_report_mode"])
        if "trigger_mode" in values:
            values["trigger_mode"] = TriggerMode(values["trigger_mode"])
        return replace(self, **values)


@dataclass(frozen=True)
class ReaderEvent:
    kind: EventKind
    tag: str | None = None
    rssi: int | None = None
    timestamp: datetime | None = None
    connected: bool | None = None
    battery_level: int | None = None
    error_code: str | None = None
    error_message: str | None = None


@dataclass
class ReaderStatus:
    supported: bool = False
    initialized: bool = False
    connected: bool = False
    scanning: bool = False
    battery_level: int = 0
    transport: Transport = Transport.USB
    last_error: str | None = None


@dataclass(frozen=True)
class CallResult:
    ok: bool
    message: str | None = None
    payload: dict = field(default_factory=dict)


ReaderEventListener = Callable[[ReaderEvent], Any]


def normalize_result(raw: Any) -> CallResult:
    """Fold the vendor's callback result shapes into a CallResult.

    Accepted: ``{"status": "success"|"error", "message": ...}``,
    ``{"success": bool}``, ``True``/``False`` and ``None`` (success).
    """
    if raw is None or raw is True:
        return CallResult(ok=True)
    if raw is False:
        return CallResult(ok=False, message="Unknown error")
    if isinstance(raw, dict):
        if "status" in raw:
            ok = str(raw.get("status")).lower() in ("success", "ok", "connected")
        elif "success" in raw:
            ok = bool(raw.get("success"))
        else:
            ok = not raw.get("error")
        message = raw.get("message") or raw.get("errorMessage") or raw.get("error")
        return CallResult(ok=ok, message=str(message) if message else None, payload=dict(raw))
    status = getattr(raw, "status", None)
    if status is not None:
        return CallResult(ok=str(status).lower() == "success", message=getattr(raw, "message", None))
    return CallResult(ok=False, message=f"Unrecognized result: {raw!r}")


def _clamp_battery(value: Any) -> int:
    try:
        level = int(value)
    except (TypeError, ValueError, OverflowError):
        return 0
    return max(0, min(100, level))


def _event_rssi(value: Any) -> int:
    if value is None:
        return DEFAULT_RSSI
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return DEFAULT_RSSI


def _event_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)) and value > 0:
        # Vendor timestamps are epoch milliseconds
        try:
            return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            logger.debug("Ignoring out-of-range reader timestamp %r", value)
    return datetime.now(timezone.utc)


def normalize_event(raw: Any) -> ReaderEvent | None:
    """Map a vendor event payload to a ReaderEvent, or None for unknown types."""
    if not isinstance(raw, dict):
        return None
    kind = _VENDOR_EVENT_TYPES.get(str(raw.get("type", "")).lower())
    if kind is None:
        return None
    data = raw.get("data") or {}
    if not isinstance(data, dict):
        return None

    if kind is EventKind.TAG_READ:
        tag = data.get("epc") or data.get("tag")
        if not tag:
            return None
        return ReaderEvent(
            kind=kind,
            tag=str(tag),
            rssi=_event_rssi(data.get("rssi")),
            timestamp=_event_timestamp(data.get("timestamp")),
        )
    if kind is EventKind.CONNECTION_CHANGED:
        return ReaderEvent(kind=kind, connected=data.get("connected") is True)
    if kind is EventKind.BATTERY_STATUS:
        level = data.get("level", data.get("batteryLevel", data.get("battery_level")))
        return ReaderEvent(kind=kind, battery_level=_clamp_battery(level))
    code = data.get("code") or data.get("errorCode")
    return ReaderEvent(
        kind=kind,
        error_code=str(code) if code is not None else None,
        error_message=data.get("message") or data.get("errorMessage") or "Unknown error",
    )


class HardwareBridge:
    """Uniform async interface over one injected reader binding.

    Construct one per process and pass it to whoever needs the reader; tests
    hand in a simulated binding.
    """

    def __init__(self, binding: Any = None, config: ConnectionConfig | None = None):
        self._binding = binding
        self._config = config or ConnectionConfig()
        self._status = ReaderStatus(supported=self.is_api_available(), transport=self._config.transport)
        self._listeners: list[ReaderEventListener] = []
        self._init_lock = asyncio.Lock()
        self._connect_lock = asyncio.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None

    # ---- capability ----

    def is_api_available(self) -> bool:
        return self._binding is not None and callable(getattr(self._binding, "initialize", None))

    @property
    def binding(self) -> Any:
        return self._binding

    @property
    def config(self) -> ConnectionConfig:
        return self._config

    @property
    def initialized(self) -> bool:
        return self._status.initialized

    @property
    def connected(self) -> bool:
        return self._status.connected

    @property
    def scanning(self) -> bool:
        return self._status.scanning

    def get_status(self) -> ReaderStatus:
        return replace(self._status)

    # ---- vendor call plumbing ----

    async def _call(self, method: str, *args: Any, error: type[HardwareError], timeout: float | None = None) -> CallResult:
        """Invoke a callback-style binding method and await its single outcome."""
        fn = getattr(self._binding, method, None)
        if not callable(fn):
            raise error(f"RFID binding does not support {method}")

        loop = asyncio.get_running_loop()
        fut: asyncio.Future[CallResult] = loop.create_future()

        def _resolve(raw: Any) -> None:
            if fut.done():
                # Late or repeated callback
                return
            fut.set_result(normalize_result(raw))

        def _callback(raw: Any = None) -> None:
            loop.call_soon_threadsafe(_resolve, raw)

        try:
            fn(*args, _callback)
        except Exception as e:
            raise error(f"RFID {method} failed: {e}") from e

        if timeout is None:
            result = await fut
        else:
            try:
                result = await asyncio.wait_for(fut, timeout)
            except asyncio.TimeoutError:
                raise ConnectionTimeout(f"RFID {method} timed out after {timeout:g}s") from None

        if not result.ok:
            raise error(f"RFID {method} failed: {result.message or 'Unknown error'}")
        return result

    def _require_api(self) -> None:
        if not self.is_api_available():
            raise HardwareUnavailable(
                "RFID hardware API not available. Run inside a host that provides the reader binding."
            )

    # ---- lifecycle ----

    async def initialize(self, config: ConnectionConfig | dict | None = None) -> None:
        self._require_api()
        async with self._init_lock:
            if self._status.initialized:
                return
            self._config = self._config.merged(config)
            self._loop = asyncio.get_running_loop()
            try:
                await self._call("initialize", error=InitializationError)
            except InitializationError as e:
                self._status.last_error = e.message
                raise
            self._status.initialized = True
            self._status.transport = self._config.transport
            self._attach_vendor_listener()
            logger.info("RFID reader API initialized (transport=%s)", self._config.transport.value)

    async def connect(self) -> None:
        self._require_api()
        async with self._connect_lock:
            if self._status.connected:
                return
            if not self._status.initialized:
                await self.initialize()

            try:
                await self._call(
                    "connect",
                    self._config.transport.value,
                    error=ConnectionFailed,
                    timeout=self._config.connection_timeout,
                )
            except HardwareError as e:
                self._status.last_error = e.message
                raise

            try:
                await self._configure_reader()
            except HardwareError as e:
                self._status.last_error = e.message
                await self._vendor_disconnect_quietly()
                raise ConnectionFailed(f"RFID reader configuration failed: {e.message}") from e

            self._status.connected = True
            self._status.transport = self._config.transport
            self._status.last_error = None
            logger.info("RFID reader connected over %s", self._config.transport.value)
            self._notify(ReaderEvent(kind=EventKind.CONNECTION_CHANGED, connected=True))

    async def _configure_reader(self) -> None:
        await asyncio.gather(
            self._call("set_tag_report_mode", self._config.tag_report_mode.value, error=ConnectionFailed),
            self._call("set_trigger_mode", self._config.trigger_mode.value, error=ConnectionFailed),
        )

    async def _vendor_disconnect_quietly(self) -> None:
        try:
            await self._call("disconnect", error=ConnectionFailed)
        except HardwareError as e:
            logger.warning("RFID teardown after failed configuration also failed: %s", e.message)

    async def disconnect(self) -> None:
        if not self._status.connected:
            return

        if self._status.scanning:
            try:
                await self.stop_scanning()
            except HardwareError as e:
                logger.warning("Stopping scan before disconnect failed: %s", e.message)

        try:
            await self._call("disconnect", error=ConnectionFailed)
        except HardwareError as e:
            self._status.last_error = e.message
            raise
        finally:
            # Never leave the adapter half-connected
            self._status.connected = False
            self._status.scanning = False
            logger.info("RFID reader disconnected")
            self._notify(ReaderEvent(kind=EventKind.CONNECTION_CHANGED, connected=False))

    async def start_scanning(self, session_id: str | None = None) -> None:
        self._require_api()
        if not self._status.connected:
            raise NotConnected("RFID reader not connected")
        if self._status.scanning:
            return
        await self._call("start_inventory", error=ReaderCommandError)
        self._status.scanning = True
        logger.info("RFID scanning started (session=%s)", session_id)

    async def stop_scanning(self) -> None:
        if not self._status.scanning:
            return
        await self._call("stop_inventory", error=ReaderCommandError)
        self._status.scanning = False
        logger.info("RFID scanning stopped")

    async def get_battery_level(self) -> int:
        self._require_api()
        if not self._status.connected:
            raise NotConnected("RFID reader not connected")
        result = await self._call("get_battery_level", error=ReaderCommandError)
        payload = result.payload
        level = _clamp_battery(payload.get("batteryLevel", payload.get("battery_level", payload.get("level", 0))))
        self._status.battery_level = level
        return level

    def close(self) -> None:
        """Drop the vendor listener and every registered listener."""
        remove = getattr(self._binding, "remove_event_listener", None)
        if callable(remove):
            try:
                remove()
            except Exception:
                logger.exception("Removing RFID vendor listener failed")
        self._listeners.clear()
        self._status = ReaderStatus(supported=self.is_api_available(), transport=self._config.transport)

    # ---- events ----

    def add_listener(self, listener: ReaderEventListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: ReaderEventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _attach_vendor_listener(self) -> None:
        set_listener = getattr(self._binding, "set_event_listener", None)
        if not callable(set_listener):
            logger.warning("RFID event listener not supported by this binding")
            return
        set_listener(self._on_vendor_event)

    def _on_vendor_event(self, raw: Any) -> None:
        loop = self._loop
        if loop is not None and loop.is_running():
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None
            if running is not loop:
                loop.call_soon_threadsafe(self._handle_vendor_event, raw)
                return
        self._handle_vendor_event(raw)

    def _handle_vendor_event(self, raw: Any) -> None:
        event = normalize_event(raw)
        if event is None:
            return

        if event.kind is EventKind.CONNECTION_CHANGED:
            self._status.connected = bool(event.connected)
            if not event.connected:
                self._status.scanning = False
        elif event.kind is EventKind.BATTERY_STATUS:
            self._status.battery_level = event.battery_level or 0
        elif event.kind is EventKind.ERROR:
            self._status.last_error = event.error_message

        self._notify(event)

    def _notify(self, event: ReaderEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Error in RFID event listener")
