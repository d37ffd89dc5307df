"""In-process stand-in for the vendor reader binding.

Used by the scan station when ``RFID_BINDING=simulator`` and by the tests.
Callbacks fire synchronously unless ``silent`` names the method, in which case
the callback never fires (the bridge then times out).
"""

from __future__ import annotations

import logging
import time
from collections import Counter
from typing import Any, Callable

logger = logging.getLogger(__name__)


class SimulatedReader:
    def __init__(
        self,
        *,
        battery_level: int = 85,
        fail: set[str] | None = None,
        silent: set[str] | None = None,
        error_message: str = "Simulated reader failure",
    ):
        self.battery_level = battery_level
        self.fail = set(fail or ())
        self.silent = set(silent or ())
        self.error_message = error_message
        self.calls: Counter[str] = Counter()
        self.connected = False
        self.inventory_running = False
        self.transport: str | None = None
        self.tag_report_mode: str | None = None
        self.trigger_mode: str | None = None
        self._listener: Callable[[dict], Any] | None = None

    def _reply(self, method: str, callback: Callable[[Any], None], payload: dict | None = None) -> bool:
        self.calls[method] += 1
        if method in self.silent:
            return False
        if method in self.fail:
            callback({"status": "error", "message": self.error_message})
            return False
        callback({"status": "success", **(payload or {})})
        return True

    # ---- binding surface ----

    def initialize(self, callback):
        self._reply("initialize", callback)

    def connect(self, transport, callback):
        self.transport = transport
        # State flips before the reply so a late reply still reflects the device
        if "connect" not in self.fail and "connect" not in self.silent:
            self.connected = True
        self._reply("connect", callback)

    def disconnect(self, callback):
        self.inventory_running = False
        self.connected = False
        self._reply("disconnect", callback)

    def start_inventory(self, callback):
        if self._reply("start_inventory", callback):
            self.inventory_running = True

    def stop_inventory(self, callback):
        if self._reply("stop_inventory", callback):
            self.inventory_running = False

    def set_tag_report_mode(self, mode, callback):
        if self._reply("set_tag_report_mode", callback):
            self.tag_report_mode = mode

    def set_trigger_mode(self, mode, callback):
        if self._reply("set_trigger_mode", callback):
            self.trigger_mode = mode

    def get_battery_level(self, callback):
        self._reply("get_battery_level", callback, {"batteryLevel": self.battery_level})

    def get_connection_status(self, callback):
        self._reply("get_connection_status", callback, {"connected": self.connected})

    def set_event_listener(self, listener):
        self.calls["set_event_listener"] += 1
        self._listener = listener

    def remove_event_listener(self):
        self.calls["remove_event_listener"] += 1
        self._listener = None

    # ---- driving events ----

    def emit_raw(self, event: dict) -> None:
        if self._listener is None:
            logger.debug("Simulated reader has no listener; dropping %s", event.get("type"))
            return
        self._listener(event)

    def emit_tag(self, epc: str, rssi: int | None = -42) -> None:
        data: dict[str, Any] = {"epc": epc, "timestamp": int(time.time() * 1000)}
        if rssi is not None:
            data["rssi"] = rssi
        self.emit_raw({"type": "tag", "data": data})

    def emit_battery(self, level: int) -> None:
        self.battery_level = level
        self.emit_raw({"type": "battery", "data": {"level": level}})

    def emit_error(self, message: str, code: str | None = None) -> None:
        self.emit_raw({"type": "error", "data": {"message": message, "code": code}})

    def drop_connection(self) -> None:
        """Simulate the reader going out of range or being unplugged."""
        self.connected = False
        self.inventory_running = False
        self.emit_raw({"type": "connection", "data": {"connected": False}})
