from __future__ import annotations

import asyncio
import logging

from eightball.core import config
from eightball.core.errors import HardwareUnavailable, SessionStateError
from eightball.events.realtime import RealtimeHub, hub as default_hub
from eightball.rfid.bridge import ConnectionConfig, HardwareBridge
from eightball.rfid.scanner import ScannerController
from eightball.rfid.simulator import SimulatedReader
from eightball.services.scanning.gateway import InventoryGateway, SqlInventoryGateway
from eightball.services.scanning.session import ScanSessionManager

logger = logging.getLogger(__name__)


class ScanStation:
    """The process's one reader plus the session manager currently using it.

    A station serves one organization at a time. Switching organization is
    refused while a scan session is open.
    """

    def __init__(
        self,
        bridge: HardwareBridge,
        gateway: InventoryGateway,
        *,
        duplicate_filter_window: float = 1.0,
        max_tag_history: int = 1000,
        realtime: RealtimeHub | None = None,
    ):
        self.bridge = bridge
        self.gateway = gateway
        self.realtime = realtime
        self.scanner = ScannerController(
            bridge,
            duplicate_filter_window=duplicate_filter_window,
            max_tag_history=max_tag_history,
        )
        self.manager: ScanSessionManager | None = None
        self._manager_lock = asyncio.Lock()

    @classmethod
    def from_config(cls, gateway: InventoryGateway | None = None, binding=None) -> "ScanStation":
        if binding is None and config.RFID_BINDING == "simulator":
            binding = SimulatedReader()
        connection = ConnectionConfig().merged({
            "transport": config.RFID_TRANSPORT,
            "connection_timeout": config.RFID_CONNECTION_TIMEOUT,
            "tag_report_mode": config.RFID_TAG_REPORT_MODE,
            "trigger_mode": config.RFID_TRIGGER_MODE,
        })
        return cls(
            HardwareBridge(binding, connection),
            gateway or SqlInventoryGateway(),
            duplicate_filter_window=config.RFID_DUPLICATE_FILTER_MS / 1000.0,
            max_tag_history=config.RFID_MAX_TAG_HISTORY,
            realtime=default_hub,
        )

    @property
    def simulator(self) -> SimulatedReader | None:
        binding = self.bridge.binding
        return binding if isinstance(binding, SimulatedReader) else None

    async def open(self) -> None:
        await self.scanner.open()
        logger.info("Scan station open (phase=%s)", self.scanner.state.phase.value)

    async def close(self) -> None:
        if self.manager is not None:
            self.manager.close()
            self.manager = None
        await self.scanner.close()
        self.bridge.close()
        logger.info("Scan station closed")

    async def manager_for(self, organization_id: str, user_id: str | None = None) -> ScanSessionManager:
        # Concurrent first requests must share one manager
        async with self._manager_lock:
            m = self.manager
            if m is not None and m.organization_id == organization_id:
                if user_id:
                    m.user_id = user_id
                return m
            if m is not None and m.session is not None:
                raise SessionStateError("Scan station is in use by another organization")
            if m is not None:
                m.close()
                self.manager = None

            m = ScanSessionManager(self.scanner, self.gateway, organization_id, user_id=user_id)
            try:
                await m.load()
            except Exception:
                m.close()
                raise
            if self.realtime is not None:
                m.attach_realtime(self.realtime)
            self.manager = m
            logger.info("Scan station now serving organization %s", organization_id)
            return m


_station: ScanStation | None = None


def set_station(station: ScanStation | None) -> None:
    global _station
    _station = station


def get_station() -> ScanStation:
    if _station is None:
        raise HardwareUnavailable("Scan station is not running")
    return _station
