"""Scan sessions: group tag reads at one location and reconcile them.

    no session -> active -> stopped -> confirmed | discarded

The manager owns the known-bottle cache for its organization. The cache is
replaced wholesale on refresh and only after a write has been acknowledged,
so a tag never resolves as known before its bottle exists.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from pydantic import ValidationError as PydanticValidationError

from eightball.core.errors import (
    HardwareError,
    HardwareUnavailable,
    ReconciliationError,
    SessionStateError,
    ValidationError,
)
from eightball.events.realtime import RealtimeHub
from eightball.rfid.scanner import CONNECTION_LOST, ScannedTag, ScannerController
from eightball.services.inventory.schemas import BottleCreate, ProductDetails
from eightball.services.scanning.gateway import InventoryGateway

logger = logging.getLogger(__name__)

WATCHED_TABLES = ("bottles", "locations")


class TagResolution(str, enum.Enum):
    KNOWN_ADDED = "known_added"
    KNOWN_DUPLICATE = "known_duplicate"
    UNKNOWN_ADDED = "unknown_added"
    UNKNOWN_DUPLICATE = "unknown_duplicate"
    IGNORED = "ignored"


@dataclass(frozen=True)
class ScannedBottle:
    bottle: dict
    scanned_at: datetime
    is_new: bool = False

    @property
    def id(self) -> str:
        return self.bottle["id"]

    @property
    def rfid_tag(self) -> str:
        return self.bottle["rfid_tag"]

    def to_dict(self) -> dict:
        return {**self.bottle, "scanned_at": self.scanned_at.isoformat(), "is_new": self.is_new}


@dataclass(frozen=True)
class UnknownBottle:
    id: str
    rfid_tag: str
    scanned_at: datetime

    def to_dict(self) -> dict:
        return {"id": self.id, "rfid_tag": self.rfid_tag, "scanned_at": self.scanned_at.isoformat()}


@dataclass
class ScanSession:
    id: str
    organization_id: str
    location_id: str
    started_at: datetime
    scanned_bottles: list[ScannedBottle] = field(default_factory=list)
    is_active: bool = True

    def has_bottle(self, bottle_id: str) -> bool:
        return any(b.id == bottle_id for b in self.scanned_bottles)

    def has_tag(self, rfid_tag: str) -> bool:
        return any(b.rfid_tag == rfid_tag for b in self.scanned_bottles)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "location_id": self.location_id,
            "started_at": self.started_at.isoformat(),
            "is_active": self.is_active,
            "scanned_bottles": [b.to_dict() for b in self.scanned_bottles],
        }


@dataclass(frozen=True)
class ReconciliationResult:
    session_id: str
    location_id: str
    bottle_count: int
    new_bottles: int
    record: dict


class ScanSessionManager:
    def __init__(
        self,
        scanner: ScannerController,
        gateway: InventoryGateway,
        organization_id: str,
        *,
        user_id: str | None = None,
    ):
        self.scanner = scanner
        self.gateway = gateway
        self.organization_id = organization_id
        self.user_id = user_id

        self.known: dict[str, dict] = {}
        self.locations: list[dict] = []
        self.selected_location_id: str | None = None
        self.session: ScanSession | None = None
        self.unknown: list[UnknownBottle] = []
        self.last_error: str | None = None

        self._confirm_lock = asyncio.Lock()
        self._unsubscribe: list[Callable[[], None]] = []

        scanner.on_tag_scanned = self.handle_tag
        scanner.on_connection_changed = self._on_connection_changed

    # ---- inventory cache ----

    async def load(self) -> None:
        await self.refresh_inventory()

    async def refresh_inventory(self) -> None:
        bottles = await self.gateway.list_known_bottles(self.organization_id)
        locations = await self.gateway.list_locations(self.organization_id)
        self.known = {b["rfid_tag"]: b for b in bottles}
        self.locations = locations
        ids = [loc["id"] for loc in locations]
        if self.selected_location_id not in ids:
            self.selected_location_id = ids[0] if ids else None
        self._reclassify_unknown()
        logger.debug(
            "Inventory cache refreshed for %s: %d bottles, %d locations",
            self.organization_id,
            len(self.known),
            len(self.locations),
        )

    def _reclassify_unknown(self) -> None:
        """Move pooled tags that have since become known bottles into the session."""
        s = self.session
        if s is None or not self.unknown:
            return
        pending = []
        for u in self.unknown:
            bottle = self.known.get(u.rfid_tag)
            if bottle is None:
                pending.append(u)
            elif not s.has_tag(u.rfid_tag):
                s.scanned_bottles.append(ScannedBottle(bottle=bottle, scanned_at=u.scanned_at, is_new=False))
        if len(pending) != len(self.unknown):
            logger.info("%d unknown tags resolved to known bottles", len(self.unknown) - len(pending))
        self.unknown = pending

    async def _refresh_quietly(self) -> None:
        try:
            await self.refresh_inventory()
        except Exception as e:
            logger.exception("Refreshing the inventory cache failed")
            self.last_error = f"Inventory refresh failed: {e}"

    def select_location(self, location_id: str) -> None:
        if self.session is not None:
            raise SessionStateError("Cannot change location while a scan session is open")
        if location_id not in {loc["id"] for loc in self.locations}:
            raise ValidationError("Unknown location", [{"field": "location_id", "message": "Location not found"}])
        self.selected_location_id = location_id

    # ---- realtime ----

    def attach_realtime(self, hub: RealtimeHub) -> None:
        for table in WATCHED_TABLES:
            self._unsubscribe.append(hub.subscribe(table, self.organization_id, self._on_inventory_changed))

    async def _on_inventory_changed(self, payload: dict) -> None:
        logger.debug("Inventory changed (%s); refreshing cache", payload.get("topic"))
        await self._refresh_quietly()

    def close(self) -> None:
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe.clear()
        if self.scanner.on_tag_scanned == self.handle_tag:
            self.scanner.on_tag_scanned = None
        if self.scanner.on_connection_changed == self._on_connection_changed:
            self.scanner.on_connection_changed = None

    # ---- session lifecycle ----

    async def start_session(self, location_id: str | None = None) -> ScanSession:
        if location_id:
            self.select_location(location_id)
        if self.session is not None:
            raise SessionStateError("A scan session is already open; confirm or discard it first")
        if not self.selected_location_id:
            raise SessionStateError("Select a location before scanning")
        if not self.scanner.state.supported:
            raise HardwareUnavailable("RFID hardware API not available")

        self.unknown = []
        self.scanner.clear_scanned_tags()
        session = ScanSession(
            id=str(uuid.uuid4()),
            organization_id=self.organization_id,
            location_id=self.selected_location_id,
            started_at=datetime.now(timezone.utc),
        )
        self.session = session
        try:
            if not self.scanner.state.connected:
                await self.scanner.connect()
            await self.scanner.start_scanning(session.id)
        except HardwareError as e:
            self.session = None
            self.last_error = e.message
            raise
        self.last_error = None
        logger.info("Scan session %s started at location %s", session.id, session.location_id)
        return session

    def handle_tag(self, tag: ScannedTag) -> TagResolution:
        s = self.session
        if s is None or not s.is_active:
            return TagResolution.IGNORED
        if tag.session_id and tag.session_id != s.id:
            return TagResolution.IGNORED

        if s.has_tag(tag.rfid_tag):
            return TagResolution.KNOWN_DUPLICATE

        bottle = self.known.get(tag.rfid_tag)
        if bottle is not None:
            s.scanned_bottles.append(ScannedBottle(bottle=bottle, scanned_at=tag.timestamp, is_new=False))
            return TagResolution.KNOWN_ADDED

        if any(u.rfid_tag == tag.rfid_tag for u in self.unknown):
            return TagResolution.UNKNOWN_DUPLICATE
        self.unknown.append(
            UnknownBottle(id=f"unknown-{uuid.uuid4().hex[:12]}", rfid_tag=tag.rfid_tag, scanned_at=tag.timestamp)
        )
        return TagResolution.UNKNOWN_ADDED

    def _require_session(self) -> ScanSession:
        if self.session is None:
            raise SessionStateError("No scan session is open")
        return self.session

    async def create_unknown_bottles(
        self,
        details: ProductDetails | dict | Mapping[str, ProductDetails | dict],
        unknown_ids: list[str] | None = None,
    ) -> list[ScannedBottle]:
        """Create bottles for pending unknown tags.

        Bulk mode: ``details`` is one ProductDetails (or dict) applied to
        ``unknown_ids`` (default: the whole pool). Individual mode: ``details``
        maps unknown id to that tag's ProductDetails. Every entry is validated
        before anything is written; one bad entry rejects the batch.
        """
        s = self._require_session()
        individual = _is_per_tag(details)
        pool = {u.id: u for u in self.unknown}

        if individual:
            targets = list(details)
        else:
            targets = list(unknown_ids) if unknown_ids is not None else list(pool)
        if not targets:
            raise ValidationError("No unknown bottles selected", [{"field": "unknown_ids", "message": "empty"}])

        errors: list[dict] = []
        items: list[BottleCreate] = []
        for uid in targets:
            u = pool.get(uid)
            if u is None:
                errors.append({"field": uid, "message": "Unknown bottle not found in this session"})
                continue
            raw = details[uid] if individual else details
            try:
                d = raw if isinstance(raw, ProductDetails) else ProductDetails.model_validate(raw)
                items.append(
                    BottleCreate(
                        rfid_tag=u.rfid_tag,
                        brand=d.brand,
                        product=d.product,
                        type=d.type,
                        tier=d.tier,
                        size=d.size,
                        cost_price=d.cost_price,
                        retail_price=d.retail_price,
                        current_quantity=d.current_quantity,
                        location_id=s.location_id,
                        metadata={
                            "notes": d.notes,
                            "bulk_scanned": not individual,
                            "session_id": s.id,
                            "original_scanned_at": u.scanned_at.isoformat(),
                        },
                    )
                )
            except PydanticValidationError as e:
                errors.extend(ValidationError.from_pydantic(e, prefix=f"{uid}.").errors)
        if errors:
            raise ValidationError("Unknown bottle details are invalid", errors)

        created = await self.gateway.create_bottles(self.organization_id, items, user_id=self.user_id)

        by_tag = {b["rfid_tag"]: b for b in created}
        moved = []
        for uid in targets:
            u = pool[uid]
            bottle = by_tag.get(u.rfid_tag)
            if bottle is None:
                continue
            sb = ScannedBottle(bottle=bottle, scanned_at=u.scanned_at, is_new=True)
            # A refresh during the write may already have moved it in as known
            s.scanned_bottles = [b for b in s.scanned_bottles if b.rfid_tag != u.rfid_tag]
            s.scanned_bottles.append(sb)
            moved.append(sb)
        moved_tags = {sb.rfid_tag for sb in moved}
        self.unknown = [u for u in self.unknown if u.rfid_tag not in moved_tags]
        self.known = {**self.known, **by_tag}
        logger.info("Created %d bottles from unknown tags in session %s", len(moved), s.id)

        await self._refresh_quietly()
        return moved

    def remove_bottle(self, bottle_id: str) -> bool:
        s = self._require_session()
        before = len(s.scanned_bottles)
        s.scanned_bottles = [b for b in s.scanned_bottles if b.id != bottle_id]
        return len(s.scanned_bottles) != before

    def remove_unknown(self, unknown_id: str) -> bool:
        self._require_session()
        before = len(self.unknown)
        self.unknown = [u for u in self.unknown if u.id != unknown_id]
        return len(self.unknown) != before

    async def _stop_scanning_quietly(self) -> None:
        if not self.scanner.state.scanning:
            return
        try:
            await self.scanner.stop_scanning()
        except HardwareError as e:
            logger.warning("Stopping the reader failed: %s", e.message)
            self.last_error = e.message

    async def stop_session(self) -> ScanSession:
        s = self._require_session()
        await self._stop_scanning_quietly()
        s.is_active = False
        logger.info("Scan session %s stopped with %d bottles", s.id, len(s.scanned_bottles))
        return s

    async def confirm_session(self) -> ReconciliationResult:
        async with self._confirm_lock:
            s = self._require_session()
            if not s.scanned_bottles:
                raise SessionStateError("Scan at least one bottle before confirming the session")

            # Reads arriving while the write is in flight would not be reconciled
            was_active = s.is_active
            s.is_active = False
            bottles = [
                {"bottle_id": b.id, "rfid_tag": b.rfid_tag, "is_new": b.is_new, "scanned_at": b.scanned_at}
                for b in s.scanned_bottles
            ]
            try:
                record = await self.gateway.complete_session(
                    self.organization_id,
                    session_id=s.id,
                    location_id=s.location_id,
                    started_at=s.started_at,
                    bottles=bottles,
                    user_id=self.user_id,
                )
            except Exception as e:
                s.is_active = was_active
                self.last_error = f"Failed to confirm scan session: {e}"
                logger.warning("Scan session %s could not be confirmed: %s", s.id, e)
                raise ReconciliationError(self.last_error, session_id=s.id) from e

            await self._stop_scanning_quietly()
            self.session = None
            self.unknown = []
            self.scanner.clear_scanned_tags()
            self.last_error = None
            await self._refresh_quietly()

            return ReconciliationResult(
                session_id=s.id,
                location_id=s.location_id,
                bottle_count=len(bottles),
                new_bottles=sum(1 for b in bottles if b["is_new"]),
                record=record,
            )

    async def discard_session(self) -> None:
        s = self._require_session()
        await self._stop_scanning_quietly()
        self.session = None
        self.unknown = []
        self.scanner.clear_scanned_tags()
        logger.info("Scan session %s discarded", s.id)

    async def reset(self) -> None:
        """Last resort: drop every session and reader state."""
        if self.scanner.state.supported:
            await self._stop_scanning_quietly()
            if self.scanner.state.connected:
                try:
                    await self.scanner.disconnect()
                except HardwareError as e:
                    logger.warning("Disconnect during reset failed: %s", e.message)
        self.scanner.reset()
        self.session = None
        self.unknown = []
        self.last_error = None
        logger.info("Scan station reset for organization %s", self.organization_id)

    def _on_connection_changed(self, connected: bool) -> None:
        if connected:
            return
        s = self.session
        if s is not None and s.is_active:
            s.is_active = False
            self.last_error = self.scanner.state.last_error or CONNECTION_LOST
            logger.warning("Scan session %s paused: %s", s.id, self.last_error)

    def snapshot(self) -> dict:
        st = self.scanner.state
        return {
            "organization_id": self.organization_id,
            "reader": {
                "phase": st.phase.value,
                "supported": st.supported,
                "initialized": st.initialized,
                "connected": st.connected,
                "scanning": st.scanning,
                "battery_level": st.battery_level,
                "transport": st.transport.value,
                "last_error": st.last_error,
                "scan_count": st.scan_count,
            },
            "locations": self.locations,
            "selected_location_id": self.selected_location_id,
            "session": self.session.to_dict() if self.session else None,
            "unknown_bottles": [u.to_dict() for u in self.unknown],
            "known_bottle_count": len(self.known),
            "last_error": self.last_error,
        }


def _is_per_tag(details: Any) -> bool:
    """A mapping whose values are all detail records is the per-tag form."""
    if not isinstance(details, Mapping):
        return False
    return all(isinstance(v, (ProductDetails, Mapping)) for v in details.values())
