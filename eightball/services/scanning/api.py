from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from eightball.core import config
from eightball.core.security import Principal, require_organization, require_user
from eightball.db.session import get_db
from eightball.services.inventory.schemas import ProductDetails
from eightball.services.scanning import service
from eightball.services.scanning.session import ScanSessionManager
from eightball.services.scanning.station import ScanStation, get_station

router = APIRouter(prefix="/scan", tags=["scanning"])


class StartSessionIn(BaseModel):
    location_id: str | None = None


class SelectLocationIn(BaseModel):
    location_id: str


class UnknownBottlesIn(BaseModel):
    mode: Literal["bulk", "individual"] = "bulk"
    details: ProductDetails | None = None
    unknown_ids: list[str] | None = None
    # individual mode: unknown id -> details
    bottles: dict[str, ProductDetails] = Field(default_factory=dict)


class SimulatedTagIn(BaseModel):
    rfid_tag: str = Field(..., min_length=1, max_length=100)
    rssi: int | None = None


async def station_manager(
    org_id: str = Depends(require_organization),
    p: Principal = Depends(require_user),
) -> ScanSessionManager:
    return await get_station().manager_for(org_id, p.user_id)


@router.get("/status")
async def status(m: ScanSessionManager = Depends(station_manager)):
    m.scanner.check_connection()
    return m.snapshot()


@router.post("/refresh")
async def refresh(m: ScanSessionManager = Depends(station_manager)):
    await m.refresh_inventory()
    return m.snapshot()


@router.post("/location")
async def select_location(payload: SelectLocationIn, m: ScanSessionManager = Depends(station_manager)):
    m.select_location(payload.location_id)
    return m.snapshot()


# ---- Reader ----
@router.post("/reader/connect")
async def connect(m: ScanSessionManager = Depends(station_manager)):
    await m.scanner.connect()
    return m.snapshot()


@router.post("/reader/disconnect")
async def disconnect(m: ScanSessionManager = Depends(station_manager)):
    await m.scanner.disconnect()
    return m.snapshot()


@router.get("/reader/battery")
async def battery(m: ScanSessionManager = Depends(station_manager)):
    return {"battery_level": await m.scanner.get_battery_level()}


# ---- Session ----
@router.post("/session/start")
async def start_session(payload: StartSessionIn | None = None, m: ScanSessionManager = Depends(station_manager)):
    await m.start_session(payload.location_id if payload else None)
    return m.snapshot()


@router.post("/session/stop")
async def stop_session(m: ScanSessionManager = Depends(station_manager)):
    await m.stop_session()
    return m.snapshot()


@router.post("/session/unknown")
async def create_unknown_bottles(payload: UnknownBottlesIn, m: ScanSessionManager = Depends(station_manager)):
    if payload.mode == "individual":
        created = await m.create_unknown_bottles(payload.bottles)
    else:
        if payload.details is None:
            raise HTTPException(422, "details are required in bulk mode")
        created = await m.create_unknown_bottles(payload.details, payload.unknown_ids)
    return {"created": [b.to_dict() for b in created], "state": m.snapshot()}


@router.delete("/session/bottles/{bottle_id}")
async def remove_bottle(bottle_id: str, m: ScanSessionManager = Depends(station_manager)):
    if not m.remove_bottle(bottle_id):
        raise HTTPException(404, "Bottle not in this session")
    return m.snapshot()


@router.delete("/session/unknown/{unknown_id}")
async def remove_unknown(unknown_id: str, m: ScanSessionManager = Depends(station_manager)):
    if not m.remove_unknown(unknown_id):
        raise HTTPException(404, "Unknown bottle not in this session")
    return m.snapshot()


@router.post("/session/confirm")
async def confirm_session(m: ScanSessionManager = Depends(station_manager)):
    result = await m.confirm_session()
    return {
        "session_id": result.session_id,
        "location_id": result.location_id,
        "bottle_count": result.bottle_count,
        "new_bottles": result.new_bottles,
        "record": result.record,
    }


@router.post("/session/discard")
async def discard_session(m: ScanSessionManager = Depends(station_manager)):
    await m.discard_session()
    return m.snapshot()


@router.post("/reset")
async def reset(m: ScanSessionManager = Depends(station_manager)):
    await m.reset()
    return m.snapshot()


# ---- History ----
@router.get("/sessions")
def list_sessions(
    location_id: str | None = None,
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    org_id: str = Depends(require_organization),
):
    return [service.session_to_dict(r) for r in service.list_sessions(db, org_id, location_id, limit)]


@router.get("/sessions/{session_id}")
def get_session(session_id: str, db: Session = Depends(get_db), org_id: str = Depends(require_organization)):
    r = service.get_session(db, org_id, session_id)
    if not r:
        raise HTTPException(404, "Scan session not found")
    return service.session_to_dict(r)


# ---- Development ----
@router.post("/simulate/tag")
async def simulate_tag(payload: SimulatedTagIn, m: ScanSessionManager = Depends(station_manager)):
    station: ScanStation = get_station()
    reader = station.simulator
    if reader is None or not config.DEBUG_MODE:
        raise HTTPException(404, "Reader simulation is not enabled")
    reader.emit_tag(payload.rfid_tag, payload.rssi)
    return m.snapshot()
