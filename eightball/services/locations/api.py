from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from eightball.core.security import require_organization, require_role
from eightball.db.session import get_db
from eightball.services.locations.service import (
    LocationIn,
    LocationUpdate,
    create_location,
    delete_location,
    get_location,
    list_locations,
    location_to_dict,
    update_location,
)

router = APIRouter(prefix="/locations", tags=["locations"])


@router.get("")
def list_(include_inactive: bool = False, db: Session = Depends(get_db), org_id: str = Depends(require_organization)):
    return [location_to_dict(x) for x in list_locations(db, org_id, include_inactive)]


@router.get("/{location_id}")
def get(location_id: str, db: Session = Depends(get_db), org_id: str = Depends(require_organization)):
    loc = get_location(db, org_id, location_id)
    if not loc:
        raise HTTPException(404, "Location not found")
    return location_to_dict(loc)


@router.post("", status_code=201, dependencies=[Depends(require_role("manager"))])
def create(payload: LocationIn, db: Session = Depends(get_db), org_id: str = Depends(require_organization)):
    return location_to_dict(create_location(db, org_id, payload))


@router.patch("/{location_id}", dependencies=[Depends(require_role("manager"))])
def update(
    location_id: str,
    payload: LocationUpdate,
    db: Session = Depends(get_db),
    org_id: str = Depends(require_organization),
):
    loc = update_location(db, org_id, location_id, payload)
    if not loc:
        raise HTTPException(404, "Location not found")
    return location_to_dict(loc)


@router.delete("/{location_id}", dependencies=[Depends(require_role("company_admin"))])
def delete(location_id: str, db: Session = Depends(get_db), org_id: str = Depends(require_organization)):
    if not delete_location(db, org_id, location_id):
        raise HTTPException(404, "Location not found")
    return {"ok": True}
