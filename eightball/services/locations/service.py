from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from eightball.core.errors import ValidationError
from eightball.db.models.inventory import Bottle, Location
from eightball.db.models.scanning import ScanSessionRecord
from eightball.events.bus import publish

LOCATION_CODE_PATTERN = r"^[A-Z0-9_-]+$"


# ---- Schemas ----
class LocationIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=1, max_length=100)
    code: str = Field(..., min_length=1, max_length=20, pattern=LOCATION_CODE_PATTERN)
    settings: dict = Field(default_factory=dict)
    is_active: bool = True


class LocationUpdate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str | None = Field(default=None, min_length=1, max_length=100)
    code: str | None = Field(default=None, min_length=1, max_length=20, pattern=LOCATION_CODE_PATTERN)
    settings: dict | None = None
    is_active: bool | None = None


def location_to_dict(loc: Location) -> dict:
    return {
        "id": loc.id,
        "organization_id": loc.organization_id,
        "name": loc.name,
        "code": loc.code,
        "settings": loc.settings or {},
        "is_active": loc.is_active,
    }


def list_locations(db: Session, organization_id: str, include_inactive: bool = False) -> list[Location]:
    q = db.query(Location).filter(Location.organization_id == organization_id)
    if not include_inactive:
        q = q.filter(Location.is_active.is_(True))
    return q.order_by(Location.name.asc()).all()


def get_location(db: Session, organization_id: str, location_id: str) -> Location | None:
    return (
        db.query(Location)
        .filter(Location.organization_id == organization_id, Location.id == location_id)
        .first()
    )


def _check_code(db: Session, organization_id: str, code: str, exclude_id: str | None = None) -> None:
    q = db.query(Location.id).filter(Location.organization_id == organization_id, Location.code == code)
    if exclude_id:
        q = q.filter(Location.id != exclude_id)
    if q.first():
        raise ValidationError(
            f"Location code already exists: {code}",
            [{"field": "code", "message": f"{code} already exists"}],
        )


def create_location(db: Session, organization_id: str, data: LocationIn) -> Location:
    _check_code(db, organization_id, data.code)
    loc = Location(organization_id=organization_id, **data.model_dump())
    db.add(loc)
    db.flush()
    publish(db, "locations.created", {"ids": [loc.id]}, organization_id=organization_id, commit=False)
    db.commit()
    db.refresh(loc)
    return loc


def update_location(db: Session, organization_id: str, location_id: str, data: LocationUpdate) -> Location | None:
    loc = get_location(db, organization_id, location_id)
    if not loc:
        return None
    changes = {k: v for k, v in data.model_dump(exclude_unset=True).items() if v is not None}
    if "code" in changes:
        _check_code(db, organization_id, changes["code"], exclude_id=loc.id)
    for k, v in changes.items():
        setattr(loc, k, v)
    publish(db, "locations.updated", {"ids": [loc.id]}, organization_id=organization_id, commit=False)
    db.commit()
    db.refresh(loc)
    return loc


def delete_location(db: Session, organization_id: str, location_id: str) -> bool:
    """Delete a location; its bottles become unassigned.

    A location with confirmed scan sessions is deactivated instead so the
    session history keeps its reference.
    """
    loc = get_location(db, organization_id, location_id)
    if not loc:
        return False
    if db.query(ScanSessionRecord.id).filter(ScanSessionRecord.location_id == location_id).first():
        loc.is_active = False
        publish(db, "locations.updated", {"ids": [loc.id]}, organization_id=organization_id, commit=False)
        db.commit()
        return True
    (
        db.query(Bottle)
        .filter(Bottle.organization_id == organization_id, Bottle.location_id == location_id)
        .update({Bottle.location_id: None}, synchronize_session=False)
    )
    db.delete(loc)
    publish(db, "locations.deleted", {"ids": [location_id]}, organization_id=organization_id, commit=False)
    db.commit()
    return True
