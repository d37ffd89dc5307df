from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from eightball.core.security import Principal, require_organization, require_role, require_user
from eightball.db.session import get_db
from eightball.services.inventory import service
from eightball.services.inventory.schemas import (
    BottleCreate,
    BottleFilters,
    BottleStatus,
    BottleType,
    BottleUpdate,
    Pagination,
    SortField,
)

router = APIRouter(prefix="/bottles", tags=["inventory"])


@router.get("")
def list_bottles(
    search: str | None = None,
    type: BottleType | None = None,
    status: BottleStatus | None = None,
    location_id: str | None = None,
    sort_by: SortField = "created_at",
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    org_id: str = Depends(require_organization),
):
    filters = BottleFilters(
        search=search, type=type, status=status, location_id=location_id, sort_by=sort_by, sort_order=sort_order
    )
    rows, total = service.list_bottles(db, org_id, filters, Pagination(page=page, limit=limit))
    return {
        "data": [service.bottle_to_dict(b) for b in rows],
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": (total + limit - 1) // limit,
    }


@router.get("/stats")
def inventory_stats(db: Session = Depends(get_db), org_id: str = Depends(require_organization)):
    return service.inventory_stats(db, org_id)


@router.get("/rfid/{rfid_tag}/unique")
def rfid_tag_unique(
    rfid_tag: str,
    exclude_id: str | None = None,
    db: Session = Depends(get_db),
    org_id: str = Depends(require_organization),
):
    return {"rfid_tag": rfid_tag, "unique": service.is_rfid_tag_unique(db, org_id, rfid_tag, exclude_id)}


@router.get("/location/{location_id}")
def bottles_by_location(location_id: str, db: Session = Depends(get_db), org_id: str = Depends(require_organization)):
    return [service.bottle_to_dict(b) for b in service.list_by_location(db, org_id, location_id)]


@router.get("/{bottle_id}")
def get_bottle(bottle_id: str, db: Session = Depends(get_db), org_id: str = Depends(require_organization)):
    b = service.get_bottle(db, org_id, bottle_id)
    if not b:
        raise HTTPException(404, "Bottle not found")
    return service.bottle_to_dict(b)


@router.post("", status_code=201)
def create_bottle(
    payload: BottleCreate,
    db: Session = Depends(get_db),
    org_id: str = Depends(require_organization),
    p: Principal = Depends(require_user),
):
    b = service.create_bottle(db, org_id, payload, user_id=p.user_id)
    return service.bottle_to_dict(b)


@router.post("/bulk", status_code=201)
def create_bottles_bulk(
    payload: list[BottleCreate],
    db: Session = Depends(get_db),
    org_id: str = Depends(require_organization),
    p: Principal = Depends(require_user),
):
    rows = service.create_bottles_bulk(db, org_id, payload, user_id=p.user_id)
    return [service.bottle_to_dict(b) for b in rows]


@router.patch("/{bottle_id}")
def update_bottle(
    bottle_id: str,
    payload: BottleUpdate,
    db: Session = Depends(get_db),
    org_id: str = Depends(require_organization),
    p: Principal = Depends(require_user),
):
    b = service.update_bottle(db, org_id, bottle_id, payload, user_id=p.user_id)
    if not b:
        raise HTTPException(404, "Bottle not found")
    return service.bottle_to_dict(b)


@router.delete("/{bottle_id}")
def delete_bottle(
    bottle_id: str,
    db: Session = Depends(get_db),
    org_id: str = Depends(require_organization),
    p: Principal = Depends(require_role("manager")),
):
    if not service.delete_bottle(db, org_id, bottle_id, user_id=p.user_id):
        raise HTTPException(404, "Bottle not found")
    return {"ok": True}
