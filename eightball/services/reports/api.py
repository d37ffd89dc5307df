from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from eightball.core.security import require_organization
from eightball.db.session import get_db
from eightball.services.inventory.service import bottle_to_dict
from eightball.services.reports import service

router = APIRouter(prefix="/reports", tags=["reports"])


@router.get("/dashboard")
def dashboard(db: Session = Depends(get_db), org_id: str = Depends(require_organization)):
    return service.dashboard_stats(db, org_id)


@router.get("/locations")
def locations(db: Session = Depends(get_db), org_id: str = Depends(require_organization)):
    return service.location_stats(db, org_id)


@router.get("/brands")
def brands(
    limit: int = Query(service.TOP_BRANDS, ge=1, le=100),
    db: Session = Depends(get_db),
    org_id: str = Depends(require_organization),
):
    return service.brand_stats(db, org_id, limit)


@router.get("/types")
def types(db: Session = Depends(get_db), org_id: str = Depends(require_organization)):
    return service.type_stats(db, org_id)


@router.get("/low-stock")
def low_stock(
    threshold: float | None = Query(None, gt=0, le=10),
    db: Session = Depends(get_db),
    org_id: str = Depends(require_organization),
):
    return [bottle_to_dict(b) for b in service.low_stock_items(db, org_id, threshold)]
