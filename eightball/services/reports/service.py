"""Read-only aggregations behind the dashboard and report pages.

Values are retail price times current quantity; a bottle without a retail
price contributes nothing. Aggregation happens in Python over one query per
report, which is plenty for a single organization's inventory.
"""

from __future__ import annotations

from sqlalchemy import func
from sqlalchemy.orm import Session

from eightball.core import config
from eightball.db.models.inventory import Bottle, Location
from eightball.db.models.scanning import ScanSessionRecord

UNASSIGNED = "Unassigned"
TOP_BRANDS = 20


def bottle_value(b: Bottle) -> float:
    return float(b.retail_price or 0) * float(b.current_quantity or 0)


def _is_low(b: Bottle, threshold: float) -> bool:
    return b.status == "active" and float(b.current_quantity or 0) < threshold


def _bottles(db: Session, organization_id: str) -> list[Bottle]:
    return db.query(Bottle).filter(Bottle.organization_id == organization_id).all()


def dashboard_stats(db: Session, organization_id: str, low_stock_threshold: float | None = None) -> dict:
    threshold = config.LOW_STOCK_THRESHOLD if low_stock_threshold is None else low_stock_threshold
    bottles = _bottles(db, organization_id)
    locations = (
        db.query(func.count(Location.id))
        .filter(Location.organization_id == organization_id, Location.is_active.is_(True))
        .scalar()
    )
    last_session = (
        db.query(ScanSessionRecord)
        .filter(ScanSessionRecord.organization_id == organization_id)
        .order_by(ScanSessionRecord.completed_at.desc())
        .first()
    )
    return {
        "total_bottles": len(bottles),
        "total_value": round(sum(bottle_value(b) for b in bottles), 2),
        "active_bottles": sum(1 for b in bottles if b.status == "active"),
        "low_stock_count": sum(1 for b in bottles if _is_low(b, threshold)),
        "location_count": locations or 0,
        "last_scan_at": last_session.completed_at.isoformat() if last_session and last_session.completed_at else None,
    }


def location_stats(db: Session, organization_id: str, low_stock_threshold: float | None = None) -> list[dict]:
    threshold = config.LOW_STOCK_THRESHOLD if low_stock_threshold is None else low_stock_threshold
    locations = (
        db.query(Location)
        .filter(Location.organization_id == organization_id, Location.is_active.is_(True))
        .order_by(Location.name.asc())
        .all()
    )
    by_location: dict[str, list[Bottle]] = {}
    for b in _bottles(db, organization_id):
        if b.location_id:
            by_location.setdefault(b.location_id, []).append(b)

    out = []
    for loc in locations:
        rows = by_location.get(loc.id, [])
        out.append({
            "location_id": loc.id,
            "name": loc.name,
            "code": loc.code,
            "bottle_count": len(rows),
            "active_bottles": sum(1 for b in rows if b.status == "active"),
            "total_value": round(sum(bottle_value(b) for b in rows), 2),
            "low_stock_count": sum(1 for b in rows if _is_low(b, threshold)),
        })
    return out


def brand_stats(db: Session, organization_id: str, limit: int = TOP_BRANDS) -> list[dict]:
    """Brands ranked by total value, with a per-location bottle count."""
    brands: dict[str, dict] = {}
    for b in _bottles(db, organization_id):
        row = brands.setdefault(b.brand, {"brand": b.brand, "count": 0, "total_value": 0.0, "total_quantity": 0.0, "locations": {}})
        row["count"] += 1
        row["total_value"] += bottle_value(b)
        row["total_quantity"] += float(b.current_quantity or 0)
        loc_name = b.location.name if b.location else UNASSIGNED
        row["locations"][loc_name] = row["locations"].get(loc_name, 0) + 1

    ranked = sorted(brands.values(), key=lambda r: (-r["total_value"], r["brand"]))[:limit]
    for r in ranked:
        r["total_value"] = round(r["total_value"], 2)
        r["average_quantity"] = round(r["total_quantity"] / r["count"], 2)
        r["total_quantity"] = round(r["total_quantity"], 2)
    return ranked


def type_stats(db: Session, organization_id: str) -> list[dict]:
    types: dict[str, dict] = {}
    for b in _bottles(db, organization_id):
        row = types.setdefault(b.type, {"type": b.type, "count": 0, "total_value": 0.0})
        row["count"] += 1
        row["total_value"] += bottle_value(b)
    out = sorted(types.values(), key=lambda r: (-r["count"], r["type"]))
    for r in out:
        r["total_value"] = round(r["total_value"], 2)
    return out


def low_stock_items(db: Session, organization_id: str, threshold: float | None = None) -> list[Bottle]:
    threshold = config.LOW_STOCK_THRESHOLD if threshold is None else threshold
    return (
        db.query(Bottle)
        .filter(
            Bottle.organization_id == organization_id,
            Bottle.status == "active",
            Bottle.current_quantity < threshold,
        )
        .order_by(Bottle.current_quantity.asc(), Bottle.brand.asc())
        .all()
    )
