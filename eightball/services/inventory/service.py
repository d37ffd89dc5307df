from __future__ import annotations

import logging
from collections import Counter

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from eightball.core.audit import audit
from eightball.core.errors import DuplicateRfidTag, ValidationError
from eightball.db.models.inventory import BOTTLE_STATUSES, Bottle, Location
from eightball.events.bus import publish
from eightball.services.inventory.schemas import (
    SIZE_RE,
    BottleCreate,
    BottleFilters,
    BottleUpdate,
    Pagination,
)

logger = logging.getLogger(__name__)

DEFAULT_SIZE_ML = 750
ML_PER_UNIT = {"ml": 1.0, "cl": 10.0, "l": 1000.0, "oz": 29.5735}

_SORT_COLUMNS = {
    "created_at": Bottle.created_at,
    "updated_at": Bottle.updated_at,
    "brand": Bottle.brand,
    "product": Bottle.product,
    "type": Bottle.type,
    "current_quantity": Bottle.current_quantity,
    "last_scanned": Bottle.last_scanned,
}


def parse_size(size: str | None) -> int:
    """Size text ("750ml", "1L", "70cl", "25.4oz") to whole millilitres."""
    m = SIZE_RE.match((size or "").strip())
    if not m:
        return DEFAULT_SIZE_ML
    return round(float(m.group(1)) * ML_PER_UNIT[m.group(2).lower()])


def bottle_to_dict(b: Bottle) -> dict:
    return {
        "id": b.id,
        "organization_id": b.organization_id,
        "location_id": b.location_id,
        "location_name": b.location.name if b.location else None,
        "rfid_tag": b.rfid_tag,
        "brand": b.brand,
        "product": b.product,
        "type": b.type,
        "tier": b.tier,
        "size": b.size,
        "size_ml": b.size_ml,
        "cost_price": b.cost_price,
        "retail_price": b.retail_price,
        "current_quantity": b.current_quantity,
        "status": b.status,
        "last_scanned": b.last_scanned.isoformat() if b.last_scanned else None,
        "metadata": b.meta or {},
        "created_at": b.created_at.isoformat() if b.created_at else None,
        "updated_at": b.updated_at.isoformat() if b.updated_at else None,
    }


def _base_query(db: Session, organization_id: str):
    return db.query(Bottle).filter(Bottle.organization_id == organization_id)


def _check_location(db: Session, organization_id: str, location_id: str | None) -> None:
    if not location_id:
        return
    exists = (
        db.query(Location.id)
        .filter(Location.organization_id == organization_id, Location.id == location_id)
        .first()
    )
    if not exists:
        raise ValidationError("Unknown location", [{"field": "location_id", "message": "Location not found"}])


def is_rfid_tag_unique(db: Session, organization_id: str, rfid_tag: str, exclude_id: str | None = None) -> bool:
    q = _base_query(db, organization_id).filter(Bottle.rfid_tag == rfid_tag)
    if exclude_id:
        q = q.filter(Bottle.id != exclude_id)
    return q.first() is None


def list_bottles(
    db: Session,
    organization_id: str,
    filters: BottleFilters | None = None,
    pagination: Pagination | None = None,
) -> tuple[list[Bottle], int]:
    """Return one page of bottles and the total matching the filters."""
    filters = filters or BottleFilters()
    pagination = pagination or Pagination()

    q = _base_query(db, organization_id)
    if filters.search:
        term = f"%{filters.search.strip()}%"
        q = q.filter(or_(Bottle.brand.ilike(term), Bottle.product.ilike(term), Bottle.rfid_tag.ilike(term)))
    if filters.type:
        q = q.filter(Bottle.type == filters.type)
    if filters.status:
        q = q.filter(Bottle.status == filters.status)
    if filters.location_id == "unassigned":
        q = q.filter(Bottle.location_id.is_(None))
    elif filters.location_id:
        q = q.filter(Bottle.location_id == filters.location_id)

    total = q.count()

    col = _SORT_COLUMNS[filters.sort_by]
    q = q.order_by(col.asc() if filters.sort_order == "asc" else col.desc(), Bottle.id.asc())
    rows = q.offset(pagination.offset).limit(pagination.limit).all()
    return rows, total


def get_bottle(db: Session, organization_id: str, bottle_id: str) -> Bottle | None:
    return _base_query(db, organization_id).filter(Bottle.id == bottle_id).first()


def list_by_location(db: Session, organization_id: str, location_id: str) -> list[Bottle]:
    return (
        _base_query(db, organization_id)
        .filter(Bottle.location_id == location_id)
        .order_by(Bottle.brand.asc(), Bottle.product.asc())
        .all()
    )


def list_known_bottles(db: Session, organization_id: str) -> list[Bottle]:
    """Every bottle of the organization; the scan station resolves tags against this."""
    return _base_query(db, organization_id).order_by(Bottle.brand.asc()).all()


def _new_bottle(organization_id: str, data: BottleCreate) -> Bottle:
    return Bottle(
        organization_id=organization_id,
        location_id=data.location_id,
        rfid_tag=data.rfid_tag,
        brand=data.brand,
        product=data.product,
        type=data.type,
        tier=data.tier,
        size=data.size,
        size_ml=parse_size(data.size),
        cost_price=data.cost_price,
        retail_price=data.retail_price,
        current_quantity=data.current_quantity,
        status=data.status,
        meta=data.metadata or {},
    )


def create_bottle(db: Session, organization_id: str, data: BottleCreate, *, user_id: str | None = None) -> Bottle:
    if not is_rfid_tag_unique(db, organization_id, data.rfid_tag):
        raise DuplicateRfidTag([data.rfid_tag])
    _check_location(db, organization_id, data.location_id)

    b = _new_bottle(organization_id, data)
    db.add(b)
    db.flush()
    publish(
        db,
        "bottles.created",
        {"ids": [b.id], "rfid_tags": [b.rfid_tag], "location_id": b.location_id, "user_id": user_id},
        organization_id=organization_id,
        commit=False,
    )
    _commit_or_duplicate(db, [data.rfid_tag])
    db.refresh(b)
    return b


def create_bottles_bulk(
    db: Session,
    organization_id: str,
    items: list[BottleCreate],
    *,
    user_id: str | None = None,
) -> list[Bottle]:
    """Create a batch of bottles in one transaction. Nothing is written if any tag is taken."""
    if not items:
        return []

    tags = [i.rfid_tag for i in items]
    repeated = sorted(t for t, n in Counter(tags).items() if n > 1)
    if repeated:
        raise DuplicateRfidTag(repeated)

    taken = (
        _base_query(db, organization_id)
        .with_entities(Bottle.rfid_tag)
        .filter(Bottle.rfid_tag.in_(tags))
        .all()
    )
    if taken:
        raise DuplicateRfidTag(sorted(t for (t,) in taken))

    for location_id in {i.location_id for i in items if i.location_id}:
        _check_location(db, organization_id, location_id)

    bottles = [_new_bottle(organization_id, i) for i in items]
    db.add_all(bottles)
    db.flush()

    ids = [b.id for b in bottles]
    audit(
        db,
        action="bulk_inventory_processing",
        resource_type="bottle",
        user_id=user_id,
        organization_id=organization_id,
        metadata={"bottle_count": len(bottles), "bottle_ids": ids},
        commit=False,
    )
    publish(
        db,
        "bottles.created",
        {"ids": ids, "rfid_tags": tags, "user_id": user_id},
        organization_id=organization_id,
        commit=False,
    )
    _commit_or_duplicate(db, tags)
    for b in bottles:
        db.refresh(b)
    logger.info("Created %d bottles for organization %s", len(bottles), organization_id)
    return bottles


def _commit_or_duplicate(db: Session, rfid_tags: list[str]) -> None:
    try:
        db.commit()
    except IntegrityError as e:
        # Lost a race with a concurrent insert of the same tag
        db.rollback()
        raise DuplicateRfidTag(rfid_tags) from e


def update_bottle(
    db: Session,
    organization_id: str,
    bottle_id: str,
    data: BottleUpdate,
    *,
    user_id: str | None = None,
) -> Bottle | None:
    b = get_bottle(db, organization_id, bottle_id)
    if not b:
        return None

    changes = data.model_dump(exclude_unset=True)
    if changes.get("rfid_tag") and not is_rfid_tag_unique(db, organization_id, changes["rfid_tag"], exclude_id=b.id):
        raise DuplicateRfidTag([changes["rfid_tag"]])
    if "location_id" in changes:
        _check_location(db, organization_id, changes["location_id"])

    for field in ("brand", "product", "type", "rfid_tag", "status", "size", "current_quantity"):
        if changes.get(field) is not None:
            setattr(b, field, changes[field])
    for field in ("tier", "cost_price", "retail_price", "location_id"):
        if field in changes:
            setattr(b, field, changes[field])
    if changes.get("size"):
        b.size_ml = parse_size(changes["size"])
    if changes.get("metadata") is not None:
        b.meta = {**(b.meta or {}), **changes["metadata"]}

    publish(
        db,
        "bottles.updated",
        {"ids": [b.id], "fields": sorted(changes), "user_id": user_id},
        organization_id=organization_id,
        commit=False,
    )
    _commit_or_duplicate(db, [b.rfid_tag])
    db.refresh(b)
    return b


def delete_bottle(db: Session, organization_id: str, bottle_id: str, *, user_id: str | None = None) -> bool:
    b = get_bottle(db, organization_id, bottle_id)
    if not b:
        return False
    db.delete(b)
    publish(
        db,
        "bottles.deleted",
        {"ids": [bottle_id], "rfid_tags": [b.rfid_tag], "user_id": user_id},
        organization_id=organization_id,
        commit=False,
    )
    db.commit()
    return True


def inventory_stats(db: Session, organization_id: str) -> dict:
    rows = (
        _base_query(db, organization_id)
        .with_entities(Bottle.status, func.count(Bottle.id))
        .group_by(Bottle.status)
        .all()
    )
    by_status = {s: 0 for s in BOTTLE_STATUSES}
    for status, n in rows:
        by_status[status] = n
    return {"total": sum(by_status.values()), **by_status}
