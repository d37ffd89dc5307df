from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from eightball.core.audit import audit
from eightball.core.errors import SessionStateError, ValidationError
from eightball.db.models.common import utcnow
from eightball.db.models.inventory import Bottle, Location
from eightball.db.models.scanning import ScanSessionRecord
from eightball.events.bus import publish

logger = logging.getLogger(__name__)


def session_to_dict(r: ScanSessionRecord) -> dict:
    return {
        "id": r.id,
        "organization_id": r.organization_id,
        "location_id": r.location_id,
        "user_id": r.user_id,
        "started_at": r.started_at.isoformat() if r.started_at else None,
        "completed_at": r.completed_at.isoformat() if r.completed_at else None,
        "bottle_count": r.bottle_count,
        "metadata": r.meta or {},
    }


def _as_datetime(value) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def get_session(db: Session, organization_id: str, session_id: str) -> ScanSessionRecord | None:
    return (
        db.query(ScanSessionRecord)
        .filter(ScanSessionRecord.organization_id == organization_id, ScanSessionRecord.id == session_id)
        .first()
    )


def list_sessions(
    db: Session,
    organization_id: str,
    location_id: str | None = None,
    limit: int = 50,
) -> list[ScanSessionRecord]:
    q = db.query(ScanSessionRecord).filter(ScanSessionRecord.organization_id == organization_id)
    if location_id:
        q = q.filter(ScanSessionRecord.location_id == location_id)
    return q.order_by(ScanSessionRecord.started_at.desc()).limit(limit).all()


def complete_session(
    db: Session,
    organization_id: str,
    *,
    session_id: str,
    location_id: str,
    started_at: datetime,
    bottles: list[dict],
    user_id: str | None = None,
) -> ScanSessionRecord:
    """Apply a confirmed scan session to the inventory in one transaction.

    ``bottles`` holds ``{bottle_id, rfid_tag, is_new, scanned_at}`` entries.
    Every scanned bottle gets ``last_scanned`` and is moved to the session's
    location. Completing the same session id twice returns the first record.
    """
    existing = db.query(ScanSessionRecord).filter(ScanSessionRecord.id == session_id).first()
    if existing:
        if existing.organization_id != organization_id:
            raise SessionStateError("Scan session belongs to another organization")
        logger.info("Scan session %s already completed", session_id)
        return existing

    if not bottles:
        raise SessionStateError("Scan at least one bottle before confirming the session")

    location = (
        db.query(Location)
        .filter(Location.organization_id == organization_id, Location.id == location_id)
        .first()
    )
    if not location:
        raise ValidationError("Unknown location", [{"field": "location_id", "message": "Location not found"}])

    scanned = {b["bottle_id"]: b for b in bottles}
    rows = (
        db.query(Bottle)
        .filter(Bottle.organization_id == organization_id, Bottle.id.in_(list(scanned)))
        .all()
    )
    missing = sorted(set(scanned) - {b.id for b in rows})
    if missing:
        raise ValidationError(
            "Scanned bottles no longer exist",
            [{"field": "bottle_id", "message": f"{bid} not found"} for bid in missing],
        )

    now = utcnow()
    for b in rows:
        b.last_scanned = _as_datetime(scanned[b.id].get("scanned_at")) or now
        b.location_id = location_id

    new_count = sum(1 for b in bottles if b.get("is_new"))
    record = ScanSessionRecord(
        id=session_id,
        organization_id=organization_id,
        location_id=location_id,
        user_id=user_id,
        started_at=started_at,
        completed_at=now,
        bottle_count=len(bottles),
        meta={
            "new_bottles": new_count,
            "bottles": [
                {
                    "bottle_id": b["bottle_id"],
                    "rfid_tag": b["rfid_tag"],
                    "is_new": bool(b.get("is_new")),
                    "scanned_at": _as_datetime(b.get("scanned_at")).isoformat() if b.get("scanned_at") else None,
                }
                for b in bottles
            ],
        },
    )
    db.add(record)

    summary = {"location_id": location_id, "bottle_count": len(bottles), "new_bottles": new_count}
    audit(
        db,
        action="scan_session_completed",
        resource_type="scan_session",
        resource_id=session_id,
        user_id=user_id,
        organization_id=organization_id,
        metadata=summary,
        commit=False,
    )
    publish(db, "scan_sessions.completed", {"id": session_id, **summary}, organization_id=organization_id, commit=False)
    publish(db, "bottles.scanned", {"ids": list(scanned), "session_id": session_id}, organization_id=organization_id, commit=False)

    try:
        db.commit()
    except IntegrityError:
        # A concurrent confirm of the same session won
        db.rollback()
        existing = get_session(db, organization_id, session_id)
        if existing:
            return existing
        raise
    db.refresh(record)
    logger.info(
        "Scan session %s completed: %d bottles (%d new) at location %s",
        session_id,
        len(bottles),
        new_count,
        location_id,
    )
    return record
