from __future__ import annotations

from datetime import datetime

from sqlalchemy.orm import Session

from eightball.db.models.common import utcnow
from eightball.events.outbox import OutboxEvent


def publish(
    db: Session,
    topic: str,
    payload: dict,
    *,
    organization_id: str | None = None,
    available_at: datetime | None = None,
    commit: bool = True,
) -> OutboxEvent:
    """Publish an event by writing to the transactional outbox.

    Pass ``commit=False`` to publish inside a caller-owned transaction; the
    event then becomes visible only if that transaction commits.
    """
    evt = OutboxEvent(
        topic=topic,
        organization_id=organization_id,
        payload=payload or {},
        available_at=available_at or utcnow(),
        delivered=False,
        attempt_count=0,
    )
    db.add(evt)
    if commit:
        db.commit()
        db.refresh(evt)
    else:
        db.flush()
    return evt
