from __future__ import annotations

import json
from typing import Any

from sqlalchemy.orm import Session

from eightball.db.models.activity import ActivityLog


def audit(
    db: Session,
    *,
    action: str,
    resource_type: str,
    resource_id: str | None = None,
    user_id: str | None = None,
    metadata: dict | None = None,
    request_id: str | None = None,
    organization_id: str | None = None,
    commit: bool = True,
) -> ActivityLog:
    """Write an append-only activity record.

    Keep metadata JSON-serializable. With ``commit=False`` the row joins the
    caller's transaction.
    """
    safe_meta: dict[str, Any] = metadata or {}
    try:
        json.dumps(safe_meta)
    except (TypeError, ValueError):
        safe_meta = {"_metadata_error": "non_json", "_metadata_repr": repr(metadata)}

    row = ActivityLog(
        organization_id=organization_id,
        user_id=user_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=request_id,
        meta=safe_meta,
    )
    db.add(row)
    if commit:
        db.commit()
    else:
        db.flush()
    return row
