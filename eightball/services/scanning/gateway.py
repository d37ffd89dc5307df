from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Protocol

from starlette.concurrency import run_in_threadpool

from eightball.db import session as db_session
from eightball.services.inventory import service as inventory
from eightball.services.inventory.schemas import BottleCreate
from eightball.services.locations import service as locations
from eightball.services.scanning import service as scanning


class InventoryGateway(Protocol):
    """What the session manager needs from the datastore. Bottles travel as dicts."""

    async def list_known_bottles(self, organization_id: str) -> list[dict]: ...

    async def list_locations(self, organization_id: str) -> list[dict]: ...

    async def create_bottles(
        self, organization_id: str, items: list[BottleCreate], *, user_id: str | None = None
    ) -> list[dict]: ...

    async def complete_session(
        self,
        organization_id: str,
        *,
        session_id: str,
        location_id: str,
        started_at: datetime,
        bottles: list[dict],
        user_id: str | None = None,
    ) -> dict: ...


class SqlInventoryGateway:
    """InventoryGateway over the SQLAlchemy services, run off the event loop."""

    def __init__(self, session_factory: Callable | None = None):
        self._session_factory = session_factory

    def _run(self, fn: Callable, *args: Any, **kwargs: Any):
        factory = self._session_factory or db_session.SessionLocal
        db = factory()
        try:
            return fn(db, *args, **kwargs)
        finally:
            db.close()

    async def list_known_bottles(self, organization_id: str) -> list[dict]:
        def _q(db):
            return [inventory.bottle_to_dict(b) for b in inventory.list_known_bottles(db, organization_id)]

        return await run_in_threadpool(self._run, _q)

    async def list_locations(self, organization_id: str) -> list[dict]:
        def _q(db):
            return [locations.location_to_dict(x) for x in locations.list_locations(db, organization_id)]

        return await run_in_threadpool(self._run, _q)

    async def create_bottles(self, organization_id: str, items: list[BottleCreate], *, user_id: str | None = None) -> list[dict]:
        def _q(db):
            rows = inventory.create_bottles_bulk(db, organization_id, items, user_id=user_id)
            return [inventory.bottle_to_dict(b) for b in rows]

        return await run_in_threadpool(self._run, _q)

    async def complete_session(self, organization_id: str, **kwargs: Any) -> dict:
        def _q(db):
            return scanning.session_to_dict(scanning.complete_session(db, organization_id, **kwargs))

        return await run_in_threadpool(self._run, _q)
