from __future__ import annotations

import asyncio
import contextlib
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from eightball.core import config
from eightball.core.audit_middleware import audit_http_middleware
from eightball.core.errors import EightBallError, HardwareError
from eightball.db.base import Base
from eightball.db.session import engine
from eightball.rfid.troubleshooting import classify_error

# Register models
from eightball.db import models  # noqa: F401

from eightball.events.api import router as events_router
from eightball.services.inventory.api import router as inventory_router
from eightball.services.locations.api import router as locations_router
from eightball.services.organizations.api import router as organizations_router
from eightball.services.reports.api import router as reports_router
from eightball.services.scanning.api import router as scanning_router
from eightball.services.scanning.station import ScanStation, get_station, set_station

logger = logging.getLogger(__name__)

app = FastAPI(title=config.APP_NAME, version=config.APP_VERSION, debug=config.DEBUG_MODE)


@app.middleware("http")
async def _audit(request, call_next):
    return await audit_http_middleware(request, call_next)


@app.exception_handler(EightBallError)
async def _eightball_error(request: Request, exc: EightBallError):
    body = exc.to_dict()
    if isinstance(exc, HardwareError):
        logger.warning("Hardware error on %s %s: %s", request.method, request.url.path, exc.message)
        body["troubleshooting"] = classify_error(exc).to_dict()
    return JSONResponse(status_code=exc.status_code, content=body)


app.include_router(inventory_router)
app.include_router(locations_router)
app.include_router(organizations_router)
app.include_router(reports_router)
app.include_router(scanning_router)
app.include_router(events_router)


@app.on_event("startup")
async def _startup():
    config.configure_logging()
    config.validate_environment()

    # Dev-friendly schema creation; production schemas are managed by the datastore
    Base.metadata.create_all(bind=engine)

    from eightball.events.dispatcher import run_dispatcher_forever

    app.state.dispatcher = asyncio.create_task(
        run_dispatcher_forever(poll_interval_seconds=config.EVENT_POLL_SECONDS)
    )

    station = ScanStation.from_config()
    await station.open()
    set_station(station)


@app.on_event("shutdown")
async def _shutdown():
    task = getattr(app.state, "dispatcher", None)
    if task is not None:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    with contextlib.suppress(HardwareError):
        await get_station().close()
    set_station(None)


@app.get("/health")
def health():
    return {"ok": True, "service": config.APP_NAME, "version": config.APP_VERSION, "environment": config.APP_ENV}
