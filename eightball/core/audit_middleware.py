from __future__ import annotations

import logging
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from sqlalchemy.exc import SQLAlchemyError

from eightball.core.security import ORGANIZATION_HEADER
from eightball.db import session as db_session
from eightball.core.audit import audit

logger = logging.getLogger(__name__)


def _get_request_id(request: Request) -> str:
    rid = request.headers.get("X-Request-Id") or request.headers.get("X-Request-ID")
    if rid:
        return rid
    return str(uuid.uuid4())


def _client_ip(request: Request) -> str | None:
    # Behind a proxy/load balancer, trust X-Forwarded-For (configure accordingly).
    xff = request.headers.get("X-Forwarded-For")
    if xff:
        return xff.split(",")[0].strip()
    if request.client:
        return request.client.host
    return None


def _record(request: Request, request_id: str, status_code: int, duration_ms: int, action: str) -> None:
    try:
        with db_session.SessionLocal() as db:
            audit(
                db,
                action=action,
                resource_type="http",
                resource_id=request.url.path,
                metadata={
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": status_code,
                    "duration_ms": duration_ms,
                    "ip_address": _client_ip(request),
                    "user_agent": request.headers.get("User-Agent"),
                },
                request_id=request_id,
                organization_id=request.headers.get(ORGANIZATION_HEADER),
            )
    except SQLAlchemyError:
        logger.exception("Could not write audit record for %s %s", request.method, request.url.path)


async def audit_http_middleware(request: Request, call_next: Callable) -> Response:
    """Request audit middleware.

    - Adds a correlation id (X-Request-Id)
    - Records unhandled errors and authorization failures as activity logs
    """
    request_id = _get_request_id(request)
    start = time.perf_counter()

    try:
        response = await call_next(request)
    except Exception:
        duration_ms = int((time.perf_counter() - start) * 1000)
        logger.exception("Unhandled error on %s %s [%s]", request.method, request.url.path, request_id)
        _record(request, request_id, 500, duration_ms, "http.exception")
        raise

    response.headers["X-Request-Id"] = request_id
    duration_ms = int((time.perf_counter() - start) * 1000)
    if response.status_code in (401, 403):
        _record(request, request_id, response.status_code, duration_ms, "http.denied")
    return response
