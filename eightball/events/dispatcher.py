from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta

import httpx
from sqlalchemy.orm import Session, sessionmaker

from eightball.db.models.common import utcnow
from eightball.db.session import SessionLocal
from eightball.events.outbox import OutboxEvent
from eightball.events.realtime import RealtimeHub, hub as default_hub
from eightball.events.subscriptions import EventSubscription

logger = logging.getLogger(__name__)


def _pattern_matches(pattern: str, topic: str) -> bool:
    """Very small pattern helper.

    Supported:
      - exact match
      - prefix match using trailing '.'
      - wildcard 'prefix.*' treated as prefix match
    """
    if not pattern:
        return False
    if pattern == topic:
        return True
    if pattern.endswith(".*"):
        return topic.startswith(pattern[:-1])  # keep trailing '.'
    if pattern.endswith("."):
        return topic.startswith(pattern)
    return False


def _get_matching_subs(db: Session, evt: OutboxEvent) -> list[EventSubscription]:
    if not evt.organization_id:
        return []
    subs = (
        db.query(EventSubscription)
        .filter(EventSubscription.is_active == True)  # noqa: E712
        .filter(EventSubscription.organization_id == evt.organization_id)
        .all()
    )
    return [s for s in subs if _pattern_matches(s.topic_pattern, evt.topic)]


async def _deliver_one(client: httpx.AsyncClient, sub: EventSubscription, evt: OutboxEvent) -> tuple[bool, str | None]:
    headers = {k: str(v) for k, v in (sub.headers or {}).items()}
    body = {
        "topic": evt.topic,
        "event_id": evt.id,
        "organization_id": evt.organization_id,
        "created_at": evt.created_at.isoformat() if evt.created_at else None,
        "payload": evt.payload or {},
    }
    try:
        resp = await client.post(sub.target_url, json=body, headers=headers, timeout=10.0)
        if 200 <= resp.status_code < 300:
            return True, None
        return False, f"HTTP {resp.status_code}: {resp.text[:300]}"
    except httpx.HTTPError as e:
        return False, str(e)


def _schedule_next(attempt_count: int) -> datetime:
    # Exponential backoff capped at 10 minutes
    seconds = min(600, 2 ** min(attempt_count, 9))
    return utcnow() + timedelta(seconds=seconds)


async def run_dispatcher_forever(
    *,
    poll_interval_seconds: float = 1.0,
    session_factory: sessionmaker = SessionLocal,
    realtime: RealtimeHub = default_hub,
) -> None:
    """Background worker that delivers outbox events.

    Every event is pushed once to in-process realtime subscribers, then to the
    organization's webhook subscriptions with retry and backoff.
    """
    async with httpx.AsyncClient() as client:
        while True:
            try:
                await dispatch_batch(client, session_factory=session_factory, realtime=realtime)
            except Exception:
                # A bad batch must not kill the worker; it is retried next tick.
                logger.exception("Outbox dispatch failed")
            await asyncio.sleep(poll_interval_seconds)


async def dispatch_batch(
    client: httpx.AsyncClient,
    *,
    session_factory: sessionmaker = SessionLocal,
    realtime: RealtimeHub = default_hub,
) -> int:
    """Deliver one batch of due events. Returns the number of events looked at."""
    db = session_factory()
    try:
        now = utcnow()
        events = (
            db.query(OutboxEvent)
            .filter(OutboxEvent.delivered == False)  # noqa: E712
            .filter(OutboxEvent.available_at <= now)
            .order_by(OutboxEvent.created_at.asc())
            .limit(50)
            .all()
        )
        if not events:
            return 0

        for evt in events:
            if evt.attempt_count == 0:
                await realtime.notify(evt.table, evt.organization_id, {"topic": evt.topic, **(evt.payload or {})})

            subs = _get_matching_subs(db, evt)
            if not subs:
                # Nobody listens; mark delivered to avoid infinite growth
                evt.delivered = True
                evt.delivered_at = utcnow()
                continue

            # Event considered delivered when all subscriptions succeed
            all_ok = True
            last_err = None
            for sub in subs:
                ok, err = await _deliver_one(client, sub, evt)
                if ok:
                    sub.last_error = None
                    sub.failure_count = 0
                    sub.last_delivered_at = utcnow()
                else:
                    all_ok = False
                    last_err = err
                    sub.last_error = err
                    sub.failure_count = (sub.failure_count or 0) + 1
                    logger.warning("Webhook %s failed for %s: %s", sub.name, evt.topic, err)

            if all_ok:
                evt.delivered = True
                evt.delivered_at = utcnow()
                evt.last_error = None
            else:
                evt.attempt_count = (evt.attempt_count or 0) + 1
                evt.last_error = last_err
                evt.available_at = _schedule_next(evt.attempt_count)

        db.commit()
        return len(events)
    finally:
        db.close()
