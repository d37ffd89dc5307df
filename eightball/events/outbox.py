from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, Integer, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from eightball.db.base import Base
from eightball.db.models.common import HasCreatedAt, HasId, utcnow


class OutboxEvent(Base, HasId, HasCreatedAt):
    """Transactional outbox.

    Services publish change events by inserting rows in the same transaction as
    the change itself. The dispatcher (see eightball.events.dispatcher) pushes
    them to in-process realtime subscribers and to webhook subscriptions.

    Topics are ``<table>.<change>``, e.g. ``bottles.created``.
    """

    __tablename__ = "outbox_event"

    topic: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    organization_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    payload: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

    # Delivery state
    available_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    attempt_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    delivered: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def table(self) -> str:
        return self.topic.split(".", 1)[0]


Index("ix_outbox_topic_created", OutboxEvent.topic, OutboxEvent.created_at)
Index("ix_outbox_delivery", OutboxEvent.delivered, OutboxEvent.available_at)
