from __future__ import annotations

import inspect
import logging
from collections import defaultdict
from typing import Any, Callable

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[dict], Any]


class RealtimeHub:
    """In-process change notifications keyed by (table, organization).

    Open scan sessions subscribe to ``bottles`` for their organization so that
    inventory created elsewhere eventually resolves as known.
    """

    def __init__(self) -> None:
        self._channels: dict[tuple[str, str], list[ChangeCallback]] = defaultdict(list)

    @staticmethod
    def channel_name(table: str, organization_id: str) -> str:
        return f"{table}-{organization_id}"

    def subscribe(self, table: str, organization_id: str, callback: ChangeCallback) -> Callable[[], None]:
        key = (table, organization_id)
        self._channels[key].append(callback)
        logger.debug("Subscribed to %s", self.channel_name(table, organization_id))

        def _unsubscribe() -> None:
            callbacks = self._channels.get(key) or []
            if callback in callbacks:
                callbacks.remove(callback)
            if not callbacks:
                self._channels.pop(key, None)

        return _unsubscribe

    def subscriber_count(self, table: str, organization_id: str) -> int:
        return len(self._channels.get((table, organization_id)) or [])

    async def notify(self, table: str, organization_id: str | None, payload: dict) -> int:
        """Invoke every subscriber of the channel. Returns how many were called."""
        if not organization_id:
            return 0
        callbacks = list(self._channels.get((table, organization_id)) or [])
        for cb in callbacks:
            try:
                result = cb(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Realtime subscriber failed on %s", self.channel_name(table, organization_id))
        return len(callbacks)


hub = RealtimeHub()
