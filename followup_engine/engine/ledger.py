# followup_engine/engine/ledger.py
from __future__ import annotations
import logging
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, Tuple

from followup_engine.common.clock import Clock, SystemClock, as_utc
from followup_engine.common.errors import UnknownTouchpoint
from followup_engine.domain.models import Touchpoint, TouchpointFilters, TouchpointPage
from followup_engine.repo.base import EngineStore

log = logging.getLogger("followups.ledger")

TouchpointListener = Callable[[Touchpoint], Awaitable[None]]

MAX_PAGE_SIZE = 200


class TouchpointLedger:
    """
    Append-only record of every inbound/outbound communication.

    - record() is idempotent on external_id (provider message id) and on the
      dispatcher's dispatch_key; a duplicate returns the stored row unchanged
    - listeners run for newly created rows; those subscribed with
      replay_duplicates=True also see deduped rows, so a redelivered event can
      finish work that failed after the first insert
    """

    def __init__(self, store: EngineStore, clock: Optional[Clock] = None):
        self.store = store
        self.clock = clock or SystemClock()
        self._listeners: List[Tuple[TouchpointListener, bool]] = []

    def subscribe(self, listener: TouchpointListener, *, replay_duplicates: bool = False) -> None:
        self._listeners.append((listener, replay_duplicates))

    async def record(self, touchpoint: Touchpoint) -> Tuple[Touchpoint, bool]:
        stored, created = await self.store.insert_touchpoint(touchpoint)
        if not created:
            log.info(
                "Duplicate touchpoint ignored | external_id=%s dispatch_key=%s existing=%s",
                touchpoint.external_id, touchpoint.dispatch_key, stored.id,
            )
            for listener, replay in self._listeners:
                if replay:
                    await listener(stored)
            return stored, False

        log.info(
            "✅ Recorded %s %s touchpoint %s for student %s (source=%s)",
            stored.direction, stored.channel, stored.id, stored.student_id, stored.source,
        )
        for listener, _ in self._listeners:
            await listener(stored)
        return stored, True

    async def get(self, touchpoint_id: str) -> Touchpoint:
        tp = await self.store.get_touchpoint(touchpoint_id)
        if tp is None:
            raise UnknownTouchpoint(f"touchpoint {touchpoint_id} not found")
        return tp

    async def list(self, filters: TouchpointFilters, page: int = 1, page_size: int = 50) -> TouchpointPage:
        page = max(1, page)
        page_size = max(1, min(page_size, MAX_PAGE_SIZE))
        items, total = await self.store.list_touchpoints(filters, (page - 1) * page_size, page_size)
        return TouchpointPage(items=items, page=page, page_size=page_size, total=total)

    async def history_for_run(self, run_id: str) -> List[Touchpoint]:
        filters = TouchpointFilters(automated_follow_up_id=run_id)
        history: List[Touchpoint] = []
        while True:
            items, total = await self.store.list_touchpoints(filters, len(history), MAX_PAGE_SIZE)
            history.extend(items)
            if not items or len(history) >= total:
                return history

    async def correct(
        self,
        touchpoint_id: str,
        *,
        message: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
    ) -> Touchpoint:
        """Narrow staff correction: only message and occurred_at may change."""
        tp = await self.get(touchpoint_id)
        changes = {}
        if message is not None:
            changes["message"] = message
        if occurred_at is not None:
            changes["occurred_at"] = as_utc(occurred_at)
        if not changes:
            return tp
        updated = await self.store.update_touchpoint(tp.model_copy(update=changes))
        log.info("Touchpoint %s corrected: %s", touchpoint_id, sorted(changes))
        return updated

    async def delete(self, touchpoint_id: str) -> None:
        if not await self.store.delete_touchpoint(touchpoint_id):
            raise UnknownTouchpoint(f"touchpoint {touchpoint_id} not found")
        log.warning("Touchpoint %s deleted by admin", touchpoint_id)
