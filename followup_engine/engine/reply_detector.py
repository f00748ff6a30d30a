# followup_engine/engine/reply_detector.py
from __future__ import annotations
import logging
from datetime import timedelta
from typing import List, Optional

from followup_engine.common.clock import Clock, SystemClock
from followup_engine.common.metrics import REPLIES_DETECTED
from followup_engine.domain.models import AutomationRun, Touchpoint, TouchpointFilters
from followup_engine.engine.runs import RunStateMachine
from followup_engine.repo.base import EngineStore

log = logging.getLogger("followups.replies")


class ReplyDetector:
    """
    Halts active runs when the student writes back.

    Correlation is by student id only. With halt_all_channels=True (default)
    any inbound touchpoint stops every active run of the student; otherwise
    only runs whose snapshot uses the inbound channel are stopped.
    """

    def __init__(
        self,
        store: EngineStore,
        runs: RunStateMachine,
        *,
        clock: Optional[Clock] = None,
        halt_all_channels: bool = True,
    ):
        self.store = store
        self.runs = runs
        self.clock = clock or SystemClock()
        self.halt_all_channels = halt_all_channels

    def _affected(self, run: AutomationRun, tp: Touchpoint) -> bool:
        if not run.is_active:
            return False
        # a reply that predates the run is not an answer to it
        if tp.occurred_at < run.started_at:
            return False
        return self.halt_all_channels or tp.channel in run.channels

    async def on_touchpoint(self, tp: Touchpoint) -> List[AutomationRun]:
        """Ledger listener. Returns the runs that were halted."""
        if tp.direction != "inbound":
            return []

        halted = []
        for run in await self.runs.active_for_student(tp.student_id):
            if not self._affected(run, tp):
                continue
            result = await self.runs.on_reply_detected(run.id)
            if result.status == "answer_received":
                REPLIES_DETECTED.labels(channel=tp.channel).inc()
                halted.append(result)
        if halted:
            log.info(
                "Inbound %s from student %s halted %d follow-up(s): %s",
                tp.channel, tp.student_id, len(halted), [r.id for r in halted],
            )
        return halted

    async def sweep_recent(self, hours_back: float = 1) -> List[AutomationRun]:
        """
        Re-check inbound touchpoints of the last `hours_back` hours and halt any
        run they should have stopped. Picks up replies stored while no listener
        was attached (bulk imports, a crashed request after the insert).
        """
        since = self.clock.now() - timedelta(hours=hours_back)
        filters = TouchpointFilters(direction="inbound", since=since)

        halted: List[AutomationRun] = []
        offset, batch = 0, 200
        while True:
            items, total = await self.store.list_touchpoints(filters, offset, batch)
            for tp in items:
                halted.extend(await self.on_touchpoint(tp))
            offset += len(items)
            if not items or offset >= total:
                break
        log.info("Engagement sweep over last %sh: %d follow-up(s) halted", hours_back, len(halted))
        return halted
