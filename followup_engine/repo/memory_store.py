# followup_engine/repo/memory_store.py
from __future__ import annotations
import asyncio
import contextlib
from collections import defaultdict
from datetime import datetime, timedelta
from typing import AsyncIterator, Dict, List, Optional, Sequence, Tuple

from followup_engine.common.clock import Clock, SystemClock
from followup_engine.common.errors import ConcurrentModification, InvalidSequence, UnknownRun, UnknownTouchpoint
from followup_engine.domain.models import (
    AutomationRun,
    DueItem,
    RunFilters,
    SequenceTemplate,
    Touchpoint,
    TouchpointFilters,
    touchpoint_sort_key,
)
from followup_engine.repo.base import EngineStore


class InMemoryStore(EngineStore):
    """
    Process-local store used by tests and single-process dev servers.
    One asyncio.Lock guards all tables; per-run locks serialize run mutations.
    Rows are copied in and out so callers never share mutable state with the store.
    """

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or SystemClock()
        self._lock = asyncio.Lock()
        self._run_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._sequences: Dict[str, SequenceTemplate] = {}
        self._runs: Dict[str, AutomationRun] = {}
        self._due: Dict[str, DueItem] = {}
        self._touchpoints: Dict[str, Touchpoint] = {}
        self._by_external_id: Dict[str, str] = {}
        self._by_dispatch_key: Dict[str, str] = {}

    def _now(self) -> datetime:
        return self._clock.now()

    # -------------------- sequences --------------------

    async def insert_sequence(self, seq: SequenceTemplate) -> SequenceTemplate:
        async with self._lock:
            if any(s.backend_name == seq.backend_name for s in self._sequences.values()):
                raise InvalidSequence(f"backend_name {seq.backend_name!r} already exists")
            now = self._now()
            stored = seq.model_copy(update={"created_at": seq.created_at or now, "updated_at": now})
            self._sequences[stored.id] = stored
            return stored.model_copy()

    async def replace_sequence(self, seq: SequenceTemplate) -> SequenceTemplate:
        async with self._lock:
            if seq.id not in self._sequences:
                raise InvalidSequence(f"sequence {seq.id} does not exist")
            clash = [s for s in self._sequences.values() if s.backend_name == seq.backend_name and s.id != seq.id]
            if clash:
                raise InvalidSequence(f"backend_name {seq.backend_name!r} already exists")
            stored = seq.model_copy(update={"updated_at": self._now()})
            self._sequences[seq.id] = stored
            return stored.model_copy()

    async def get_sequence(self, sequence_id: str) -> Optional[SequenceTemplate]:
        seq = self._sequences.get(sequence_id)
        return seq.model_copy() if seq else None

    async def get_sequence_by_backend_name(self, backend_name: str) -> Optional[SequenceTemplate]:
        for seq in self._sequences.values():
            if seq.backend_name == backend_name:
                return seq.model_copy()
        return None

    async def list_sequences(self) -> List[SequenceTemplate]:
        return [s.model_copy() for s in sorted(self._sequences.values(), key=lambda s: s.display_name)]

    # -------------------- runs --------------------

    async def insert_run_if_no_active(
        self, run: AutomationRun, first_due: DueItem
    ) -> Tuple[AutomationRun, bool]:
        async with self._lock:
            for existing in self._runs.values():
                if (
                    existing.student_id == run.student_id
                    and existing.sequence_id == run.sequence_id
                    and existing.is_active
                ):
                    return existing.model_copy(), False
            now = self._now()
            stored = run.model_copy(update={"created_at": now, "updated_at": now})
            self._runs[stored.id] = stored
            self._put_due(first_due)
            return stored.model_copy(), True

    async def get_run(self, run_id: str) -> Optional[AutomationRun]:
        run = self._runs.get(run_id)
        return run.model_copy() if run else None

    async def list_runs(self, filters: RunFilters) -> List[AutomationRun]:
        runs = [r for r in self._runs.values() if filters.matches(r)]
        runs.sort(key=lambda r: (r.created_at or r.started_at, r.id), reverse=True)
        return [r.model_copy() for r in runs]

    async def save_run(
        self,
        run: AutomationRun,
        expected_version: int,
        *,
        due_updates: Sequence[DueItem] = (),
        enqueue: Optional[DueItem] = None,
        cancel_pending: bool = False,
    ) -> AutomationRun:
        async with self._lock:
            current = self._runs.get(run.id)
            if current is None:
                raise UnknownRun(run.id)
            if current.version != expected_version:
                raise ConcurrentModification(
                    f"run {run.id} is at version {current.version}, expected {expected_version}"
                )
            now = self._now()
            stored = run.model_copy(update={"version": expected_version + 1, "updated_at": now})
            self._runs[run.id] = stored
            for item in due_updates:
                self._put_due(item)
            if cancel_pending:
                for item in self._due.values():
                    if item.run_id == run.id and item.status in ("pending", "claimed"):
                        item.status = "cancelled"
                        item.updated_at = now
            if enqueue is not None:
                self._put_due(enqueue)
            return stored.model_copy()

    @contextlib.asynccontextmanager
    async def run_lock(self, run_id: str) -> AsyncIterator[None]:
        async with self._run_locks[run_id]:
            yield

    # -------------------- due queue --------------------

    def _put_due(self, item: DueItem) -> None:
        # unique (run_id, step_index): a second enqueue for the same step is a no-op
        for existing in self._due.values():
            if existing.id != item.id and existing.run_id == item.run_id and existing.step_index == item.step_index:
                return
        now = self._now()
        self._due[item.id] = item.model_copy(update={"created_at": item.created_at or now, "updated_at": now})

    async def claim_due(
        self, now: datetime, worker_id: str, limit: int, lease_seconds: int
    ) -> List[DueItem]:
        async with self._lock:
            candidates = [
                i for i in self._due.values()
                if i.due_at <= now and (
                    i.status == "pending"
                    or (i.status == "claimed" and i.lease_expires_at is not None and i.lease_expires_at <= now)
                )
            ]
            candidates.sort(key=lambda i: (i.due_at, i.step_index, i.id))
            claimed = []
            for item in candidates[:limit]:
                item.status = "claimed"
                item.claimed_by = worker_id
                item.lease_expires_at = now + timedelta(seconds=lease_seconds)
                item.updated_at = self._now()
                claimed.append(item.model_copy())
            return claimed

    async def update_due(self, item: DueItem) -> DueItem:
        async with self._lock:
            stored = item.model_copy(update={"updated_at": self._now()})
            self._due[item.id] = stored
            return stored.model_copy()

    async def list_due_for_run(self, run_id: str) -> List[DueItem]:
        items = [i for i in self._due.values() if i.run_id == run_id]
        items.sort(key=lambda i: i.step_index)
        return [i.model_copy() for i in items]

    # -------------------- touchpoints --------------------

    async def insert_touchpoint(self, tp: Touchpoint) -> Tuple[Touchpoint, bool]:
        async with self._lock:
            # rows carrying a dispatch_key dedup on it alone, never on the provider id
            if tp.dispatch_key:
                if tp.dispatch_key in self._by_dispatch_key:
                    return self._touchpoints[self._by_dispatch_key[tp.dispatch_key]].model_copy(), False
            elif tp.external_id and tp.external_id in self._by_external_id:
                return self._touchpoints[self._by_external_id[tp.external_id]].model_copy(), False
            now = self._now()
            stored = tp.model_copy(update={"created_at": now, "updated_at": now})
            self._touchpoints[stored.id] = stored
            if stored.dispatch_key:
                self._by_dispatch_key[stored.dispatch_key] = stored.id
            elif stored.external_id:
                self._by_external_id[stored.external_id] = stored.id
            return stored.model_copy(), True

    async def get_touchpoint(self, touchpoint_id: str) -> Optional[Touchpoint]:
        tp = self._touchpoints.get(touchpoint_id)
        return tp.model_copy() if tp else None

    async def get_touchpoint_by_dispatch_key(self, key: str) -> Optional[Touchpoint]:
        tp_id = self._by_dispatch_key.get(key)
        return self._touchpoints[tp_id].model_copy() if tp_id else None

    async def list_touchpoints(
        self, filters: TouchpointFilters, offset: int, limit: int
    ) -> Tuple[List[Touchpoint], int]:
        matching = [tp for tp in self._touchpoints.values() if filters.matches(tp)]
        matching.sort(key=touchpoint_sort_key, reverse=True)
        return [tp.model_copy() for tp in matching[offset:offset + limit]], len(matching)

    async def update_touchpoint(self, tp: Touchpoint) -> Touchpoint:
        async with self._lock:
            if tp.id not in self._touchpoints:
                raise UnknownTouchpoint(tp.id)
            stored = tp.model_copy(update={"updated_at": self._now()})
            self._touchpoints[tp.id] = stored
            return stored.model_copy()

    async def delete_touchpoint(self, touchpoint_id: str) -> bool:
        async with self._lock:
            tp = self._touchpoints.pop(touchpoint_id, None)
            if tp is None:
                return False
            if tp.dispatch_key:
                self._by_dispatch_key.pop(tp.dispatch_key, None)
            elif tp.external_id:
                self._by_external_id.pop(tp.external_id, None)
            return True
