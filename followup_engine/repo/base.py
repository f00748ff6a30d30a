# followup_engine/repo/base.py
from __future__ import annotations
from abc import ABC, abstractmethod
from datetime import datetime
from typing import AsyncContextManager, List, Optional, Sequence, Tuple

from followup_engine.domain.models import (
    AutomationRun,
    DueItem,
    RunFilters,
    SequenceTemplate,
    Touchpoint,
    TouchpointFilters,
)


class EngineStore(ABC):
    """
    Persistence contract shared by the in-memory and Postgres backends.

    Every method that touches more than one row is atomic: callers rely on
    `save_run` to advance a run, settle its due item and queue the next step
    in one go, so a crash never leaves a run advanced without its next timer.
    """

    # -------------------- sequences --------------------

    @abstractmethod
    async def insert_sequence(self, seq: SequenceTemplate) -> SequenceTemplate: ...

    @abstractmethod
    async def replace_sequence(self, seq: SequenceTemplate) -> SequenceTemplate: ...

    @abstractmethod
    async def get_sequence(self, sequence_id: str) -> Optional[SequenceTemplate]: ...

    @abstractmethod
    async def get_sequence_by_backend_name(self, backend_name: str) -> Optional[SequenceTemplate]: ...

    @abstractmethod
    async def list_sequences(self) -> List[SequenceTemplate]: ...

    # -------------------- runs --------------------

    @abstractmethod
    async def insert_run_if_no_active(
        self, run: AutomationRun, first_due: DueItem
    ) -> Tuple[AutomationRun, bool]:
        """Insert `run` and its first due item unless an active run exists for the pair.
        Returns (run, created); on conflict the existing active run is returned."""

    @abstractmethod
    async def get_run(self, run_id: str) -> Optional[AutomationRun]: ...

    @abstractmethod
    async def list_runs(self, filters: RunFilters) -> List[AutomationRun]: ...

    @abstractmethod
    async def save_run(
        self,
        run: AutomationRun,
        expected_version: int,
        *,
        due_updates: Sequence[DueItem] = (),
        enqueue: Optional[DueItem] = None,
        cancel_pending: bool = False,
    ) -> AutomationRun:
        """Compare-and-swap on `version`. Raises ConcurrentModification on a miss.
        The stored run gets version expected_version + 1."""

    @abstractmethod
    def run_lock(self, run_id: str) -> AsyncContextManager[None]:
        """Per-run mutual exclusion shared by dispatcher, reply detection and stop."""

    # -------------------- due queue --------------------

    @abstractmethod
    async def claim_due(
        self, now: datetime, worker_id: str, limit: int, lease_seconds: int
    ) -> List[DueItem]:
        """Exclusively claim pending items due at or before `now` (and claimed
        items whose lease expired), earliest first."""

    @abstractmethod
    async def update_due(self, item: DueItem) -> DueItem: ...

    @abstractmethod
    async def list_due_for_run(self, run_id: str) -> List[DueItem]: ...

    # -------------------- touchpoints --------------------

    @abstractmethod
    async def insert_touchpoint(self, tp: Touchpoint) -> Tuple[Touchpoint, bool]:
        """Idempotent on dispatch_key, or on external_id for rows without one. Returns (stored, created)."""

    @abstractmethod
    async def get_touchpoint(self, touchpoint_id: str) -> Optional[Touchpoint]: ...

    @abstractmethod
    async def get_touchpoint_by_dispatch_key(self, key: str) -> Optional[Touchpoint]: ...

    @abstractmethod
    async def list_touchpoints(
        self, filters: TouchpointFilters, offset: int, limit: int
    ) -> Tuple[List[Touchpoint], int]:
        """Reverse-chronological page plus total count."""

    @abstractmethod
    async def update_touchpoint(self, tp: Touchpoint) -> Touchpoint: ...

    @abstractmethod
    async def delete_touchpoint(self, touchpoint_id: str) -> bool: ...

    async def close(self) -> None:
        return None
