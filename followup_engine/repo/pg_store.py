# followup_engine/repo/pg_store.py
from __future__ import annotations
import contextlib
import json
import logging
from contextvars import ContextVar
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

import asyncpg

from followup_engine.common.errors import ConcurrentModification, InvalidSequence, UnknownRun, UnknownTouchpoint
from followup_engine.domain.models import (
    AutomationRun,
    DueItem,
    RunFilters,
    SequenceTemplate,
    Step,
    Touchpoint,
    TouchpointFilters,
)
from followup_engine.repo.base import EngineStore

log = logging.getLogger("followups.pg_store")

SCHEMA_PATH = Path(__file__).with_name("schema.sql")

# (store, connection) holding the current task's run lock; store calls made
# inside run_lock() reuse it instead of taking a second pooled connection
_LOCK_CONN: ContextVar[Optional[Tuple["PgStore", asyncpg.Connection]]] = ContextVar("_LOCK_CONN", default=None)

_RUN_COLUMNS = (
    "id, student_id, sequence_id, sequence_version, steps, status, current_step_index, "
    "started_at, last_message_sent_at, completed_at, needs_attention, last_error, version, "
    "created_at, updated_at"
)
_DUE_COLUMNS = (
    "id, run_id, step_index, due_at, status, attempts, claimed_by, lease_expires_at, "
    "last_error, resumed_at, created_at, updated_at"
)
_TP_COLUMNS = (
    "id, student_id, channel, type, message, source, automated_follow_up_id, external_id, "
    "external_metadata, dispatch_key, occurred_at, created_at, updated_at"
)


async def _init_connection(conn: asyncpg.Connection) -> None:
    for typ in ("json", "jsonb"):
        await conn.set_type_codec(typ, encoder=json.dumps, decoder=json.loads, schema="pg_catalog")


async def create_pool(dsn: str, *, min_size: int = 1, max_size: int = 5) -> asyncpg.Pool:
    return await asyncpg.create_pool(dsn=dsn, min_size=min_size, max_size=max_size, init=_init_connection)


def _s(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


def _steps_json(steps: Sequence[Step]) -> List[Dict[str, Any]]:
    return [s.model_dump() for s in steps]


def _row_to_sequence(row: asyncpg.Record) -> SequenceTemplate:
    return SequenceTemplate(
        id=str(row["id"]),
        backend_name=row["backend_name"],
        display_name=row["display_name"],
        subject=row["subject"],
        steps=[Step(**s) for s in row["steps"]],
        version=row["version"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_run(row: asyncpg.Record) -> AutomationRun:
    data = dict(row)
    data["id"] = str(data["id"])
    data["student_id"] = str(data["student_id"])
    data["sequence_id"] = str(data["sequence_id"])
    data["steps"] = [Step(**s) for s in data["steps"]]
    return AutomationRun(**data)


def _row_to_due(row: asyncpg.Record) -> DueItem:
    data = dict(row)
    data["id"] = str(data["id"])
    data["run_id"] = str(data["run_id"])
    return DueItem(**data)


def _row_to_touchpoint(row: asyncpg.Record) -> Touchpoint:
    data = dict(row)
    data["id"] = str(data["id"])
    data["student_id"] = str(data["student_id"])
    data["automated_follow_up_id"] = _s(data["automated_follow_up_id"])
    data["direction"] = data.pop("type")
    data["external_metadata"] = data["external_metadata"] or {}
    return Touchpoint(**data)


class PgStore(EngineStore):
    """
    asyncpg-backed store.
    - claims use FOR UPDATE SKIP LOCKED so concurrent workers never share a due item
    - dedup relies on UNIQUE(dispatch_key) and a unique index on external_id for rows
      without a dispatch_key, with ON CONFLICT DO NOTHING
    - run_lock is a session advisory lock keyed on the run id; the critical
      section runs on the connection holding it, so a lock holder never waits
      on the pool for a second connection
    """

    def __init__(self, pool: asyncpg.Pool, *, acquire_timeout: Optional[float] = 30.0):
        self.pool = pool
        self.acquire_timeout = acquire_timeout

    @classmethod
    async def connect(
        cls, dsn: str, *, min_size: int = 1, max_size: int = 5, acquire_timeout: Optional[float] = 30.0
    ) -> "PgStore":
        pool = await create_pool(dsn, min_size=min_size, max_size=max_size)
        return cls(pool, acquire_timeout=acquire_timeout)

    @contextlib.asynccontextmanager
    async def _acquire(self) -> AsyncIterator[asyncpg.Connection]:
        bound = _LOCK_CONN.get()
        if bound is not None and bound[0] is self:
            yield bound[1]
            return
        async with self.pool.acquire(timeout=self.acquire_timeout) as conn:
            yield conn

    async def apply_schema(self) -> None:
        sql = SCHEMA_PATH.read_text(encoding="utf-8")
        async with self._acquire() as conn:
            await conn.execute(sql)
        log.info("Engine schema applied")

    async def close(self) -> None:
        await self.pool.close()

    # -------------------- sequences --------------------

    async def insert_sequence(self, seq: SequenceTemplate) -> SequenceTemplate:
        sql = """
        INSERT INTO template_follow_up_sequences (id, backend_name, display_name, subject, steps, version)
        VALUES ($1::uuid, $2, $3, $4, $5::jsonb, $6)
        RETURNING *;
        """
        async with self._acquire() as conn:
            try:
                row = await conn.fetchrow(
                    sql, seq.id, seq.backend_name, seq.display_name, seq.subject,
                    _steps_json(seq.steps), seq.version,
                )
            except asyncpg.UniqueViolationError:
                raise InvalidSequence(f"backend_name {seq.backend_name!r} already exists")
            return _row_to_sequence(row)

    async def replace_sequence(self, seq: SequenceTemplate) -> SequenceTemplate:
        sql = """
        UPDATE template_follow_up_sequences
        SET backend_name=$2, display_name=$3, subject=$4, steps=$5::jsonb, version=$6, updated_at=now()
        WHERE id=$1::uuid
        RETURNING *;
        """
        async with self._acquire() as conn:
            try:
                row = await conn.fetchrow(
                    sql, seq.id, seq.backend_name, seq.display_name, seq.subject,
                    _steps_json(seq.steps), seq.version,
                )
            except asyncpg.UniqueViolationError:
                raise InvalidSequence(f"backend_name {seq.backend_name!r} already exists")
            if not row:
                raise InvalidSequence(f"sequence {seq.id} does not exist")
            return _row_to_sequence(row)

    async def get_sequence(self, sequence_id: str) -> Optional[SequenceTemplate]:
        async with self._acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM template_follow_up_sequences WHERE id=$1::uuid;", sequence_id)
            return _row_to_sequence(row) if row else None

    async def get_sequence_by_backend_name(self, backend_name: str) -> Optional[SequenceTemplate]:
        async with self._acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM template_follow_up_sequences WHERE backend_name=$1;", backend_name
            )
            return _row_to_sequence(row) if row else None

    async def list_sequences(self) -> List[SequenceTemplate]:
        async with self._acquire() as conn:
            rows = await conn.fetch("SELECT * FROM template_follow_up_sequences ORDER BY display_name;")
            return [_row_to_sequence(r) for r in rows]

    # -------------------- runs --------------------

    async def insert_run_if_no_active(
        self, run: AutomationRun, first_due: DueItem
    ) -> Tuple[AutomationRun, bool]:
        insert_sql = f"""
        INSERT INTO automated_follow_ups (
          id, student_id, sequence_id, sequence_version, steps, status,
          current_step_index, started_at, version
        )
        VALUES ($1::uuid, $2::uuid, $3::uuid, $4, $5::jsonb, $6, $7, $8, $9)
        ON CONFLICT (student_id, sequence_id) WHERE status IN ('activated', 'ongoing') DO NOTHING
        RETURNING {_RUN_COLUMNS};
        """
        existing_sql = f"""
        SELECT {_RUN_COLUMNS} FROM automated_follow_ups
        WHERE student_id=$1::uuid AND sequence_id=$2::uuid AND status IN ('activated', 'ongoing')
        LIMIT 1;
        """
        async with self._acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    insert_sql, run.id, run.student_id, run.sequence_id, run.sequence_version,
                    _steps_json(run.steps), run.status, run.current_step_index, run.started_at, run.version,
                )
                if row is None:
                    existing = await conn.fetchrow(existing_sql, run.student_id, run.sequence_id)
                    if existing is None:
                        # the conflicting run went terminal between the two statements
                        raise ConcurrentModification("active run changed during activation")
                    return _row_to_run(existing), False
                await self._insert_due(conn, first_due)
                return _row_to_run(row), True

    async def get_run(self, run_id: str) -> Optional[AutomationRun]:
        async with self._acquire() as conn:
            row = await conn.fetchrow(f"SELECT {_RUN_COLUMNS} FROM automated_follow_ups WHERE id=$1::uuid;", run_id)
            return _row_to_run(row) if row else None

    async def list_runs(self, filters: RunFilters) -> List[AutomationRun]:
        clauses, args = [], []
        if filters.student_id:
            args.append(filters.student_id)
            clauses.append(f"student_id=${len(args)}::uuid")
        if filters.sequence_id:
            args.append(filters.sequence_id)
            clauses.append(f"sequence_id=${len(args)}::uuid")
        if filters.status:
            args.append(filters.status)
            clauses.append(f"status=${len(args)}")
        if filters.needs_attention is not None:
            args.append(filters.needs_attention)
            clauses.append(f"needs_attention=${len(args)}")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        sql = f"SELECT {_RUN_COLUMNS} FROM automated_follow_ups {where} ORDER BY created_at DESC, id DESC;"
        async with self._acquire() as conn:
            rows = await conn.fetch(sql, *args)
            return [_row_to_run(r) for r in rows]

    async def save_run(
        self,
        run: AutomationRun,
        expected_version: int,
        *,
        due_updates: Sequence[DueItem] = (),
        enqueue: Optional[DueItem] = None,
        cancel_pending: bool = False,
    ) -> AutomationRun:
        sql = f"""
        UPDATE automated_follow_ups
        SET status=$3, current_step_index=$4, last_message_sent_at=$5, completed_at=$6,
            needs_attention=$7, last_error=$8, version=$2 + 1, updated_at=now()
        WHERE id=$1::uuid AND version=$2
        RETURNING {_RUN_COLUMNS};
        """
        async with self._acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    sql, run.id, expected_version, run.status, run.current_step_index,
                    run.last_message_sent_at, run.completed_at, run.needs_attention, run.last_error,
                )
                if row is None:
                    exists = await conn.fetchval("SELECT 1 FROM automated_follow_ups WHERE id=$1::uuid;", run.id)
                    if not exists:
                        raise UnknownRun(run.id)
                    raise ConcurrentModification(f"run {run.id} moved past version {expected_version}")
                for item in due_updates:
                    await self._write_due(conn, item)
                if cancel_pending:
                    await conn.execute(
                        """
                        UPDATE follow_up_due_items SET status='cancelled', updated_at=now()
                        WHERE run_id=$1::uuid AND status IN ('pending', 'claimed');
                        """,
                        run.id,
                    )
                if enqueue is not None:
                    await self._insert_due(conn, enqueue)
                return _row_to_run(row)

    @contextlib.asynccontextmanager
    async def run_lock(self, run_id: str) -> AsyncIterator[None]:
        bound = _LOCK_CONN.get()
        async with self._acquire() as conn:
            await conn.execute("SELECT pg_advisory_lock(hashtextextended($1, 0));", run_id)
            # nested locks stack on the already bound session
            token = _LOCK_CONN.set((self, conn)) if bound is None or bound[0] is not self else None
            try:
                yield
            finally:
                if token is not None:
                    _LOCK_CONN.reset(token)
                await conn.execute("SELECT pg_advisory_unlock(hashtextextended($1, 0));", run_id)

    # -------------------- due queue --------------------

    async def _insert_due(self, conn: asyncpg.Connection, item: DueItem) -> None:
        await conn.execute(
            """
            INSERT INTO follow_up_due_items (id, run_id, step_index, due_at, status, attempts, resumed_at)
            VALUES ($1::uuid, $2::uuid, $3, $4, $5, $6, $7)
            ON CONFLICT (run_id, step_index) DO NOTHING;
            """,
            item.id, item.run_id, item.step_index, item.due_at, item.status, item.attempts, item.resumed_at,
        )

    async def _write_due(self, conn: asyncpg.Connection, item: DueItem) -> Optional[asyncpg.Record]:
        return await conn.fetchrow(
            f"""
            UPDATE follow_up_due_items
            SET due_at=$2, status=$3, attempts=$4, claimed_by=$5, lease_expires_at=$6,
                last_error=$7, resumed_at=$8, updated_at=now()
            WHERE id=$1::uuid
            RETURNING {_DUE_COLUMNS};
            """,
            item.id, item.due_at, item.status, item.attempts, item.claimed_by,
            item.lease_expires_at, item.last_error, item.resumed_at,
        )

    async def claim_due(
        self, now: datetime, worker_id: str, limit: int, lease_seconds: int
    ) -> List[DueItem]:
        sql = f"""
        WITH due AS (
          SELECT id FROM follow_up_due_items
          WHERE due_at <= $1
            AND (status = 'pending' OR (status = 'claimed' AND lease_expires_at <= $1))
          ORDER BY due_at, step_index, id
          LIMIT $3
          FOR UPDATE SKIP LOCKED
        )
        UPDATE follow_up_due_items d
        SET status='claimed', claimed_by=$2, lease_expires_at=$4, updated_at=now()
        FROM due
        WHERE d.id = due.id
        RETURNING {', '.join('d.' + c.strip() for c in _DUE_COLUMNS.split(','))};
        """
        lease_until = now + timedelta(seconds=lease_seconds)
        async with self._acquire() as conn:
            rows = await conn.fetch(sql, now, worker_id, limit, lease_until)
        items = [_row_to_due(r) for r in rows]
        items.sort(key=lambda i: (i.due_at, i.step_index, i.id))
        return items

    async def update_due(self, item: DueItem) -> DueItem:
        async with self._acquire() as conn:
            row = await self._write_due(conn, item)
            return _row_to_due(row) if row else item

    async def list_due_for_run(self, run_id: str) -> List[DueItem]:
        async with self._acquire() as conn:
            rows = await conn.fetch(
                f"SELECT {_DUE_COLUMNS} FROM follow_up_due_items WHERE run_id=$1::uuid ORDER BY step_index;",
                run_id,
            )
            return [_row_to_due(r) for r in rows]

    # -------------------- touchpoints --------------------

    async def insert_touchpoint(self, tp: Touchpoint) -> Tuple[Touchpoint, bool]:
        sql = f"""
        INSERT INTO touchpoints (
          id, student_id, channel, type, message, source, automated_follow_up_id,
          external_id, external_metadata, dispatch_key, occurred_at
        )
        VALUES ($1::uuid, $2::uuid, $3, $4, $5, $6, $7::uuid, $8, $9::jsonb, $10, $11)
        ON CONFLICT DO NOTHING
        RETURNING {_TP_COLUMNS};
        """
        async with self._acquire() as conn:
            row = await conn.fetchrow(
                sql, tp.id, tp.student_id, tp.channel, tp.direction, tp.message, tp.source,
                tp.automated_follow_up_id, tp.external_id, tp.external_metadata, tp.dispatch_key, tp.occurred_at,
            )
            if row is not None:
                return _row_to_touchpoint(row), True
            existing = await conn.fetchrow(
                f"""
                SELECT {_TP_COLUMNS} FROM touchpoints
                WHERE ($2::text IS NOT NULL AND dispatch_key=$2)
                   OR ($2::text IS NULL AND $1::text IS NOT NULL AND dispatch_key IS NULL AND external_id=$1)
                   OR id=$3::uuid
                LIMIT 1;
                """,
                tp.external_id, tp.dispatch_key, tp.id,
            )
            if existing is None:
                raise RuntimeError(f"touchpoint insert conflicted but no row found for {tp.id}")
            return _row_to_touchpoint(existing), False

    async def get_touchpoint(self, touchpoint_id: str) -> Optional[Touchpoint]:
        async with self._acquire() as conn:
            row = await conn.fetchrow(f"SELECT {_TP_COLUMNS} FROM touchpoints WHERE id=$1::uuid;", touchpoint_id)
            return _row_to_touchpoint(row) if row else None

    async def get_touchpoint_by_dispatch_key(self, key: str) -> Optional[Touchpoint]:
        async with self._acquire() as conn:
            row = await conn.fetchrow(f"SELECT {_TP_COLUMNS} FROM touchpoints WHERE dispatch_key=$1;", key)
            return _row_to_touchpoint(row) if row else None

    async def list_touchpoints(
        self, filters: TouchpointFilters, offset: int, limit: int
    ) -> Tuple[List[Touchpoint], int]:
        clauses, args = [], []

        def add(expr: str, value: Any) -> None:
            args.append(value)
            clauses.append(expr.format(n=len(args)))

        if filters.student_id:
            add("student_id=${n}::uuid", filters.student_id)
        if filters.channel:
            add("channel=${n}", filters.channel)
        if filters.direction:
            add("type=${n}", filters.direction)
        if filters.source:
            add("source=${n}", filters.source)
        if filters.automated_follow_up_id:
            add("automated_follow_up_id=${n}::uuid", filters.automated_follow_up_id)
        if filters.since:
            add("occurred_at >= ${n}", filters.since)
        if filters.until:
            add("occurred_at <= ${n}", filters.until)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        page_sql = f"""
        SELECT {_TP_COLUMNS} FROM touchpoints {where}
        ORDER BY occurred_at DESC, created_at DESC, id DESC
        OFFSET ${len(args) + 1} LIMIT ${len(args) + 2};
        """
        async with self._acquire() as conn:
            total = await conn.fetchval(f"SELECT count(*) FROM touchpoints {where};", *args)
            rows = await conn.fetch(page_sql, *args, offset, limit)
        return [_row_to_touchpoint(r) for r in rows], int(total or 0)

    async def update_touchpoint(self, tp: Touchpoint) -> Touchpoint:
        async with self._acquire() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE touchpoints SET message=$2, occurred_at=$3, updated_at=now()
                WHERE id=$1::uuid
                RETURNING {_TP_COLUMNS};
                """,
                tp.id, tp.message, tp.occurred_at,
            )
            if not row:
                raise UnknownTouchpoint(tp.id)
            return _row_to_touchpoint(row)

    async def delete_touchpoint(self, touchpoint_id: str) -> bool:
        async with self._acquire() as conn:
            result = await conn.execute("DELETE FROM touchpoints WHERE id=$1::uuid;", touchpoint_id)
            return result.endswith(" 1")
