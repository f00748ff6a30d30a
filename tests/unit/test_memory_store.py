from datetime import timedelta

import pytest

from followup_engine.common.errors import ConcurrentModification, UnknownTouchpoint
from followup_engine.domain.models import (
    AutomationRun,
    DueItem,
    Step,
    Touchpoint,
    TouchpointFilters,
)

pytestmark = pytest.mark.asyncio

STEPS = [
    Step(order=0, channel="sms", delay_minutes=0, content_template="a"),
    Step(order=1, channel="email", delay_minutes=60, content_template="b"),
]


def _run(clock, student_id="s1", sequence_id="q1") -> AutomationRun:
    return AutomationRun(student_id=student_id, sequence_id=sequence_id, steps=STEPS, started_at=clock.now())


async def test_one_active_run_per_student_and_sequence(store, clock):
    first = _run(clock)
    run, created = await store.insert_run_if_no_active(first, DueItem(run_id=first.id, step_index=0, due_at=clock.now()))
    assert created

    second = _run(clock)
    existing, created = await store.insert_run_if_no_active(
        second, DueItem(run_id=second.id, step_index=0, due_at=clock.now())
    )
    assert not created
    assert existing.id == run.id

    other = _run(clock, sequence_id="q2")
    _, created = await store.insert_run_if_no_active(other, DueItem(run_id=other.id, step_index=0, due_at=clock.now()))
    assert created


async def test_terminal_run_frees_the_slot(store, clock):
    run = _run(clock)
    run, _ = await store.insert_run_if_no_active(run, DueItem(run_id=run.id, step_index=0, due_at=clock.now()))
    await store.save_run(run.model_copy(update={"status": "disabled"}), run.version, cancel_pending=True)

    again = _run(clock)
    _, created = await store.insert_run_if_no_active(again, DueItem(run_id=again.id, step_index=0, due_at=clock.now()))
    assert created
    assert [i.status for i in await store.list_due_for_run(run.id)] == ["cancelled"]


async def test_save_run_is_compare_and_swap(store, clock):
    run = _run(clock)
    run, _ = await store.insert_run_if_no_active(run, DueItem(run_id=run.id, step_index=0, due_at=clock.now()))

    saved = await store.save_run(run.model_copy(update={"current_step_index": 1}), run.version)
    assert saved.version == run.version + 1

    with pytest.raises(ConcurrentModification):
        await store.save_run(run.model_copy(update={"status": "disabled"}), run.version)
    assert (await store.get_run(run.id)).status == "activated"


async def test_one_due_item_per_run_step(store, clock):
    run = _run(clock)
    run, _ = await store.insert_run_if_no_active(run, DueItem(run_id=run.id, step_index=0, due_at=clock.now()))
    dup = DueItem(run_id=run.id, step_index=0, due_at=clock.now())
    await store.save_run(run, run.version, enqueue=dup)
    assert len(await store.list_due_for_run(run.id)) == 1


async def test_claim_orders_by_due_time_and_respects_lease(store, clock):
    now = clock.now()
    runs = []
    for n, offset in enumerate((10, 0, 5)):
        run = _run(clock, student_id=f"s{n}")
        await store.insert_run_if_no_active(
            run, DueItem(run_id=run.id, step_index=0, due_at=now - timedelta(minutes=offset))
        )
        runs.append(run)
    future = _run(clock, student_id="later")
    await store.insert_run_if_no_active(
        future, DueItem(run_id=future.id, step_index=0, due_at=now + timedelta(minutes=1))
    )

    claimed = await store.claim_due(now, "w1", limit=10, lease_seconds=60)
    assert [i.run_id for i in claimed] == [runs[0].id, runs[2].id, runs[1].id]
    assert all(i.claimed_by == "w1" for i in claimed)

    # nothing left while leases hold
    assert await store.claim_due(now, "w2", limit=10, lease_seconds=60) == []

    # expired leases are reclaimable
    later = now + timedelta(seconds=61)
    reclaimed = await store.claim_due(later, "w2", limit=10, lease_seconds=60)
    assert {i.run_id for i in reclaimed} == {runs[0].id, runs[1].id, runs[2].id, future.id}
    assert all(i.claimed_by == "w2" for i in reclaimed)


async def test_claim_limit(store, clock):
    for n in range(3):
        run = _run(clock, student_id=f"s{n}")
        await store.insert_run_if_no_active(run, DueItem(run_id=run.id, step_index=0, due_at=clock.now()))
    assert len(await store.claim_due(clock.now(), "w", limit=2, lease_seconds=60)) == 2
    assert len(await store.claim_due(clock.now(), "w", limit=2, lease_seconds=60)) == 1


async def test_touchpoint_dedup_by_external_id_and_dispatch_key(store, clock):
    base = dict(student_id="s1", channel="sms", message="hi", occurred_at=clock.now())

    first, created = await store.insert_touchpoint(Touchpoint(direction="inbound", external_id="ext-1", **base))
    assert created
    again, created = await store.insert_touchpoint(Touchpoint(direction="inbound", external_id="ext-1", **base))
    assert not created and again.id == first.id

    sent, created = await store.insert_touchpoint(
        Touchpoint(direction="outbound", source="automated", dispatch_key="r1:0", **base)
    )
    assert created
    _, created = await store.insert_touchpoint(
        Touchpoint(direction="outbound", source="automated", dispatch_key="r1:0", **base)
    )
    assert not created
    assert (await store.get_touchpoint_by_dispatch_key("r1:0")).id == sent.id

    # a provider id reused across steps does not merge automated rows
    _, created = await store.insert_touchpoint(Touchpoint(
        direction="outbound", source="automated", dispatch_key="r2:0", external_id="ext-1", **base
    ))
    assert created


async def test_touchpoints_newest_first_with_paging(store, clock):
    for n in range(5):
        await store.insert_touchpoint(Touchpoint(
            student_id="s1", channel="sms", direction="inbound", message=f"m{n}",
            occurred_at=clock.now() + timedelta(minutes=n),
        ))
    items, total = await store.list_touchpoints(TouchpointFilters(student_id="s1"), offset=0, limit=2)
    assert total == 5
    assert [tp.message for tp in items] == ["m4", "m3"]
    items, _ = await store.list_touchpoints(TouchpointFilters(student_id="s1"), offset=4, limit=2)
    assert [tp.message for tp in items] == ["m0"]


async def test_delete_frees_external_id(store, clock):
    tp, _ = await store.insert_touchpoint(Touchpoint(
        student_id="s1", channel="email", direction="inbound", message="x",
        occurred_at=clock.now(), external_id="mail-1",
    ))
    assert await store.delete_touchpoint(tp.id)
    assert not await store.delete_touchpoint(tp.id)
    with pytest.raises(UnknownTouchpoint):
        await store.update_touchpoint(tp)
    _, created = await store.insert_touchpoint(Touchpoint(
        student_id="s1", channel="email", direction="inbound", message="x",
        occurred_at=clock.now(), external_id="mail-1",
    ))
    assert created
