from datetime import timedelta

import pytest

from followup_engine.domain.models import Touchpoint, TouchpointFilters

pytestmark = pytest.mark.asyncio


def _inbound(student_id, clock, channel="sms", external_id="in-1", **overrides):
    return Touchpoint(
        student_id=student_id,
        channel=channel,
        direction="inbound",
        source="openphone" if channel in ("sms", "call") else "webhook",
        message="Yes I'm interested!",
        occurred_at=clock.now(),
        external_id=external_id,
        **overrides,
    )


async def test_inbound_sms_after_first_step_stops_sequence(engine, clock, sender, student, sequence):
    run, _ = await engine.runs.activate(student.id, sequence_id=sequence.id)
    await engine.dispatcher.dispatch_due_steps()

    clock.advance(minutes=10)
    await engine.ledger.record(_inbound(student.id, clock))

    run = await engine.runs.get(run.id)
    assert run.status == "answer_received"

    clock.advance(minutes=1440)
    report = await engine.dispatcher.dispatch_due_steps()
    assert report.claimed == 0
    assert [s["channel"] for s in sender.sent] == ["email"]


async def test_reply_on_other_channel_halts_by_default(engine, clock, student, sequence):
    run, _ = await engine.runs.activate(student.id, sequence_id=sequence.id)
    await engine.ledger.record(_inbound(student.id, clock, channel="whatsapp"))
    assert (await engine.runs.get(run.id)).status == "answer_received"


async def test_channel_scoped_halting(engine, clock, student, sequence):
    engine.replies.halt_all_channels = False
    run, _ = await engine.runs.activate(student.id, sequence_id=sequence.id)

    await engine.ledger.record(_inbound(student.id, clock, channel="whatsapp", external_id="wa-1"))
    assert (await engine.runs.get(run.id)).status == "activated"

    await engine.ledger.record(_inbound(student.id, clock, channel="email", external_id="mail-1"))
    assert (await engine.runs.get(run.id)).status == "answer_received"


async def test_outbound_touchpoints_do_not_halt(engine, clock, student, sequence):
    run, _ = await engine.runs.activate(student.id, sequence_id=sequence.id)
    await engine.ledger.record(Touchpoint(
        student_id=student.id, channel="sms", direction="outbound", source="manual",
        message="staff note", occurred_at=clock.now(),
    ))
    assert (await engine.runs.get(run.id)).status == "activated"


async def test_reply_from_other_student_is_ignored(engine, clock, make_student, student, sequence):
    run, _ = await engine.runs.activate(student.id, sequence_id=sequence.id)
    other = make_student()
    await engine.ledger.record(_inbound(other.id, clock))
    assert (await engine.runs.get(run.id)).status == "activated"


async def test_reply_halts_every_active_run_of_student(engine, clock, student, sequence):
    other_seq = await engine.sequences.create(
        backend_name="assessment-reminder",
        display_name="Assessment Reminder",
        steps=[{"order": 0, "channel": "sms", "delay_minutes": 60, "content_template": "Reminder"}],
    )
    a, _ = await engine.runs.activate(student.id, sequence_id=sequence.id)
    b, _ = await engine.runs.activate(student.id, sequence_id=other_seq.id)

    halted = await engine.replies.on_touchpoint(_inbound(student.id, clock))

    assert {r.id for r in halted} == {a.id, b.id}


async def test_duplicate_inbound_webhook_is_deduped(engine, clock, student, sequence):
    await engine.runs.activate(student.id, sequence_id=sequence.id)
    _, first = await engine.ledger.record(_inbound(student.id, clock, external_id="dup"))
    _, second = await engine.ledger.record(_inbound(student.id, clock, external_id="dup"))

    assert (first, second) == (True, False)
    page = await engine.ledger.list(TouchpointFilters(student_id=student.id, direction="inbound"))
    assert page.total == 1


async def test_sweep_halts_runs_for_replies_recorded_without_listener(engine, store, clock, student, sequence):
    run, _ = await engine.runs.activate(student.id, sequence_id=sequence.id)
    clock.advance(minutes=5)
    # straight into the store: no listener fired
    await store.insert_touchpoint(_inbound(student.id, clock, external_id="bulk-1"))
    assert (await engine.runs.get(run.id)).status == "activated"

    clock.advance(minutes=20)
    halted = await engine.replies.sweep_recent(hours_back=1)

    assert [r.id for r in halted] == [run.id]
    assert (await engine.runs.get(run.id)).status == "answer_received"


async def test_sweep_ignores_replies_older_than_the_run(engine, store, clock, student, sequence):
    await store.insert_touchpoint(_inbound(student.id, clock, external_id="old"))
    clock.advance(minutes=10)
    run, _ = await engine.runs.activate(student.id, sequence_id=sequence.id)

    assert await engine.replies.sweep_recent(hours_back=1) == []
    assert (await engine.runs.get(run.id)).status == "activated"


async def test_sweep_window(engine, store, clock, student, sequence):
    run, _ = await engine.runs.activate(student.id, sequence_id=sequence.id)
    await store.insert_touchpoint(_inbound(student.id, clock, external_id="early"))
    clock.advance(minutes=180)

    assert await engine.replies.sweep_recent(hours_back=1) == []
    halted = await engine.replies.sweep_recent(hours_back=4)
    assert [r.id for r in halted] == [run.id]
    assert clock.now() - timedelta(hours=4) < run.started_at
