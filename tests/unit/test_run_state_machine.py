import pytest

from followup_engine.common.errors import (
    ConcurrentModification,
    StudentNotEligible,
    UnknownRun,
    UnknownSequence,
    UnknownStudent,
)
from followup_engine.common.clock import add_minutes
from followup_engine.engine.runs import check_eligibility

pytestmark = pytest.mark.asyncio


async def test_activate_creates_run_and_first_due_item(engine, store, clock, student, sequence):
    run, created = await engine.runs.activate(student.id, sequence_id=sequence.id)

    assert created is True
    assert run.status == "activated"
    assert run.current_step_index == 0
    assert run.started_at == clock.now()
    assert run.sequence_version == sequence.version
    assert [s.channel for s in run.steps] == ["email", "sms"]

    due = await store.list_due_for_run(run.id)
    assert len(due) == 1
    assert due[0].step_index == 0
    assert due[0].due_at == add_minutes(run.started_at, 0)
    assert due[0].status == "pending"


async def test_activate_by_backend_name(engine, student, sequence):
    run, created = await engine.runs.activate(student.id, backend_name="new-student-welcome")
    assert created
    assert run.sequence_id == sequence.id


async def test_second_activation_returns_existing_run_unchanged(engine, store, student, sequence):
    first, _ = await engine.runs.activate(student.id, sequence_id=sequence.id)
    await engine.dispatcher.dispatch_due_steps()
    ongoing = await engine.runs.get(first.id)
    assert ongoing.status == "ongoing"

    again, created = await engine.runs.activate(student.id, sequence_id=sequence.id)

    assert created is False
    assert again.id == first.id
    assert again.status == "ongoing"
    assert again.version == ongoing.version
    assert len(await engine.runs.list_for_student(student.id)) == 1


async def test_new_run_allowed_after_previous_is_terminal(engine, student, sequence):
    first, _ = await engine.runs.activate(student.id, sequence_id=sequence.id)
    await engine.runs.stop(first.id)

    second, created = await engine.runs.activate(student.id, sequence_id=sequence.id)
    assert created
    assert second.id != first.id


async def test_activate_unknown_student_and_sequence(engine, student, sequence):
    with pytest.raises(UnknownStudent):
        await engine.runs.activate("nope", sequence_id=sequence.id)
    with pytest.raises(UnknownSequence):
        await engine.runs.activate(student.id, sequence_id="missing")
    with pytest.raises(UnknownSequence):
        await engine.runs.activate(student.id)


async def test_activate_rejects_ineligible_students(engine, make_student, sequence):
    paid = make_student(enrollment_statuses=["interested", "paid"])
    with pytest.raises(StudentNotEligible):
        await engine.runs.activate(paid.id, sequence_id=sequence.id)

    no_enrollment = make_student(enrollment_statuses=[])
    with pytest.raises(StudentNotEligible):
        await engine.runs.activate(no_enrollment.id, sequence_id=sequence.id)


async def test_eligibility_can_be_disabled(engine, make_student, sequence):
    engine.runs.enforce_eligibility = False
    dropped = make_student(enrollment_statuses=["dropped_out"])
    run, created = await engine.runs.activate(dropped.id, sequence_id=sequence.id)
    assert created and run.status == "activated"


def test_check_eligibility_custom_restricted(make_student):
    s = make_student(enrollment_statuses=["waitlist"])
    check_eligibility(s)
    with pytest.raises(StudentNotEligible):
        check_eligibility(s, restricted=("waitlist",))


async def test_stop_before_dispatch_disables_and_cancels(engine, store, clock, sender, student, sequence):
    run, _ = await engine.runs.activate(student.id, sequence_id=sequence.id)

    stopped = await engine.runs.stop(run.id)

    assert stopped.status == "disabled"
    assert stopped.completed_at == clock.now()
    assert [i.status for i in await store.list_due_for_run(run.id)] == ["cancelled"]

    report = await engine.dispatcher.dispatch_due_steps()
    assert report.claimed == 0
    assert sender.sent == []
    page = await engine.ledger.list(engine_filters_for(run.id))
    assert page.total == 0


async def test_stop_is_idempotent_on_terminal_runs(engine, clock, student, sequence):
    run, _ = await engine.runs.activate(student.id, sequence_id=sequence.id)
    first = await engine.runs.stop(run.id)
    clock.advance(minutes=5)
    second = await engine.runs.stop(run.id)

    assert second.status == "disabled"
    assert second.completed_at == first.completed_at
    assert second.version == first.version


async def test_reply_on_terminal_run_is_noop(engine, student, sequence):
    run, _ = await engine.runs.activate(student.id, sequence_id=sequence.id)
    await engine.runs.stop(run.id)

    result = await engine.runs.on_reply_detected(run.id)
    assert result.status == "disabled"


async def test_on_reply_detected_moves_active_run_to_answer_received(engine, store, student, sequence):
    run, _ = await engine.runs.activate(student.id, sequence_id=sequence.id)
    result = await engine.runs.on_reply_detected(run.id)

    assert result.status == "answer_received"
    assert result.completed_at is not None
    assert all(i.status == "cancelled" for i in await store.list_due_for_run(run.id))


async def test_stop_all_for_student(engine, student, sequence):
    other = await engine.sequences.create(
        backend_name="payment-follow-up",
        display_name="Payment Follow-up",
        steps=[{"order": 0, "channel": "sms", "delay_minutes": 60, "content_template": "Hi {{first_name}}"}],
    )
    a, _ = await engine.runs.activate(student.id, sequence_id=sequence.id)
    b, _ = await engine.runs.activate(student.id, sequence_id=other.id)

    stopped = await engine.runs.stop_all_for_student(student.id)

    assert {r.id for r in stopped} == {a.id, b.id}
    assert all(r.status == "disabled" for r in stopped)
    assert await engine.runs.stop_all_for_student(student.id) == []


async def test_manual_advance_skips_current_step(engine, store, clock, sender, student, sequence):
    run, _ = await engine.runs.activate(student.id, sequence_id=sequence.id)

    advanced = await engine.runs.advance(run.id)

    assert advanced.current_step_index == 1
    assert advanced.status == "ongoing"
    items = {i.step_index: i for i in await store.list_due_for_run(run.id)}
    assert items[0].status == "done"
    assert items[1].due_at == add_minutes(items[0].due_at, 1440)
    assert sender.sent == []


async def test_advance_past_last_step_completes(engine, student, sequence):
    run, _ = await engine.runs.activate(student.id, sequence_id=sequence.id)
    await engine.runs.advance(run.id)
    done = await engine.runs.advance(run.id)

    assert done.status == "completed"
    assert done.current_step_index == done.total_steps
    # terminal: further advances are no-ops
    assert (await engine.runs.advance(run.id)).version == done.version


async def test_get_unknown_run(engine):
    with pytest.raises(UnknownRun):
        await engine.runs.get("missing")


async def test_stale_version_save_is_rejected(engine, store, student, sequence):
    run, _ = await engine.runs.activate(student.id, sequence_id=sequence.id)
    await store.save_run(run.model_copy(update={"needs_attention": True}), run.version)

    with pytest.raises(ConcurrentModification):
        await store.save_run(run.model_copy(update={"status": "disabled"}), run.version)


async def test_transition_retries_once_after_version_conflict(engine, store, student, sequence):
    run, _ = await engine.runs.activate(student.id, sequence_id=sequence.id)
    # another writer bumped the version after we loaded the run
    await store.save_run(run.model_copy(update={"last_error": "note"}), run.version)

    stopped = await engine.runs._apply(run, engine.runs._terminate_transition("disabled"))

    assert stopped.status == "disabled"
    assert stopped.last_error == "note"


async def test_list_filters(engine, make_student, sequence):
    s1, s2 = make_student(), make_student()
    r1, _ = await engine.runs.activate(s1.id, sequence_id=sequence.id)
    r2, _ = await engine.runs.activate(s2.id, sequence_id=sequence.id)
    await engine.runs.stop(r2.id)

    from followup_engine.domain.models import RunFilters
    active = await engine.runs.list(RunFilters(status="activated"))
    assert [r.id for r in active] == [r1.id]
    assert [r.id for r in await engine.runs.list(RunFilters(student_id=s2.id))] == [r2.id]


def engine_filters_for(run_id):
    from followup_engine.domain.models import TouchpointFilters
    return TouchpointFilters(automated_follow_up_id=run_id)
