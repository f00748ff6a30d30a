import pytest

from followup_engine.common.errors import InvalidSequence, UnknownSequence
from followup_engine.domain.models import Step

pytestmark = pytest.mark.asyncio


async def test_create_sorts_steps_by_order(engine):
    seq = await engine.sequences.create(
        backend_name="unordered",
        display_name="Unordered",
        steps=[
            {"order": 2, "channel": "call", "delay_minutes": 5, "content_template": "call"},
            Step(order=0, channel="email", delay_minutes=0, content_template="mail"),
            {"order": 1, "channel": "sms", "delay_minutes": 5, "content_template": "text"},
        ],
    )
    assert [s.order for s in seq.steps] == [0, 1, 2]
    assert seq.version == 1


@pytest.mark.parametrize("steps, match", [
    ([], "at least one step"),
    ([{"order": 0, "channel": "sms", "delay_minutes": 0, "content_template": "a"},
      {"order": 0, "channel": "sms", "delay_minutes": 0, "content_template": "b"}], "unique"),
    ([{"order": 0, "channel": "pigeon", "delay_minutes": 0, "content_template": "a"}], "channel"),
    ([{"order": 0, "channel": "sms", "delay_minutes": -1, "content_template": "a"}], "delay_minutes"),
    ([{"order": 0, "channel": "sms", "delay_minutes": 0, "content_template": "Hi {{ nickname }}"}], "nickname"),
])
async def test_invalid_sequences_are_rejected(engine, steps, match):
    with pytest.raises(InvalidSequence, match=match):
        await engine.sequences.create(backend_name="bad", display_name="Bad", steps=steps)


async def test_backend_name_is_unique_and_slug_shaped(engine, sequence):
    with pytest.raises(InvalidSequence):
        await engine.sequences.create(backend_name=sequence.backend_name, display_name="Dup",
                                      steps=[{"order": 0, "channel": "sms", "content_template": "x"}])
    with pytest.raises(InvalidSequence):
        await engine.sequences.create(backend_name="Has Spaces", display_name="X",
                                      steps=[{"order": 0, "channel": "sms", "content_template": "x"}])


async def test_update_bumps_version(engine, sequence):
    updated = await engine.sequences.update(sequence.id, display_name="Welcome v2")
    assert updated.version == 2
    assert updated.display_name == "Welcome v2"
    assert updated.steps == sequence.steps

    again = await engine.sequences.update(sequence.id, steps=[
        {"order": 0, "channel": "sms", "delay_minutes": 0, "content_template": "only one"},
    ])
    assert again.version == 3
    assert len(again.steps) == 1


async def test_lookup(engine, sequence):
    assert (await engine.sequences.get(sequence.id)).id == sequence.id
    assert (await engine.sequences.get_by_backend_name("new-student-welcome")).id == sequence.id
    assert [s.id for s in await engine.sequences.list()] == [sequence.id]
    with pytest.raises(UnknownSequence):
        await engine.sequences.get_by_backend_name("nope")
    with pytest.raises(UnknownSequence):
        await engine.sequences.update("missing", display_name="x")
