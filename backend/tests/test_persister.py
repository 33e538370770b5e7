import asyncio
from contextlib import asynccontextmanager

import pytest

from backend.src.engine.content import TextPart
from backend.src.services.persister import TurnPersister


@pytest.mark.asyncio
async def test_turns_are_written_in_scheduling_order(fake_store):
    persister = TurnPersister(fake_store.factory())
    convo = await fake_store.create("u1", "t")

    persister.schedule_user_turn(convo.id, [TextPart(text="q1")])
    persister.schedule_assistant_turn(convo.id, "a1")
    persister.schedule_user_turn(convo.id, [TextPart(text="q2")])
    await persister.drain()

    stored = await fake_store.list_messages(convo.id)
    assert [(m.role, m.parts[0].text) for m in stored] == [("user", "q1"), ("assistant", "a1"), ("user", "q2")]
    assert fake_store.touched == [convo.id]
    assert persister.pending == 0
    assert list(persister.failures) == []


@pytest.mark.asyncio
async def test_same_conversation_writes_do_not_interleave(fake_store):
    active = 0
    overlaps = []

    @asynccontextmanager
    async def slow_factory():
        nonlocal active
        active += 1
        overlaps.append(active)
        await asyncio.sleep(0.01)
        try:
            yield fake_store
        finally:
            active -= 1

    persister = TurnPersister(slow_factory)
    convo = await fake_store.create("u1", "t")
    for i in range(3):
        persister.schedule_user_turn(convo.id, [TextPart(text=str(i))])
    await persister.drain()

    assert max(overlaps) == 1
    assert [m.parts[0].text for m in await fake_store.list_messages(convo.id)] == ["0", "1", "2"]


@pytest.mark.asyncio
async def test_failures_are_recorded_not_raised(fake_store):
    fake_store.fail_appends = True
    persister = TurnPersister(fake_store.factory(), failure_log_size=2)
    convo = await fake_store.create("u1", "t")

    tasks = [persister.schedule_user_turn(convo.id, [TextPart(text=str(i))]) for i in range(3)]
    await persister.drain()

    assert all(t.exception() is None for t in tasks)
    assert len(persister.failures) == 2
    assert persister.failures[-1].conversation_id == convo.id
    assert persister.failures[-1].role == "user"
    assert "store is down" in persister.failures[-1].error


@pytest.mark.asyncio
async def test_per_call_store_factory_wins(fake_store):
    default_store = type(fake_store)()
    persister = TurnPersister(default_store.factory())
    convo = await fake_store.create("u1", "t")

    persister.schedule_assistant_turn(convo.id, "hi", store_factory=fake_store.factory())
    await persister.drain()

    assert len(await fake_store.list_messages(convo.id)) == 1
    assert default_store.messages == {}
