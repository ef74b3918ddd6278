from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from chatter.delivery import DeliveryRouter
from chatter.models import NEW_MESSAGE
from chatter.registry import ConnectionRegistry
from chatter.responder import ResponderScheduler, build_transcript
from conftest import FakeGenerator, FakeMessages, RecordingHandle


@pytest.fixture
def registry():
    return ConnectionRegistry()


@pytest.fixture
def scheduler(messages, generator, registry):
    return ResponderScheduler(messages, generator, DeliveryRouter(registry), delay=0.01, history_limit=6)


def _conversation(messages: FakeMessages, turns: int) -> None:
    for n in range(turns):
        if n % 2 == 0:
            messages.persist("alice", "bot", f"question {n}", None)
        else:
            messages.persist("bot", "alice", f"answer {n}", None)


def test_transcript_tags_roles_and_skips_image_only_messages(messages) -> None:
    messages.persist("alice", "bot", "hi", None)
    messages.persist("bot", "alice", "hello!", None)
    messages.persist("alice", "bot", None, "img-1")
    history = list(reversed(messages.recent_between("alice", "bot", 10)))

    assert build_transcript(history, "bot") == [
        {"role": "user", "content": "hi"},
        {"role": "assistant", "content": "hello!"},
    ]


@pytest.mark.asyncio
async def test_run_uses_bounded_history_without_the_trigger(scheduler, messages, generator, registry) -> None:
    _conversation(messages, 9)
    trigger = messages.persist("alice", "bot", "what now?", None)
    alice, bot_handle = RecordingHandle("a1"), RecordingHandle("bot")
    registry.register("alice", alice)
    registry.register("bot", bot_handle)

    event = await scheduler.run(scheduler.make_task("alice", "bot", "what now?", trigger.id))

    prompt, transcript = generator.calls[0]
    assert prompt == "what now?"
    assert len(transcript) == 6
    assert transcript[0] == {"role": "assistant", "content": "answer 3"}
    assert transcript[-1] == {"role": "user", "content": "question 8"}
    assert all(turn["content"] != "what now?" for turn in transcript)

    assert event is not None
    stored = messages.stored[-1]
    assert (stored.sender_id, stored.recipient_id, stored.content) == ("bot", "alice", "Hello from the bot")
    assert [f["payload"]["id"] for f in alice.of_type(NEW_MESSAGE)] == [stored.id]
    assert bot_handle.frames == []


@pytest.mark.asyncio
async def test_generation_failure_is_swallowed(messages, registry, failing_generator) -> None:
    scheduler = ResponderScheduler(messages, failing_generator, DeliveryRouter(registry))
    trigger = messages.persist("alice", "bot", "hi", None)

    assert await scheduler.run(scheduler.make_task("alice", "bot", "hi", trigger.id)) is None
    assert messages.stored == [trigger]


@pytest.mark.asyncio
async def test_empty_reply_is_dropped(messages, registry) -> None:
    scheduler = ResponderScheduler(messages, FakeGenerator(reply="   "), DeliveryRouter(registry))
    trigger = messages.persist("alice", "bot", "hi", None)

    assert await scheduler.run(scheduler.make_task("alice", "bot", "hi", trigger.id)) is None
    assert len(messages.stored) == 1


@pytest.mark.asyncio
async def test_reply_store_failure_delivers_nothing(scheduler, messages, registry) -> None:
    alice = RecordingHandle("a1")
    registry.register("alice", alice)
    trigger = messages.persist("alice", "bot", "hi", None)
    messages.fail_persist = True

    assert await scheduler.run(scheduler.make_task("alice", "bot", "hi", trigger.id)) is None
    assert alice.frames == []


@pytest.mark.asyncio
async def test_scheduled_task_fires_after_the_delay(scheduler, messages) -> None:
    trigger = messages.persist("alice", "bot", "hi", None)
    task = scheduler.make_task("alice", "bot", "hi", trigger.id)

    job = scheduler.schedule(task)
    assert scheduler.pending == 1
    assert len(messages.stored) == 1

    event = await asyncio.wait_for(job, timeout=2)

    assert event is not None and event.sender_id == "bot"
    assert scheduler.pending == 0


@pytest.mark.asyncio
async def test_cancel_all_drops_pending_replies(messages, generator, registry) -> None:
    scheduler = ResponderScheduler(messages, generator, DeliveryRouter(registry), delay=30)
    trigger = messages.persist("alice", "bot", "hi", None)
    job = scheduler.schedule(scheduler.make_task("alice", "bot", "hi", trigger.id))

    assert scheduler.cancel_all() == 1
    with pytest.raises(asyncio.CancelledError):
        await job
    assert generator.calls == []
    assert len(messages.stored) == 1


def test_make_task_sets_fire_time_from_the_clock(messages, generator, registry) -> None:
    now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    scheduler = ResponderScheduler(messages, generator, DeliveryRouter(registry), delay=1.5, clock=lambda: now)

    task = scheduler.make_task("alice", "bot", "hi", "m1")

    assert task.fire_at == now + timedelta(seconds=1.5)
    assert (task.user_id, task.bot_id, task.trigger_id) == ("alice", "bot", "m1")
