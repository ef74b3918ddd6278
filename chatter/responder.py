"""Delayed automated replies from bot participants."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Set

from fastapi.concurrency import run_in_threadpool

from .delivery import DeliveryRouter
from .errors import ResponderFailure
from .generation import Generator, Transcript
from .models import MessageEvent, ResponderTask, StoredMessage
from .stores import MessageStore

logger = logging.getLogger(__name__)


def build_transcript(history: List[StoredMessage], bot_id: str) -> Transcript:
    """Map stored messages (oldest first) onto chat roles."""
    return [
        {
            "role": "assistant" if message.sender_id == bot_id else "user",
            "content": message.content or "",
        }
        for message in history
        if message.content
    ]


class ResponderScheduler:
    """Runs one-shot reply tasks after a fixed delay.

    Each scheduled task is an ``asyncio.Task`` that can be cancelled; a task
    that fails is logged and dropped, it never reaches the code that
    scheduled it.
    """

    def __init__(
        self,
        messages: MessageStore,
        generator: Generator,
        router: DeliveryRouter,
        *,
        delay: float = 1.5,
        history_limit: int = 6,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._messages = messages
        self._generator = generator
        self._router = router
        self.delay = delay
        self.history_limit = history_limit
        self._clock = clock
        self._pending: Set["asyncio.Task[Optional[MessageEvent]]"] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def make_task(self, user_id: str, bot_id: str, content: str, trigger_id: str) -> ResponderTask:
        return ResponderTask(
            user_id=user_id,
            bot_id=bot_id,
            content=content,
            trigger_id=trigger_id,
            fire_at=self._clock() + timedelta(seconds=self.delay),
        )

    def schedule(self, task: ResponderTask) -> "asyncio.Task[Optional[MessageEvent]]":
        job = asyncio.get_running_loop().create_task(self._fire_later(task))
        self._pending.add(job)
        job.add_done_callback(self._pending.discard)
        return job

    def cancel_all(self) -> int:
        jobs = list(self._pending)
        for job in jobs:
            job.cancel()
        return len(jobs)

    async def _fire_later(self, task: ResponderTask) -> Optional[MessageEvent]:
        wait = (task.fire_at - self._clock()).total_seconds()
        if wait > 0:
            await asyncio.sleep(wait)
        return await self.run(task)

    async def run(self, task: ResponderTask) -> Optional[MessageEvent]:
        """Produce, store and deliver the reply now. Returns ``None`` on failure."""
        try:
            return await self._respond(task)
        except Exception:  # noqa: BLE001 - replies are best effort
            logger.exception("automated reply from %s to %s failed", task.bot_id, task.user_id)
            return None

    async def _load_transcript(self, task: ResponderTask) -> Transcript:
        recent = await run_in_threadpool(
            self._messages.recent_between, task.user_id, task.bot_id, self.history_limit + 1
        )
        prior = [message for message in recent if message.id != task.trigger_id][: self.history_limit]
        prior.reverse()
        return build_transcript(prior, task.bot_id)

    async def _respond(self, task: ResponderTask) -> MessageEvent:
        transcript = await self._load_transcript(task)
        reply = await self._generator.generate(task.content, transcript)
        if not reply or not reply.strip():
            raise ResponderFailure("generation returned an empty reply")
        stored = await run_in_threadpool(self._messages.persist, task.bot_id, task.user_id, reply.strip(), None)
        event = MessageEvent.from_stored(stored)
        delivered = self._router.deliver(task.user_id, event)
        logger.debug("reply %s delivered to %d connection(s)", event.id, delivered)
        return event
