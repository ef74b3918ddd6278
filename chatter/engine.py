"""Presence and fan-out engine exposed to the request layer."""

from __future__ import annotations

import logging
from typing import Any, Dict, Hashable, List, Optional, Set, Union

from fastapi.concurrency import run_in_threadpool

from .config import MessagingSettings
from .delivery import DeliveryRouter
from .friends import FriendService
from .generation import Generator
from .models import MessageEvent, UserRecord
from .moderation import ContentFilter
from .pipeline import MessagePipeline
from .presence import PresenceBroadcaster
from .registry import ConnectionRegistry
from .responder import ResponderScheduler
from .stores import FriendRequestStore, ImageStore, MessageStore, UserDirectory

logger = logging.getLogger(__name__)

WELCOME_TEMPLATE = (
    "Welcome to Chatter, {name}! I'm {bot}, your AI assistant.\n\n"
    "Add friends to start real-time conversations, share images, and come back "
    "to me anytime: I answer every message you send here.\n\n"
    "Need help? Type \"help\" anytime. What would you like to know first?"
)


class MessagingEngine:
    def __init__(
        self,
        *,
        users: UserDirectory,
        messages: MessageStore,
        generator: Generator,
        friend_requests: Optional[FriendRequestStore] = None,
        images: Optional[ImageStore] = None,
        content_filter: Optional[ContentFilter] = None,
        settings: Optional[MessagingSettings] = None,
    ) -> None:
        self.settings = settings or MessagingSettings()
        self.users = users
        self.messages = messages
        self.generator = generator
        self.images = images
        self.registry = ConnectionRegistry()
        self.presence = PresenceBroadcaster(self.registry)
        self.router = DeliveryRouter(self.registry)
        self.scheduler = ResponderScheduler(
            messages,
            generator,
            self.router,
            delay=self.settings.responder_delay_sec,
            history_limit=self.settings.responder_history_limit,
        )
        self.content_filter = content_filter or ContentFilter()
        self.pipeline = MessagePipeline(
            users, messages, self.content_filter, self.router, self.scheduler, images=images
        )
        self.friends = FriendService(users, friend_requests, self.router) if friend_requests is not None else None
        self._bot: Optional[UserRecord] = None

    # connection lifecycle

    def on_connect(self, user_id: str, handle: Hashable) -> None:
        self.registry.register(user_id, handle)
        logger.info("user %s connected (%r)", user_id, handle)
        self.presence.announce()

    def on_disconnect(self, handle: Hashable) -> bool:
        removed = self.registry.unregister(handle)
        logger.info("connection %r closed", handle)
        self.presence.announce()
        return removed

    def online_user_ids(self) -> Set[str]:
        return self.registry.online_user_ids()

    def deliver_if_online(self, user_id: str, event: Union[MessageEvent, Dict[str, Any]]) -> int:
        return self.router.deliver(user_id, event)

    # messages

    async def send_message(
        self,
        sender_id: str,
        recipient_id: str,
        content: Optional[str] = None,
        image: Optional[str] = None,
    ) -> MessageEvent:
        return await self.pipeline.send(sender_id, recipient_id, content, image)

    async def history(self, user_id: str, other_id: str, limit: int = 50) -> List[MessageEvent]:
        """Messages between two users, oldest first."""
        await self.pipeline.authorize(user_id, other_id)
        recent = await run_in_threadpool(self.messages.recent_between, user_id, other_id, max(1, min(limit, 200)))
        return [MessageEvent.from_stored(message) for message in reversed(recent)]

    # bot

    async def ensure_bot_user(self) -> UserRecord:
        if self._bot is None:
            self._bot = await run_in_threadpool(
                self.users.ensure_bot, self.settings.bot_pseudo, self.settings.bot_display_name
            )
            logger.info("bot user %s ready (%s)", self._bot.pseudo, self._bot.id)
        return self._bot

    async def send_welcome(self, user_id: str) -> bool:
        try:
            bot = await self.ensure_bot_user()
            user = await run_in_threadpool(self.users.find_user, user_id)
            if user is None:
                logger.warning("welcome message skipped, user %s not found", user_id)
                return False
            text = WELCOME_TEMPLATE.format(name=user.name, bot=bot.pseudo)
            stored = await run_in_threadpool(self.messages.persist, bot.id, user.id, text, None)
        except Exception:  # noqa: BLE001 - registration never fails on the welcome message
            logger.exception("could not send welcome message to %s", user_id)
            return False
        self.router.deliver(user.id, MessageEvent.from_stored(stored))
        logger.info("welcome message sent to %s", user.pseudo)
        return True

    async def shutdown(self) -> None:
        cancelled = self.scheduler.cancel_all()
        if cancelled:
            logger.info("cancelled %d pending automated replies", cancelled)
