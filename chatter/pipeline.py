"""Send path: eligibility, filtering, persistence, delivery, reply hand-off."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi.concurrency import run_in_threadpool

from .delivery import DeliveryRouter
from .errors import ContentRejected, Forbidden, MessagingError, NotFound, PersistenceFailure
from .models import MessageEvent, UserRecord
from .moderation import ContentFilter
from .responder import ResponderScheduler
from .stores import ImageStore, MessageStore, UserDirectory

logger = logging.getLogger(__name__)


class MessagePipeline:
    """Turns a send request into a stored, delivered ``MessageEvent``.

    Gates run in order and the first failure aborts with nothing stored or
    delivered. Storage always happens before delivery.
    """

    def __init__(
        self,
        users: UserDirectory,
        messages: MessageStore,
        content_filter: ContentFilter,
        router: DeliveryRouter,
        scheduler: Optional[ResponderScheduler] = None,
        images: Optional[ImageStore] = None,
    ) -> None:
        self._users = users
        self._messages = messages
        self._filter = content_filter
        self._router = router
        self._scheduler = scheduler
        self._images = images

    async def authorize(self, sender_id: str, recipient_id: str) -> UserRecord:
        """Resolve both users and check the sender may talk to the recipient."""
        sender = await run_in_threadpool(self._users.find_user, sender_id)
        if sender is None:
            raise NotFound("Sender not found")
        recipient = await run_in_threadpool(self._users.find_user, recipient_id)
        if recipient is None:
            raise NotFound("User not found")
        if recipient.is_bot:
            return recipient
        if not await run_in_threadpool(self._users.are_friends, sender_id, recipient_id):
            raise Forbidden("You can only send messages to friends")
        return recipient

    def screen(self, content: Optional[str]) -> Optional[str]:
        if not content or not content.strip():
            return None
        result = self._filter.filter(content)
        if result.blocked:
            raise ContentRejected("Message contains inappropriate language", result.violations)
        return result.cleaned_text

    async def check_image(self, sender_id: str, image: str) -> None:
        """Only images uploaded by the sender can be attached."""
        if self._images is None:
            return
        owner = await run_in_threadpool(self._images.owner_of, image)
        if owner is None:
            raise NotFound("Image not found")
        if owner != sender_id:
            raise Forbidden("You can only attach your own images")

    async def send(
        self,
        sender_id: str,
        recipient_id: str,
        content: Optional[str] = None,
        image: Optional[str] = None,
    ) -> MessageEvent:
        recipient = await self.authorize(sender_id, recipient_id)
        text = self.screen(content)
        if text is None and not image:
            raise MessagingError("Message is empty")
        if image:
            await self.check_image(sender_id, image)
        try:
            if image and self._images is not None:
                await run_in_threadpool(self._images.share, image, recipient_id)
            stored = await run_in_threadpool(self._messages.persist, sender_id, recipient_id, text, image)
        except Exception as exc:  # noqa: BLE001 - any store failure aborts the send
            logger.error("persisting message %s -> %s failed: %s", sender_id, recipient_id, exc)
            raise PersistenceFailure("Message could not be saved") from exc

        event = MessageEvent.from_stored(stored)
        delivered = self._router.deliver(recipient_id, event)
        logger.debug("message %s delivered to %d connection(s) of %s", event.id, delivered, recipient_id)

        if recipient.is_bot and text and self._scheduler is not None:
            try:
                self._scheduler.schedule(self._scheduler.make_task(sender_id, recipient.id, text, event.id))
            except Exception:  # noqa: BLE001 - the reply never holds up the sender
                logger.exception("could not schedule reply from %s", recipient.id)
        return event
