"""Friend requests and the contact lists that gate messaging."""

from __future__ import annotations

import logging
from typing import List, Optional

from fastapi.concurrency import run_in_threadpool

from .delivery import DeliveryRouter
from .errors import Conflict, Forbidden, MessagingError, NotFound
from .models import FRIEND_ACCEPTED, FRIEND_REQUEST, FriendRequestRecord, FriendshipStatus, UserRecord, friend_frame
from .stores import FriendRequestStore, UserDirectory

logger = logging.getLogger(__name__)


class FriendService:
    def __init__(self, users: UserDirectory, requests: FriendRequestStore, router: DeliveryRouter) -> None:
        self._users = users
        self._requests = requests
        self._router = router

    async def send_request(
        self, sender_id: str, receiver_id: str, message: Optional[str] = None
    ) -> FriendRequestRecord:
        if sender_id == receiver_id:
            raise MessagingError("You cannot send a friend request to yourself")
        receiver = await run_in_threadpool(self._users.find_user, receiver_id)
        if receiver is None:
            raise NotFound("User not found")
        if receiver.is_bot:
            raise Forbidden("The assistant is available to everyone without a friend request")
        if await run_in_threadpool(self._users.are_friends, sender_id, receiver_id):
            raise Conflict("Already friends")
        for a, b in ((sender_id, receiver_id), (receiver_id, sender_id)):
            if await run_in_threadpool(self._requests.find_pending, a, b):
                raise Conflict("Friend request already pending")

        record = await run_in_threadpool(self._requests.create, sender_id, receiver_id, message)
        sender = await run_in_threadpool(self._users.find_user, sender_id)
        self._router.deliver(receiver_id, friend_frame(FRIEND_REQUEST, record, sender))
        logger.info("friend request %s: %s -> %s", record.id, sender_id, receiver_id)
        return record

    async def _resolve(self, request_id: str, user_id: str, status: str) -> FriendRequestRecord:
        record = await run_in_threadpool(self._requests.get, request_id)
        if record is None:
            raise NotFound("Friend request not found")
        if record.receiver_id != user_id:
            raise Forbidden("This friend request is not addressed to you")
        if record.status != "pending":
            raise Conflict("Friend request already handled")
        resolved = await run_in_threadpool(self._requests.resolve, request_id, status)
        if resolved is None:
            # answered concurrently
            raise Conflict("Friend request already handled")
        return resolved

    async def accept_request(self, request_id: str, user_id: str) -> FriendRequestRecord:
        accepted = await self._resolve(request_id, user_id, "accepted")
        await run_in_threadpool(self._users.add_friends, accepted.sender_id, accepted.receiver_id)
        receiver = await run_in_threadpool(self._users.find_user, user_id)
        self._router.deliver(accepted.sender_id, friend_frame(FRIEND_ACCEPTED, accepted, receiver))
        logger.info("friend request %s accepted", request_id)
        return accepted

    async def pending_for(self, user_id: str) -> List[FriendRequestRecord]:
        return await run_in_threadpool(self._requests.pending_for, user_id)

    async def friends_of(self, user_id: str) -> List[UserRecord]:
        return await run_in_threadpool(self._users.friends_of, user_id)

    async def decline_request(self, request_id: str, user_id: str) -> FriendRequestRecord:
        declined = await self._resolve(request_id, user_id, "declined")
        logger.info("friend request %s declined", request_id)
        return declined

    async def sent_by(self, user_id: str) -> List[FriendRequestRecord]:
        return await run_in_threadpool(self._requests.sent_by, user_id)

    async def remove_friend(self, user_id: str, friend_id: str) -> None:
        """Drop the friendship on both sides; messaging between them is refused again."""
        if not await run_in_threadpool(self._users.are_friends, user_id, friend_id):
            raise NotFound("Friend not found")
        await run_in_threadpool(self._users.remove_friends, user_id, friend_id)
        logger.info("friendship %s <-> %s removed", user_id, friend_id)

    async def friendship_status(self, user_id: str, other_id: str) -> FriendshipStatus:
        if await run_in_threadpool(self._users.are_friends, user_id, other_id):
            return FriendshipStatus("friends")
        outgoing = await run_in_threadpool(self._requests.find_pending, user_id, other_id)
        if outgoing is not None:
            return FriendshipStatus("pending", outgoing, "sent")
        incoming = await run_in_threadpool(self._requests.find_pending, other_id, user_id)
        if incoming is not None:
            return FriendshipStatus("pending", incoming, "received")
        return FriendshipStatus("none")
