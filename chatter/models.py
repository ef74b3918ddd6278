"""Domain records shared by the messaging core and its collaborators."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, FrozenSet, Iterable, Optional

from pydantic import BaseModel, ConfigDict

PRESENCE_SNAPSHOT = "presence_snapshot"
NEW_MESSAGE = "new_message"
FRIEND_REQUEST = "friend_request"
FRIEND_ACCEPTED = "friend_accepted"


@dataclass(frozen=True)
class UserRecord:
    id: str
    pseudo: str
    display_name: Optional[str] = None
    is_bot: bool = False
    friend_ids: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def name(self) -> str:
        return self.display_name or self.pseudo

    def is_friend_of(self, other_id: str) -> bool:
        return other_id in self.friend_ids


@dataclass(frozen=True)
class StoredMessage:
    """A message as the store returns it."""

    id: str
    sender_id: str
    recipient_id: str
    content: Optional[str]
    image: Optional[str]
    created_at: datetime


@dataclass(frozen=True)
class FriendRequestRecord:
    id: str
    sender_id: str
    receiver_id: str
    message: Optional[str]
    status: str
    created_at: datetime


@dataclass(frozen=True)
class ResponderTask:
    """One-shot delayed reply owed by a bot to a user."""

    user_id: str
    bot_id: str
    content: str
    trigger_id: str
    fire_at: datetime


class MessageEvent(BaseModel):
    """Payload fanned out to a recipient's connections once a message is stored."""

    model_config = ConfigDict(frozen=True)

    id: str
    sender_id: str
    recipient_id: str
    content: Optional[str] = None
    image: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_stored(cls, message: StoredMessage) -> "MessageEvent":
        return cls(
            id=message.id,
            sender_id=message.sender_id,
            recipient_id=message.recipient_id,
            content=message.content,
            image=message.image,
            created_at=message.created_at,
        )


def presence_frame(online_user_ids: Iterable[str]) -> Dict[str, Any]:
    return {"type": PRESENCE_SNAPSHOT, "online_user_ids": sorted(online_user_ids)}


def message_frame(event: MessageEvent) -> Dict[str, Any]:
    return {"type": NEW_MESSAGE, "payload": event.model_dump(mode="json")}


def friend_frame(kind: str, request: FriendRequestRecord, user: Optional[UserRecord] = None) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "id": request.id,
        "sender_id": request.sender_id,
        "receiver_id": request.receiver_id,
        "message": request.message,
        "status": request.status,
        "created_at": request.created_at.isoformat(),
    }
    if user is not None:
        payload["user"] = {"id": user.id, "pseudo": user.pseudo, "display_name": user.display_name}
    return {"type": kind, "payload": payload}


@dataclass(frozen=True)
class FriendshipStatus:
    """Relationship between two users as seen from the first one."""

    status: str
    request: Optional[FriendRequestRecord] = None
    direction: Optional[str] = None


@dataclass(frozen=True)
class StoredImage:
    stream: Any
    content_type: str
    filename: str
    owner_id: Optional[str] = None
    shared_with: FrozenSet[str] = field(default_factory=frozenset)

    def readable_by(self, user_id: str) -> bool:
        return user_id == self.owner_id or user_id in self.shared_with
