from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest

from chatter.config import MessagingSettings
from chatter.engine import MessagingEngine
from chatter.errors import GenerationError
from chatter.models import FriendRequestRecord, StoredImage, StoredMessage, UserRecord

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


class RecordingHandle:
    """Stands in for a websocket connection; keeps every pushed frame."""

    def __init__(self, name: str, *, fail: bool = False) -> None:
        self.name = name
        self.fail = fail
        self.frames: List[dict] = []

    def __repr__(self) -> str:
        return f"<RecordingHandle {self.name}>"

    def push(self, frame: dict) -> bool:
        if self.fail:
            raise RuntimeError("socket gone")
        self.frames.append(frame)
        return True

    def of_type(self, kind: str) -> List[dict]:
        return [f for f in self.frames if f["type"] == kind]


class FakeUsers:
    def __init__(self) -> None:
        self.records: Dict[str, UserRecord] = {}

    def add(self, user_id: str, *, is_bot: bool = False, friends=()) -> UserRecord:
        record = UserRecord(
            id=user_id,
            pseudo=user_id,
            display_name=user_id.title(),
            is_bot=is_bot,
            friend_ids=frozenset(friends),
        )
        self.records[user_id] = record
        return record

    def find_user(self, user_id: str) -> Optional[UserRecord]:
        return self.records.get(user_id)

    def are_friends(self, user_id: str, other_id: str) -> bool:
        user = self.records.get(user_id)
        return user is not None and user.is_friend_of(other_id)

    def add_friends(self, user_id: str, other_id: str) -> None:
        for a, b in ((user_id, other_id), (other_id, user_id)):
            record = self.records[a]
            self.records[a] = replace(record, friend_ids=record.friend_ids | {b})

    def remove_friends(self, user_id: str, other_id: str) -> None:
        for a, b in ((user_id, other_id), (other_id, user_id)):
            record = self.records[a]
            self.records[a] = replace(record, friend_ids=record.friend_ids - {b})

    def friends_of(self, user_id: str) -> List[UserRecord]:
        user = self.records.get(user_id)
        if user is None:
            return []
        return [self.records[fid] for fid in sorted(user.friend_ids) if fid in self.records]

    def ensure_bot(self, pseudo: str, display_name: str) -> UserRecord:
        for record in self.records.values():
            if record.is_bot and record.pseudo == pseudo:
                return record
        record = UserRecord(id=f"bot-{pseudo.lower()}", pseudo=pseudo, display_name=display_name, is_bot=True)
        self.records[record.id] = record
        return record


class FakeMessages:
    def __init__(self) -> None:
        self.stored: List[StoredMessage] = []
        self.fail_persist = False

    def persist(self, sender_id, recipient_id, content, image) -> StoredMessage:
        if self.fail_persist:
            raise RuntimeError("store unavailable")
        message = StoredMessage(
            id=f"m{len(self.stored) + 1}",
            sender_id=sender_id,
            recipient_id=recipient_id,
            content=content,
            image=image,
            created_at=BASE_TIME + timedelta(seconds=len(self.stored)),
        )
        self.stored.append(message)
        return message

    def recent_between(self, user_id, other_id, limit) -> List[StoredMessage]:
        pair = {user_id, other_id}
        between = [m for m in self.stored if {m.sender_id, m.recipient_id} == pair]
        return list(reversed(between))[:limit]


class FakeFriendRequests:
    def __init__(self) -> None:
        self.records: Dict[str, FriendRequestRecord] = {}

    def create(self, sender_id, receiver_id, message) -> FriendRequestRecord:
        record = FriendRequestRecord(
            id=f"fr{len(self.records) + 1}",
            sender_id=sender_id,
            receiver_id=receiver_id,
            message=message,
            status="pending",
            created_at=BASE_TIME,
        )
        self.records[record.id] = record
        return record

    def get(self, request_id) -> Optional[FriendRequestRecord]:
        return self.records.get(request_id)

    def find_pending(self, sender_id, receiver_id) -> Optional[FriendRequestRecord]:
        for record in self.records.values():
            if (record.sender_id, record.receiver_id, record.status) == (sender_id, receiver_id, "pending"):
                return record
        return None

    def pending_for(self, receiver_id) -> List[FriendRequestRecord]:
        return [r for r in self.records.values() if r.receiver_id == receiver_id and r.status == "pending"]

    def sent_by(self, sender_id) -> List[FriendRequestRecord]:
        return [r for r in self.records.values() if r.sender_id == sender_id and r.status == "pending"]

    def resolve(self, request_id, status) -> Optional[FriendRequestRecord]:
        record = self.records.get(request_id)
        if record is None or record.status != "pending":
            return None
        record = replace(record, status=status)
        self.records[request_id] = record
        return record


class FakeImages:
    def __init__(self) -> None:
        self.files: Dict[str, dict] = {}

    def save(self, owner_id, filename, content_type, data) -> str:
        image_id = f"img{len(self.files) + 1}"
        self.files[image_id] = {
            "owner_id": owner_id,
            "filename": filename,
            "content_type": content_type,
            "data": data,
            "shared_with": set(),
        }
        return image_id

    def owner_of(self, image_id) -> Optional[str]:
        found = self.files.get(image_id)
        return found["owner_id"] if found else None

    def share(self, image_id, user_id) -> None:
        self.files[image_id]["shared_with"].add(user_id)

    def open(self, image_id) -> Optional[StoredImage]:
        found = self.files.get(image_id)
        if found is None:
            return None
        return StoredImage(
            stream=iter([found["data"]]),
            content_type=found["content_type"],
            filename=found["filename"],
            owner_id=found["owner_id"],
            shared_with=frozenset(found["shared_with"]),
        )


class FakeGenerator:
    def __init__(self, reply: str = "Hello from the bot") -> None:
        self.reply = reply
        self.error: Optional[Exception] = None
        self.calls: List[tuple] = []

    async def generate(self, prompt, transcript) -> str:
        self.calls.append((prompt, list(transcript)))
        if self.error is not None:
            raise self.error
        return self.reply


@pytest.fixture
def users():
    fake = FakeUsers()
    fake.add("alice", friends={"bob"})
    fake.add("bob", friends={"alice"})
    fake.add("carol")
    fake.add("bot", is_bot=True)
    return fake


@pytest.fixture
def messages():
    return FakeMessages()


@pytest.fixture
def friend_requests():
    return FakeFriendRequests()


@pytest.fixture
def images():
    return FakeImages()


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def failing_generator():
    gen = FakeGenerator()
    gen.error = GenerationError("Groq API error (503): overloaded")
    return gen


@pytest.fixture
def settings():
    return MessagingSettings(responder_delay_sec=0.01, responder_history_limit=6)


@pytest.fixture
def engine(users, messages, generator, friend_requests, images, settings):
    return MessagingEngine(
        users=users,
        messages=messages,
        generator=generator,
        friend_requests=friend_requests,
        images=images,
        settings=settings,
    )
