"""Storage collaborators: protocols consumed by the core and their MongoDB implementations."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

from bson import ObjectId
from bson.errors import InvalidId
from gridfs import GridFSBucket
from gridfs.errors import NoFile
from pymongo import ASCENDING, DESCENDING, ReturnDocument

from .crypto import MessageCipher
from .models import FriendRequestRecord, StoredImage, StoredMessage, UserRecord


class UserDirectory(Protocol):
    def find_user(self, user_id: str) -> Optional[UserRecord]: ...

    def are_friends(self, user_id: str, other_id: str) -> bool: ...

    def add_friends(self, user_id: str, other_id: str) -> None: ...

    def remove_friends(self, user_id: str, other_id: str) -> None: ...

    def friends_of(self, user_id: str) -> List[UserRecord]: ...

    def ensure_bot(self, pseudo: str, display_name: str) -> UserRecord: ...


class MessageStore(Protocol):
    def persist(
        self, sender_id: str, recipient_id: str, content: Optional[str], image: Optional[str]
    ) -> StoredMessage: ...

    def recent_between(self, user_id: str, other_id: str, limit: int) -> List[StoredMessage]:
        """Newest first."""
        ...


class FriendRequestStore(Protocol):
    def create(self, sender_id: str, receiver_id: str, message: Optional[str]) -> FriendRequestRecord: ...

    def get(self, request_id: str) -> Optional[FriendRequestRecord]: ...

    def find_pending(self, sender_id: str, receiver_id: str) -> Optional[FriendRequestRecord]: ...

    def pending_for(self, receiver_id: str) -> List[FriendRequestRecord]: ...

    def sent_by(self, sender_id: str) -> List[FriendRequestRecord]: ...

    def resolve(self, request_id: str, status: str) -> Optional[FriendRequestRecord]:
        """Move a pending request to ``status``; ``None`` if it was no longer pending."""
        ...


class ImageStore(Protocol):
    def save(self, owner_id: str, filename: str, content_type: str, data: bytes) -> str: ...

    def open(self, image_id: str) -> Optional[StoredImage]: ...

    def owner_of(self, image_id: str) -> Optional[str]: ...

    def share(self, image_id: str, user_id: str) -> None: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _object_id(value: str) -> Optional[ObjectId]:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


def user_from_doc(doc: Dict[str, Any]) -> UserRecord:
    return UserRecord(
        id=str(doc["_id"]),
        pseudo=doc.get("pseudo") or "",
        display_name=doc.get("display_name"),
        is_bot=bool(doc.get("is_bot", False)),
        friend_ids=frozenset(str(fid) for fid in doc.get("friend_ids", [])),
    )


class MongoUserDirectory:
    def __init__(self, users_collection) -> None:
        self.users = users_collection

    def find_user(self, user_id: str) -> Optional[UserRecord]:
        oid = _object_id(user_id)
        if oid is None:
            return None
        doc = self.users.find_one({"_id": oid})
        return user_from_doc(doc) if doc else None

    def are_friends(self, user_id: str, other_id: str) -> bool:
        oid, other = _object_id(user_id), _object_id(other_id)
        if oid is None or other is None:
            return False
        return self.users.count_documents({"_id": oid, "friend_ids": other}, limit=1) > 0

    def add_friends(self, user_id: str, other_id: str) -> None:
        oid, other = ObjectId(user_id), ObjectId(other_id)
        now = _utcnow()
        self.users.update_one({"_id": oid}, {"$addToSet": {"friend_ids": other}, "$set": {"updated_at": now}})
        self.users.update_one({"_id": other}, {"$addToSet": {"friend_ids": oid}, "$set": {"updated_at": now}})

    def remove_friends(self, user_id: str, other_id: str) -> None:
        oid, other = ObjectId(user_id), ObjectId(other_id)
        now = _utcnow()
        self.users.update_one({"_id": oid}, {"$pull": {"friend_ids": other}, "$set": {"updated_at": now}})
        self.users.update_one({"_id": other}, {"$pull": {"friend_ids": oid}, "$set": {"updated_at": now}})

    def friends_of(self, user_id: str) -> List[UserRecord]:
        user = self.find_user(user_id)
        if user is None or not user.friend_ids:
            return []
        cursor = self.users.find(
            {"_id": {"$in": [ObjectId(fid) for fid in user.friend_ids]}},
            {"pseudo": 1, "display_name": 1, "is_bot": 1},
        ).sort("display_name", ASCENDING)
        return [user_from_doc(doc) for doc in cursor]

    def ensure_bot(self, pseudo: str, display_name: str) -> UserRecord:
        now = _utcnow()
        doc = self.users.find_one_and_update(
            {"pseudo": pseudo, "is_bot": True},
            {
                "$setOnInsert": {
                    "pseudo": pseudo,
                    "display_name": display_name,
                    "email": f"{pseudo.lower()}@chatter.local",
                    "password_hash": None,
                    "is_bot": True,
                    "friend_ids": [],
                    "created_at": now,
                    "updated_at": now,
                }
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return user_from_doc(doc)


class MongoMessageStore:
    def __init__(self, db, cipher: MessageCipher) -> None:
        self.messages = db["chat_messages"]
        self.cipher = cipher
        self._ensure_indexes()

    def _ensure_indexes(self) -> None:
        self.messages.create_index([("sender_id", 1), ("recipient_id", 1), ("created_at", -1)])
        self.messages.create_index([("recipient_id", 1), ("created_at", -1)])

    def _to_stored(self, doc: Dict[str, Any]) -> StoredMessage:
        return StoredMessage(
            id=str(doc["_id"]),
            sender_id=doc["sender_id"],
            recipient_id=doc["recipient_id"],
            content=self.cipher.decrypt(doc.get("content")),
            image=doc.get("image"),
            created_at=doc["created_at"],
        )

    def persist(
        self, sender_id: str, recipient_id: str, content: Optional[str], image: Optional[str]
    ) -> StoredMessage:
        doc = {
            "sender_id": sender_id,
            "recipient_id": recipient_id,
            "content": self.cipher.encrypt(content) if content else None,
            "image": image,
            "created_at": _utcnow(),
        }
        inserted = self.messages.insert_one(doc)
        return StoredMessage(
            id=str(inserted.inserted_id),
            sender_id=sender_id,
            recipient_id=recipient_id,
            content=content or None,
            image=image,
            created_at=doc["created_at"],
        )

    def recent_between(self, user_id: str, other_id: str, limit: int) -> List[StoredMessage]:
        query = {
            "$or": [
                {"sender_id": user_id, "recipient_id": other_id},
                {"sender_id": other_id, "recipient_id": user_id},
            ]
        }
        cursor = self.messages.find(query).sort("created_at", DESCENDING).limit(max(1, limit))
        return [self._to_stored(doc) for doc in cursor]


class MongoFriendRequestStore:
    def __init__(self, db) -> None:
        self.requests = db["friend_requests"]
        self.requests.create_index([("receiver_id", 1), ("status", 1)])
        self.requests.create_index([("sender_id", 1), ("receiver_id", 1)])

    @staticmethod
    def _to_record(doc: Dict[str, Any]) -> FriendRequestRecord:
        return FriendRequestRecord(
            id=str(doc["_id"]),
            sender_id=doc["sender_id"],
            receiver_id=doc["receiver_id"],
            message=doc.get("message"),
            status=doc.get("status", "pending"),
            created_at=doc["created_at"],
        )

    def create(self, sender_id: str, receiver_id: str, message: Optional[str]) -> FriendRequestRecord:
        doc = {
            "sender_id": sender_id,
            "receiver_id": receiver_id,
            "message": message,
            "status": "pending",
            "created_at": _utcnow(),
        }
        doc["_id"] = self.requests.insert_one(doc).inserted_id
        return self._to_record(doc)

    def get(self, request_id: str) -> Optional[FriendRequestRecord]:
        oid = _object_id(request_id)
        if oid is None:
            return None
        doc = self.requests.find_one({"_id": oid})
        return self._to_record(doc) if doc else None

    def find_pending(self, sender_id: str, receiver_id: str) -> Optional[FriendRequestRecord]:
        doc = self.requests.find_one({"sender_id": sender_id, "receiver_id": receiver_id, "status": "pending"})
        return self._to_record(doc) if doc else None

    def pending_for(self, receiver_id: str) -> List[FriendRequestRecord]:
        cursor = self.requests.find({"receiver_id": receiver_id, "status": "pending"}).sort("created_at", DESCENDING)
        return [self._to_record(doc) for doc in cursor]

    def sent_by(self, sender_id: str) -> List[FriendRequestRecord]:
        cursor = self.requests.find({"sender_id": sender_id, "status": "pending"}).sort("created_at", DESCENDING)
        return [self._to_record(doc) for doc in cursor]

    def resolve(self, request_id: str, status: str) -> Optional[FriendRequestRecord]:
        oid = _object_id(request_id)
        if oid is None:
            return None
        doc = self.requests.find_one_and_update(
            {"_id": oid, "status": "pending"},
            {"$set": {"status": status, "responded_at": _utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        return self._to_record(doc) if doc else None


class GridFSImageStore:
    """Image blobs referenced by messages.

    The uploader is recorded as owner; recipients of a message carrying the
    image are added to ``metadata.shared_with`` and may read it too.
    """

    def __init__(self, db, bucket_name: str = "chat_images") -> None:
        self.bucket = GridFSBucket(db, bucket_name=bucket_name)
        self.files = db[f"{bucket_name}.files"]

    def save(self, owner_id: str, filename: str, content_type: str, data: bytes) -> str:
        file_id = self.bucket.upload_from_stream(
            filename or "image",
            data,
            metadata={"owner_id": owner_id, "content_type": content_type, "shared_with": []},
        )
        return str(file_id)

    def owner_of(self, image_id: str) -> Optional[str]:
        oid = _object_id(image_id)
        if oid is None:
            return None
        doc = self.files.find_one({"_id": oid}, {"metadata.owner_id": 1})
        if not doc:
            return None
        return (doc.get("metadata") or {}).get("owner_id")

    def share(self, image_id: str, user_id: str) -> None:
        self.files.update_one({"_id": ObjectId(image_id)}, {"$addToSet": {"metadata.shared_with": user_id}})

    def open(self, image_id: str) -> Optional[StoredImage]:
        oid = _object_id(image_id)
        if oid is None:
            return None
        try:
            grid_out = self.bucket.open_download_stream(oid)
        except NoFile:
            return None
        metadata = grid_out.metadata or {}
        return StoredImage(
            stream=grid_out,
            content_type=metadata.get("content_type", "application/octet-stream"),
            filename=grid_out.filename or "image",
            owner_id=metadata.get("owner_id"),
            shared_with=frozenset(metadata.get("shared_with", [])),
        )
