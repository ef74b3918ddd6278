"""HTTP and websocket surface of the messaging engine."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from .connection import ConnectionHandle
from .engine import MessagingEngine
from .errors import GenerationError, MessagingError
from .models import FriendRequestRecord, MessageEvent, presence_frame


class SendMessageRequest(BaseModel):
    content: Optional[str] = None
    image: Optional[str] = Field(None, max_length=512)


class OnlineUsersResponse(BaseModel):
    online_user_ids: List[str]


class FriendRequestPayload(BaseModel):
    message: Optional[str] = Field(None, max_length=280)


class FriendRequestResponse(BaseModel):
    id: str
    sender_id: str
    receiver_id: str
    message: Optional[str] = None
    status: str
    created_at: datetime


class FriendEntry(BaseModel):
    id: str
    pseudo: str
    display_name: Optional[str] = None
    online: bool = False


class BotResponse(BaseModel):
    id: str
    pseudo: str
    display_name: Optional[str] = None


class FriendshipStatusResponse(BaseModel):
    status: str
    direction: Optional[str] = None
    request_id: Optional[str] = None


class ConnectionTestResponse(BaseModel):
    ok: bool
    detail: str


class ImageUploadResponse(BaseModel):
    id: str
    content_type: str
    size: int


def _user_id(user: Dict[str, Any]) -> str:
    return str(user["_id"])


def _http_error(exc: MessagingError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.detail)


def _request_response(record: FriendRequestRecord) -> FriendRequestResponse:
    return FriendRequestResponse(
        id=record.id,
        sender_id=record.sender_id,
        receiver_id=record.receiver_id,
        message=record.message,
        status=record.status,
        created_at=record.created_at,
    )


def init_messaging(
    app,
    *,
    engine: MessagingEngine,
    get_current_user,
    ws_user_fetcher,
):
    router = APIRouter(prefix="/messaging", tags=["Messaging"])
    settings = engine.settings
    images = engine.images

    @router.get("/online", response_model=OnlineUsersResponse)
    def online_users(current_user=Depends(get_current_user)):
        return OnlineUsersResponse(online_user_ids=sorted(engine.online_user_ids()))

    @router.get("/conversations/{user_id}/messages", response_model=List[MessageEvent])
    async def fetch_messages(user_id: str, limit: int = 50, current_user=Depends(get_current_user)):
        try:
            return await engine.history(_user_id(current_user), user_id, limit=limit)
        except MessagingError as exc:
            raise _http_error(exc) from exc

    @router.post("/conversations/{user_id}/messages", response_model=MessageEvent, status_code=201)
    async def post_message(user_id: str, payload: SendMessageRequest, current_user=Depends(get_current_user)):
        content = payload.content
        if content and len(content) > settings.message_limit:
            raise HTTPException(status_code=400, detail="Message too long")
        try:
            return await engine.send_message(_user_id(current_user), user_id, content, payload.image)
        except MessagingError as exc:
            raise _http_error(exc) from exc

    if engine.friends is not None:
        friends = engine.friends

        @router.get("/friends", response_model=List[FriendEntry])
        async def list_friends(current_user=Depends(get_current_user)):
            online = engine.online_user_ids()
            return [
                FriendEntry(id=f.id, pseudo=f.pseudo, display_name=f.display_name, online=f.id in online)
                for f in await friends.friends_of(_user_id(current_user))
            ]

        @router.get("/friends/requests", response_model=List[FriendRequestResponse])
        async def pending_requests(current_user=Depends(get_current_user)):
            return [_request_response(r) for r in await friends.pending_for(_user_id(current_user))]

        @router.get("/friends/requests/sent", response_model=List[FriendRequestResponse])
        async def sent_requests(current_user=Depends(get_current_user)):
            return [_request_response(r) for r in await friends.sent_by(_user_id(current_user))]

        @router.post("/friends/{user_id}/request", response_model=FriendRequestResponse, status_code=201)
        async def send_friend_request(
            user_id: str, payload: FriendRequestPayload, current_user=Depends(get_current_user)
        ):
            try:
                record = await friends.send_request(_user_id(current_user), user_id, payload.message)
            except MessagingError as exc:
                raise _http_error(exc) from exc
            return _request_response(record)

        @router.post("/friends/requests/{request_id}/accept", response_model=FriendRequestResponse)
        async def accept_friend_request(request_id: str, current_user=Depends(get_current_user)):
            try:
                record = await friends.accept_request(request_id, _user_id(current_user))
            except MessagingError as exc:
                raise _http_error(exc) from exc
            return _request_response(record)

        @router.post("/friends/requests/{request_id}/decline", response_model=FriendRequestResponse)
        async def decline_friend_request(request_id: str, current_user=Depends(get_current_user)):
            try:
                record = await friends.decline_request(request_id, _user_id(current_user))
            except MessagingError as exc:
                raise _http_error(exc) from exc
            return _request_response(record)

        @router.delete("/friends/{user_id}", status_code=204)
        async def remove_friend(user_id: str, current_user=Depends(get_current_user)):
            try:
                await friends.remove_friend(_user_id(current_user), user_id)
            except MessagingError as exc:
                raise _http_error(exc) from exc

        @router.get("/friends/{user_id}/status", response_model=FriendshipStatusResponse)
        async def friendship_status(user_id: str, current_user=Depends(get_current_user)):
            found = await friends.friendship_status(_user_id(current_user), user_id)
            return FriendshipStatusResponse(
                status=found.status,
                direction=found.direction,
                request_id=found.request.id if found.request else None,
            )

    if images is not None:

        @router.post("/images", response_model=ImageUploadResponse, status_code=201)
        async def upload_image(file: UploadFile = File(...), current_user=Depends(get_current_user)):
            content_type = file.content_type or "application/octet-stream"
            if not content_type.startswith("image/"):
                raise HTTPException(status_code=400, detail="Only images can be attached")
            data = await file.read()
            if len(data) > settings.image_limit_bytes:
                raise HTTPException(status_code=400, detail="Image too large")
            image_id = await run_in_threadpool(
                images.save, _user_id(current_user), file.filename or "image", content_type, data
            )
            return ImageUploadResponse(id=image_id, content_type=content_type, size=len(data))

        @router.get("/images/{image_id}")
        def download_image(image_id: str, current_user=Depends(get_current_user)):
            found = images.open(image_id)
            # unknown and foreign images look the same
            if not found or not found.readable_by(_user_id(current_user)):
                raise HTTPException(status_code=404, detail="Image not found")
            return StreamingResponse(
                found.stream,
                media_type=found.content_type,
                headers={"Content-Disposition": f"inline; filename={found.filename}"},
            )

    ai_router = APIRouter(prefix="/ai", tags=["AI"])

    @ai_router.get("/bot", response_model=BotResponse)
    async def get_bot():
        bot = await engine.ensure_bot_user()
        return BotResponse(id=bot.id, pseudo=bot.pseudo, display_name=bot.display_name)

    @ai_router.get("/test", response_model=ConnectionTestResponse)
    async def test_generation():
        try:
            reply = await engine.generator.generate("Reply with the single word: pong", [])
        except GenerationError as exc:
            return ConnectionTestResponse(ok=False, detail=str(exc))
        return ConnectionTestResponse(ok=True, detail=reply[:200])

    app.include_router(router)
    app.include_router(ai_router)

    @app.websocket("/ws/messaging")
    async def messaging_socket(websocket: WebSocket):
        await websocket.accept()
        user = await ws_user_fetcher(websocket)
        if not user:
            return
        user_id = _user_id(user)
        handle = ConnectionHandle(websocket, user_id, max_pending=settings.outbox_limit)
        writer = asyncio.create_task(handle.run_writer())
        engine.on_connect(user_id, handle)
        try:
            while True:
                data = await websocket.receive_text()
                try:
                    payload = json.loads(data)
                except json.JSONDecodeError:
                    payload = None
                if not isinstance(payload, dict):
                    handle.push({"type": "error", "detail": "Invalid payload"})
                    continue
                if payload.get("type") == "ping":
                    handle.push({"type": "pong"})
                elif payload.get("type") == "presence":
                    handle.push(presence_frame(engine.online_user_ids()))
        except WebSocketDisconnect:
            pass
        finally:
            engine.on_disconnect(handle)
            handle.close()
            await writer

    return engine
