"""One live websocket and the writer that drains its outbound queue."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import WebSocket

logger = logging.getLogger(__name__)

_CLOSE = object()

# Policy violation; the client stopped reading.
OVERFLOW_CLOSE_CODE = 1008


class ConnectionHandle:
    """Outbound side of a client session.

    ``push`` only appends to a bounded FIFO queue, so it never blocks and
    frames reach the socket in the order they were pushed. A client that lets
    ``max_pending`` frames pile up is treated as dead: the queue is dropped and
    the writer closes the socket. ``run_writer`` is the single task allowed to
    write to the socket.
    """

    def __init__(self, websocket: WebSocket, user_id: Optional[str] = None, *, max_pending: int = 256) -> None:
        self.id = uuid4().hex
        self.user_id = user_id
        self.websocket = websocket
        self.max_pending = max_pending
        self._outbox: "asyncio.Queue[Any]" = asyncio.Queue()
        self._closed = False
        self._overflowed = False

    def __repr__(self) -> str:
        return f"<ConnectionHandle {self.id} user={self.user_id}>"

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def overflowed(self) -> bool:
        return self._overflowed

    @property
    def pending(self) -> int:
        return self._outbox.qsize()

    def push(self, frame: Dict[str, Any]) -> bool:
        if self._closed:
            return False
        if self._outbox.qsize() >= self.max_pending:
            logger.warning("connection %s is not reading, dropping it", self.id)
            self._overflowed = True
            while not self._outbox.empty():
                self._outbox.get_nowait()
            self.close()
            return False
        self._outbox.put_nowait(frame)
        return True

    def close(self) -> None:
        """Stop accepting frames; the writer exits once the queue is drained."""
        if self._closed:
            return
        self._closed = True
        self._outbox.put_nowait(_CLOSE)

    async def run_writer(self) -> None:
        while True:
            frame = await self._outbox.get()
            if frame is _CLOSE:
                if self._overflowed:
                    await self._close_socket()
                return
            try:
                await self.websocket.send_text(json.dumps(frame, default=str))
            except Exception as exc:  # noqa: BLE001 - transport gone, stop writing
                logger.debug("connection %s dropped while sending: %s", self.id, exc)
                self._closed = True
                return

    async def _close_socket(self) -> None:
        try:
            await self.websocket.close(code=OVERFLOW_CLOSE_CODE)
        except Exception as exc:  # noqa: BLE001 - already gone
            logger.debug("connection %s close failed: %s", self.id, exc)
