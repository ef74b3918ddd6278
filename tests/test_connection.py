from __future__ import annotations

import json

import pytest

from chatter.connection import OVERFLOW_CLOSE_CODE, ConnectionHandle


class FakeWebSocket:
    def __init__(self, fail_after: int = -1) -> None:
        self.sent = []
        self.fail_after = fail_after
        self.closed_with = None

    async def send_text(self, data: str) -> None:
        if len(self.sent) == self.fail_after:
            raise RuntimeError("Cannot call send once a close message has been sent")
        self.sent.append(data)

    async def close(self, code: int = 1000) -> None:
        self.closed_with = code


@pytest.mark.asyncio
async def test_writer_sends_frames_in_push_order() -> None:
    ws = FakeWebSocket()
    handle = ConnectionHandle(ws, "alice")
    for n in range(3):
        assert handle.push({"type": "n", "n": n})
    handle.close()

    await handle.run_writer()

    assert [json.loads(raw)["n"] for raw in ws.sent] == [0, 1, 2]


@pytest.mark.asyncio
async def test_push_after_close_is_refused() -> None:
    handle = ConnectionHandle(FakeWebSocket(), "alice")
    handle.close()
    assert handle.closed
    assert handle.push({"type": "late"}) is False


@pytest.mark.asyncio
async def test_writer_stops_when_the_socket_fails() -> None:
    ws = FakeWebSocket(fail_after=1)
    handle = ConnectionHandle(ws, "alice")
    handle.push({"type": "first"})
    handle.push({"type": "second"})
    handle.push({"type": "third"})

    await handle.run_writer()

    assert len(ws.sent) == 1
    assert handle.closed
    assert handle.push({"type": "fourth"}) is False


@pytest.mark.asyncio
async def test_handles_are_distinct_per_connection() -> None:
    ws = FakeWebSocket()
    first, second = ConnectionHandle(ws, "alice"), ConnectionHandle(ws, "alice")
    assert first.id != second.id
    assert len({first, second}) == 2


@pytest.mark.asyncio
async def test_client_that_stops_reading_is_dropped() -> None:
    ws = FakeWebSocket()
    handle = ConnectionHandle(ws, "alice", max_pending=2)
    assert handle.push({"type": "n", "n": 0})
    assert handle.push({"type": "n", "n": 1})

    assert handle.push({"type": "n", "n": 2}) is False

    assert handle.closed and handle.overflowed
    assert handle.push({"type": "late"}) is False
    await handle.run_writer()
    assert ws.sent == []
    assert ws.closed_with == OVERFLOW_CLOSE_CODE


@pytest.mark.asyncio
async def test_graceful_close_does_not_close_the_socket() -> None:
    ws = FakeWebSocket()
    handle = ConnectionHandle(ws, "alice", max_pending=2)
    handle.push({"type": "n", "n": 0})
    handle.close()

    await handle.run_writer()

    assert len(ws.sent) == 1
    assert ws.closed_with is None
