from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

from chatter.registry import ConnectionRegistry
from conftest import RecordingHandle


def test_register_is_idempotent_per_handle() -> None:
    registry = ConnectionRegistry()
    handle = RecordingHandle("a1")
    registry.register("alice", handle)
    registry.register("alice", handle)
    assert registry.connections_for("alice") == [handle]
    assert len(registry) == 1


def test_entry_disappears_with_its_last_handle() -> None:
    registry = ConnectionRegistry()
    a1, a2 = RecordingHandle("a1"), RecordingHandle("a2")
    registry.register("alice", a1)
    registry.register("alice", a2)

    assert registry.unregister(a1) is True
    assert registry.online_user_ids() == {"alice"}
    assert registry.connections_for("alice") == [a2]

    assert registry.unregister(a2) is True
    assert registry.online_user_ids() == set()
    assert registry.connections_for("alice") == []


def test_unregister_unknown_handle_is_a_no_op() -> None:
    registry = ConnectionRegistry()
    registry.register("alice", RecordingHandle("a1"))
    assert registry.unregister(RecordingHandle("ghost")) is False
    assert registry.online_user_ids() == {"alice"}


def test_connections_for_returns_a_snapshot() -> None:
    registry = ConnectionRegistry()
    a1 = RecordingHandle("a1")
    registry.register("alice", a1)
    snapshot = registry.connections_for("alice")
    registry.register("alice", RecordingHandle("a2"))
    registry.unregister(a1)
    assert snapshot == [a1]


def test_unregister_scans_every_entry() -> None:
    registry = ConnectionRegistry()
    shared = RecordingHandle("shared")
    registry.register("alice", shared)
    registry.register("bob", shared)
    registry.unregister(shared)
    assert registry.online_user_ids() == set()


def test_concurrent_register_unregister_loses_no_updates() -> None:
    registry = ConnectionRegistry()
    users = ["u0", "u1", "u2", "u3"]
    handles = [(users[i % len(users)], RecordingHandle(f"h{i}")) for i in range(400)]

    def churn(item):
        index, (user_id, handle) = item
        registry.register(user_id, handle)
        registry.connections_for(user_id)
        if index % 2:
            registry.unregister(handle)

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(churn, enumerate(handles)))

    for user_id in users:
        expected = {h for i, (uid, h) in enumerate(handles) if uid == user_id and i % 2 == 0}
        assert set(registry.connections_for(user_id)) == expected
    assert registry.online_user_ids() == set(users)
    assert len(registry) == 200
