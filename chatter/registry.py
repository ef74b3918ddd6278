"""User -> live connection bookkeeping."""

from __future__ import annotations

import threading
from typing import Dict, Hashable, List, Set


class ConnectionRegistry:
    """Maps user ids to the set of their live connection handles.

    A user id is present iff at least one handle is registered for it. Every
    read returns a copy so callers can iterate while connections come and go.
    """

    def __init__(self) -> None:
        self._connections: Dict[str, Set[Hashable]] = {}
        self._lock = threading.Lock()

    def register(self, user_id: str, handle: Hashable) -> None:
        with self._lock:
            self._connections.setdefault(user_id, set()).add(handle)

    def unregister(self, handle: Hashable) -> bool:
        """Forget ``handle`` wherever it is registered. Unknown handles are ignored."""
        removed = False
        with self._lock:
            for user_id in list(self._connections):
                conns = self._connections[user_id]
                if handle in conns:
                    conns.discard(handle)
                    removed = True
                if not conns:
                    del self._connections[user_id]
        return removed

    def connections_for(self, user_id: str) -> List[Hashable]:
        with self._lock:
            return list(self._connections.get(user_id, ()))

    def online_user_ids(self) -> Set[str]:
        with self._lock:
            return set(self._connections)

    def __len__(self) -> int:
        with self._lock:
            return sum(len(conns) for conns in self._connections.values())
