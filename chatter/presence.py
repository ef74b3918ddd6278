"""Online-set announcements."""

from __future__ import annotations

import logging

from .delivery import push_safely
from .models import presence_frame
from .registry import ConnectionRegistry

logger = logging.getLogger(__name__)


class PresenceBroadcaster:
    def __init__(self, registry: ConnectionRegistry) -> None:
        self._registry = registry

    def announce(self) -> int:
        """Send the full online set to every connected client."""
        online = self._registry.online_user_ids()
        frame = presence_frame(online)
        pushed = 0
        for user_id in online:
            for handle in self._registry.connections_for(user_id):
                if push_safely(handle, frame):
                    pushed += 1
        logger.debug("presence announced: %d users, %d pushes", len(online), pushed)
        return pushed
