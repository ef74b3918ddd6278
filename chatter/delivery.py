"""Fan-out of events to the live connections of one user."""

from __future__ import annotations

import logging
from typing import Any, Dict, Union

from .models import MessageEvent, message_frame
from .registry import ConnectionRegistry

logger = logging.getLogger(__name__)


def push_safely(handle: Any, frame: Dict[str, Any]) -> bool:
    """Push to one handle; a failing handle never affects the others."""
    try:
        return bool(handle.push(frame))
    except Exception:  # noqa: BLE001
        logger.warning("push to %r failed", handle, exc_info=True)
        return False


class DeliveryRouter:
    def __init__(self, registry: ConnectionRegistry) -> None:
        self._registry = registry

    def deliver(self, recipient_id: str, event: Union[MessageEvent, Dict[str, Any]]) -> int:
        """Push ``event`` to every live connection of ``recipient_id``.

        Offline recipients are skipped without error; the stored copy is the
        only durable one. Returns the number of accepted pushes.
        """
        frame = message_frame(event) if isinstance(event, MessageEvent) else event
        handles = self._registry.connections_for(recipient_id)
        if not handles:
            logger.debug("recipient %s offline, dropping %s", recipient_id, frame.get("type"))
            return 0
        return sum(1 for handle in handles if push_safely(handle, frame))
