"""Realtime messaging: presence tracking, message fan-out and bot replies."""

from .engine import MessagingEngine
from .router import init_messaging

__all__ = ["MessagingEngine", "init_messaging"]
