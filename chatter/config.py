"""Environment driven settings for the messaging core."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


@dataclass(frozen=True)
class MessagingSettings:
    responder_delay_sec: float = 1.5
    responder_history_limit: int = 6
    bot_pseudo: str = "ChatterBot"
    bot_display_name: str = "ChatterBot - Chatter AI Assistant"
    message_limit: int = 10_000
    image_limit_bytes: int = 5 * 1024 * 1024
    outbox_limit: int = 256
    groq_api_key: Optional[str] = None
    groq_model: str = "llama-3.1-8b-instant"
    groq_timeout_sec: float = 30.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "MessagingSettings":
        return cls(
            responder_delay_sec=_env_float("RESPONDER_DELAY_SEC", cls.responder_delay_sec),
            responder_history_limit=_env_int("RESPONDER_HISTORY_LIMIT", cls.responder_history_limit),
            bot_pseudo=os.getenv("BOT_PSEUDO", cls.bot_pseudo),
            bot_display_name=os.getenv("BOT_DISPLAY_NAME", cls.bot_display_name),
            message_limit=_env_int("MESSAGE_LIMIT", cls.message_limit),
            image_limit_bytes=_env_int("IMAGE_LIMIT_BYTES", cls.image_limit_bytes),
            outbox_limit=_env_int("OUTBOX_LIMIT", cls.outbox_limit),
            groq_api_key=os.getenv("GROQ_API_KEY") or None,
            groq_model=os.getenv("GROQ_MODEL", cls.groq_model),
            groq_timeout_sec=_env_float("GROQ_TIMEOUT_SEC", cls.groq_timeout_sec),
            log_level=os.getenv("LOG_LEVEL", cls.log_level),
        )
