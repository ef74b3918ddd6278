"""Reply generation through the Groq chat completions API."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Protocol

import httpx

from .errors import GenerationError

logger = logging.getLogger(__name__)

GROQ_CHAT_URL = "https://api.groq.com/openai/v1/chat/completions"

SYSTEM_PROMPT = (
    "You are {bot_name}, the assistant built into the Chatter messaging app. "
    "Answer like a friendly person in a chat: short paragraphs, plain language, "
    "no more than a few sentences unless the user asks for detail."
)

Transcript = List[Dict[str, str]]


class Generator(Protocol):
    async def generate(self, prompt: str, transcript: Transcript) -> str: ...


class GroqGenerator:
    def __init__(
        self,
        api_key: Optional[str],
        model: str,
        *,
        bot_name: str = "ChatterBot",
        timeout: float = 30.0,
        temperature: float = 0.7,
        max_tokens: Optional[int] = 512,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.bot_name = bot_name
        self.timeout = timeout
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._transport = transport
        if not api_key:
            logger.warning("GROQ_API_KEY is not set, automated replies run in offline echo mode")

    @staticmethod
    def offline_reply(prompt: str) -> str:
        return f"(offline) {prompt}"

    def build_messages(self, prompt: str, transcript: Transcript) -> List[Dict[str, str]]:
        messages = [{"role": "system", "content": SYSTEM_PROMPT.format(bot_name=self.bot_name)}]
        messages.extend(transcript)
        messages.append({"role": "user", "content": prompt})
        return messages

    async def generate(self, prompt: str, transcript: Transcript) -> str:
        if not self.api_key:
            return self.offline_reply(prompt)
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": self.build_messages(prompt, transcript),
            "temperature": self.temperature,
        }
        if self.max_tokens:
            payload["max_tokens"] = self.max_tokens
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                r = await client.post(GROQ_CHAT_URL, headers=headers, json=payload)
                r.raise_for_status()
            except httpx.HTTPStatusError as exc:
                body_preview = exc.response.text[:400]
                raise GenerationError(
                    f"Groq API error ({exc.response.status_code}): {body_preview or 'see logs'}"
                ) from exc
            except httpx.HTTPError as exc:
                raise GenerationError(f"Groq API unreachable: {exc}") from exc
        data = r.json()
        try:
            return data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise GenerationError("Malformed Groq response") from exc
