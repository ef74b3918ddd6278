"""Failure kinds raised by the messaging core."""

from __future__ import annotations

from typing import List, Optional


class MessagingError(Exception):
    """Base class for failures surfaced by the messaging core."""

    status_code = 400

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class NotFound(MessagingError):
    """A referenced user (or request) does not resolve."""

    status_code = 404


class Forbidden(MessagingError):
    """Sender and recipient are not contacts and the recipient is not a bot."""

    status_code = 403


class Conflict(MessagingError):
    """The requested change is already in effect (duplicate request, already friends)."""

    status_code = 409


class ContentRejected(MessagingError):
    """The content filter blocked the payload; nothing was persisted."""

    status_code = 400

    def __init__(self, detail: str, violations: Optional[List[str]] = None) -> None:
        super().__init__(detail)
        self.violations = list(violations or [])


class PersistenceFailure(MessagingError):
    """The message store call failed before anything was delivered."""

    status_code = 502


class ResponderFailure(MessagingError):
    """Failure inside the automated reply path. Logged, never surfaced."""


class GenerationError(RuntimeError):
    """The generation service could not produce a reply."""
