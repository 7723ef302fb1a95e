"""Error taxonomy for the dispute engine.

Every error carries a plain-language message that can be shown to the
caller as-is.  ``DuplicateRequest`` is not a failure: callers catch it and
return ``original`` as the outcome.
"""

from __future__ import annotations

from typing import Any


class DisputeError(Exception):
    """Base class for all dispute engine errors."""


class ValidationError(DisputeError):
    """Malformed input: missing fields, text too short, amount over cap."""


class InvalidTransition(DisputeError):
    """The operation is not legal in the dispute's current state."""

    def __init__(self, message: str, *, current_state: str | None = None) -> None:
        super().__init__(message)
        self.current_state = current_state


class AuthorizationError(DisputeError):
    """The caller's identity or capability does not match the operation."""


class DisputeNotFound(DisputeError):
    """No dispute exists with the requested identity."""


class DownstreamUnavailable(DisputeError):
    """A collaborator (gateway, notifier) could not be reached."""


class DuplicateRequest(DisputeError):
    """The idempotency key was already processed; ``original`` holds the outcome."""

    def __init__(self, message: str, original: Any = None) -> None:
        super().__init__(message)
        self.original = original


class ConcurrentModification(InvalidTransition):
    """The dispute changed between read and write; re-fetch and retry."""
