"""Error kinds raised by the session engine.

Only SessionManager operations let these reach the operator. The poll
scheduler, reconciler and webhook dispatcher log and absorb them.
"""

from __future__ import annotations


class SessionError(Exception):
    """Base class for all session engine errors."""


class RemoteUnavailable(SessionError):
    """Vexa could not be reached: network error, timeout, or 5xx response."""


class RemoteRejected(SessionError):
    """Vexa answered with a well-formed rejection (4xx)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class StoreUnavailable(SessionError):
    """A Meeting Store call failed."""


class WebhookDeliveryFailed(SessionError):
    """A webhook POST failed after all attempts."""


class MeetingNotFound(SessionError):
    """No meeting exists with the requested id (for this account)."""


class InvalidSessionRequest(SessionError, ValueError):
    """A session command was missing required input."""


class SessionConflict(SessionError):
    """The remote bot is already tracked by another account's active meeting."""
