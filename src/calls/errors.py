"""Domain-specific exceptions for call operations.

These exceptions are safe to import from API layers without pulling in media
dependencies.
"""

from __future__ import annotations


class CallError(Exception):
    status_code: int = 500
    default_detail: str = "Call error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.default_detail)
        self.detail = detail or self.default_detail


class AuthRequiredError(CallError):
    status_code = 401
    default_detail = "An authenticated identity is required."


class CallNotFoundError(CallError):
    status_code = 404
    default_detail = "Call not found."


class MediaPermissionDeniedError(CallError):
    status_code = 403
    default_detail = "Microphone or camera permission denied."


class MediaDeviceUnavailableError(CallError):
    status_code = 503
    default_detail = "No usable microphone or camera found."


class PersistenceFailureError(CallError):
    status_code = 503
    default_detail = "Call record could not be stored."


class InvalidTransitionError(CallError):
    """Transition attempted from an unexpected state.

    Usually the outcome of a race with the peer or the ring timer and not an
    error from the user's point of view.
    """

    status_code = 409
    default_detail = "Call is not in a state that allows this action."


class ConnectionFailedError(CallError):
    status_code = 502
    default_detail = "Peer connection failed."
