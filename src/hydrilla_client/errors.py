"""Error taxonomy shared by the API client, the poller and the CLI.

Transport-level failures (``NetworkError``) are kept apart from
application-level failures (``ServerError`` and its more specific siblings)
so callers can tell "check backend URL" apart from "bad request".
"""

from typing import Any

GPU_OFFLINE_MESSAGE = "GPU is currently offline. Please try again after some time."


class HydrillaError(Exception):
    """Base class for every error raised by the client."""


class InvalidInput(HydrillaError, ValueError):
    """Caller supplied missing, conflicting or malformed input."""


class AuthRequired(HydrillaError):
    """The operation needs a signed-in user and no token was available."""

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(message)


class NotFound(HydrillaError):
    """The referenced job or resource does not exist server-side."""


class NetworkError(HydrillaError):
    """Transport failure: offline, DNS, refused connection or timeout."""

    def __init__(self, message: str, *, url: str | None = None) -> None:
        super().__init__(message)
        self.url = url


class GpuOfflineError(NetworkError):
    """The generation API could not be reached."""

    def __init__(self, *, url: str | None = None) -> None:
        super().__init__(GPU_OFFLINE_MESSAGE, url=url)


class ServerError(HydrillaError):
    """Non-2xx response. ``str(err)`` is the server's message when it sent one."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AlreadyExists(HydrillaError):
    """The resource already exists (e.g. the email already has early access)."""

    def __init__(self, message: str, *, payment: Any = None) -> None:
        super().__init__(message)
        self.payment = payment
