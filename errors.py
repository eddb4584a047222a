# errors.py

from typing import Mapping, Optional


class EpicError(Exception):
    """Base class for every error raised by this client."""


class InputError(EpicError):
    """Raised when arguments are empty or invalid, before any request is sent."""


class TransportError(EpicError):
    """Raised when the HTTP connection itself fails."""


class ServiceError(EpicError):
    """Raised when the service answers with a non-success status code."""

    def __init__(self, status_code: int, body: str, url: Optional[str] = None):
        self.status_code = status_code
        self.body = body
        self.url = url
        super().__init__(f"HTTP {status_code}: {body}")


class SecondFactorRequired(ServiceError):
    """Raised when the login step demands a one-time code.

    ``cookies`` holds the jar of the partial attempt, to be handed back to
    ``Auth.authenticate_with_second_factor``.
    """

    def __init__(self, status_code: int, body: str, cookies: Mapping[str, str], url: Optional[str] = None):
        super().__init__(status_code, body, url)
        self.cookies = dict(cookies)


class DecodeError(EpicError):
    """Raised when a response body does not have the expected shape."""


class NotFoundError(EpicError):
    """Raised when an account cannot be resolved or has no stats records."""
