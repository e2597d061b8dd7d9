"""Error taxonomy for the Graph request pipeline."""

from __future__ import annotations

from typing import Optional


class AuthError(Exception):
    """Raised by token providers when no usable bearer token is available."""


class GraphAPIError(Exception):
    """Base class for every failure surfaced by the pipeline."""

    retryable = False

    def user_message(self) -> str:
        return str(self)


class InvalidURL(GraphAPIError):
    def __init__(self, url: str) -> None:
        super().__init__(f"Invalid URL: {url}")
        self.url = url


class AuthenticationFailed(GraphAPIError):
    """The token provider could not supply a bearer token."""

    def __init__(self, cause: AuthError) -> None:
        super().__init__(str(cause) or "Authentication failed")
        self.cause = cause

    def user_message(self) -> str:
        return f"Authentication failed: {self.cause}. Please sign in again."


class Unauthorized(GraphAPIError):
    def __init__(self, url: Optional[str] = None) -> None:
        super().__init__("Unauthorized. Please sign in again.")
        self.url = url


class Forbidden(GraphAPIError):
    """The caller's identity lacks permission for the operation."""

    def __init__(self, resource: str = "", operation: str = "", message: Optional[str] = None) -> None:
        super().__init__(message or "Access forbidden. You don't have permission for this operation.")
        self.resource = resource
        self.operation = operation


class NotFound(GraphAPIError):
    def __init__(self, resource: str = "") -> None:
        super().__init__(f"Resource not found: {resource}" if resource else "Resource not found")
        self.resource = resource


class RateLimited(GraphAPIError):
    """Retry budget exhausted while the service kept answering 429."""

    def __init__(self, retry_after: Optional[str] = None, attempts: int = 0) -> None:
        super().__init__(f"Rate limited. Retry after {retry_after or 'unknown'} seconds")
        self.retry_after = retry_after
        self.attempts = attempts


class ServerError(GraphAPIError):
    retryable = True

    def __init__(self, message: str, code: str = "", status: Optional[int] = None) -> None:
        super().__init__(f"Server error ({code or status}): {message}")
        self.message = message
        self.code = code
        self.status = status


class NetworkError(GraphAPIError):
    retryable = True

    def __init__(self, cause: BaseException) -> None:
        super().__init__(f"Network error: {cause}")
        self.cause = cause


class EncodingFailure(GraphAPIError):
    def __init__(self, cause: BaseException) -> None:
        super().__init__(f"Failed to encode or decode payload: {cause}")
        self.cause = cause


class HttpError(GraphAPIError):
    def __init__(self, status: int) -> None:
        super().__init__(f"HTTP error: {status}")
        self.status = status


__all__ = [
    "AuthError",
    "AuthenticationFailed",
    "EncodingFailure",
    "Forbidden",
    "GraphAPIError",
    "HttpError",
    "InvalidURL",
    "NetworkError",
    "NotFound",
    "RateLimited",
    "ServerError",
    "Unauthorized",
]
