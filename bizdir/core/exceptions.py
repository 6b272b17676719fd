"""Exception hierarchy shared by the storage, query and ingestion layers."""

from __future__ import annotations

import enum
from typing import Any, Dict, Optional

import requests


class DirectoryError(Exception):
    """Base exception for all directory errors."""


class ConfigError(DirectoryError):
    """Raised when configuration values are missing or invalid."""


class ValidationError(DirectoryError, ValueError):
    """Raised when a business payload is malformed (missing id/name, bad values)."""


class StorageUnavailable(DirectoryError):
    """Raised when the storage backend cannot be reached or refuses the operation."""

    def __init__(self, backend: str, message: str) -> None:
        self.backend = backend
        super().__init__(f"[{backend}] {message}")


class NetworkErrorKind(str, enum.Enum):
    TIMEOUT = "timeout"
    FETCH_FAILED = "fetch_failed"
    SERVER_DOWN = "server_down"
    INVALID_RESPONSE = "invalid_response"
    UNKNOWN = "unknown"


_KIND_DETAILS: Dict[NetworkErrorKind, tuple] = {
    NetworkErrorKind.TIMEOUT: ("The server is taking too long to respond. Please try again.", True),
    NetworkErrorKind.FETCH_FAILED: (
        "Unable to connect to the server. Please check your internet connection.",
        True,
    ),
    NetworkErrorKind.SERVER_DOWN: ("The server appears to be unavailable. Please try again later.", True),
    NetworkErrorKind.INVALID_RESPONSE: ("The server returned an unexpected response. Please try again.", True),
    NetworkErrorKind.UNKNOWN: ("An unexpected error occurred. Please try again.", False),
}


class NetworkError(DirectoryError):
    """Failure talking to an external HTTP source.

    ``message`` keeps the raw cause for logs; ``user_message`` is safe to show
    to end users. ``should_retry`` tells callers whether a retry can help.
    """

    def __init__(self, kind: NetworkErrorKind, message: str) -> None:
        self.kind = NetworkErrorKind(kind)
        self.message = message
        self.user_message, self.should_retry = _KIND_DETAILS[self.kind]
        super().__init__(message)

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.kind.value,
            "message": self.message,
            "userMessage": self.user_message,
            "shouldRetry": self.should_retry,
        }

    @classmethod
    def from_exception(cls, exc: BaseException) -> "NetworkError":
        """Classify an exception raised while calling an external source."""
        if isinstance(exc, NetworkError):
            return exc
        message = str(exc) or exc.__class__.__name__
        if isinstance(exc, requests.Timeout):
            return cls(NetworkErrorKind.TIMEOUT, message)
        if isinstance(exc, requests.ConnectionError):
            return cls(NetworkErrorKind.FETCH_FAILED, message)
        if isinstance(exc, requests.HTTPError):
            response = exc.response
            if response is not None and response.status_code >= 500:
                return cls(NetworkErrorKind.SERVER_DOWN, message)
            return cls(NetworkErrorKind.INVALID_RESPONSE, message)
        if isinstance(exc, ValueError):
            # requests raises a ValueError subclass when the body is not JSON.
            return cls(NetworkErrorKind.INVALID_RESPONSE, message)
        return cls(NetworkErrorKind.UNKNOWN, message)


class PartialBatchFailure(DirectoryError):
    """One or more categories failed during an ingestion batch that still completed."""

    def __init__(self, summary: Any, message: Optional[str] = None) -> None:
        self.summary = summary
        failed = getattr(summary, "categories_failed", 0)
        super().__init__(message or f"{failed} categories failed during ingestion")
