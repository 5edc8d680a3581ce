"""Custom exceptions for the web API."""

from datetime import datetime


class PostLabError(Exception):
    """Base exception for PostLab errors."""

    pass


class ConfigurationError(PostLabError):
    """Raised when there's a configuration error."""

    pass


class RequestValidationFailed(PostLabError):
    """Raised when a request body has the wrong shape (missing or oversized post)."""

    pass


class QuotaExceededError(PostLabError):
    """Raised when an identity has used up its daily analyses."""

    def __init__(self, reset_at: datetime, message: str | None = None):
        self.reset_at = reset_at
        super().__init__(
            message
            or "Daily analysis limit reached. You can analyze up to 8 posts per day."
        )


class ProviderError(PostLabError):
    """Raised when the analysis provider call fails (network, timeout, vendor error)."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)
