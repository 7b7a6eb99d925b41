"""
Exception classes for the Repeats tracker.

    RepeatsError (base)
        SpotifyError - any failed call against Spotify
            SpotifyAPIError - transient: network, timeout, 5xx, unexpected 4xx
                SpotifyRateLimitError - 429, carries retry_after
            SpotifyAuthError - invalid or expired session, fatal for the service
                SpotifyAuthStateError - OAuth callback with an unknown state

Transient errors abort the current step or cycle and are retried on the
next tick. Auth errors propagate to the service, which terminates.
"""
from typing import Optional


class RepeatsError(Exception):
    """Base exception for all tracker errors."""

    def __init__(self, message: str, details: Optional[dict] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return self.message


class SpotifyError(RepeatsError):
    def __init__(self, message: str, status_code: Optional[int] = None, details: Optional[dict] = None) -> None:
        super().__init__(message, details)
        self.status_code = status_code


class SpotifyAPIError(SpotifyError):
    pass


class SpotifyRateLimitError(SpotifyAPIError):
    def __init__(self, message: str, retry_after: float = 0.0, details: Optional[dict] = None) -> None:
        super().__init__(message, status_code=429, details=details)
        self.retry_after = retry_after


class SpotifyAuthError(SpotifyError):
    pass


class SpotifyAuthStateError(SpotifyAuthError):
    pass
