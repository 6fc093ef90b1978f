"""Error types raised by the tracking request lifecycle."""

from __future__ import annotations


class TrackingError(Exception):
    """Base class for every error raised by tracking_monitor."""


class InvalidTokenError(TrackingError):
    def __init__(self, raw: str, reason: str):
        super().__init__(f"Invalid tracking number {raw!r}: {reason}")
        self.raw = raw
        self.reason = reason


class TransientFetchError(TrackingError):
    """The page could not be fetched or parsed; the result of this round is unknown."""


class PersistenceError(TrackingError):
    """A store operation failed."""


class DuplicateError(TrackingError):
    def __init__(self, owner: int, token: str):
        super().__init__(f"Tracking number {token!r} is already being watched for owner {owner}")
        self.owner = owner
        self.token = token


class NotFoundError(TrackingError):
    def __init__(self, owner: int, token: str | None = None):
        what = f"tracking number {token!r}" if token else "any tracking number"
        super().__init__(f"No live watch for {what} of owner {owner}")
        self.owner = owner
        self.token = token


class TransportError(TrackingError):
    """The chat API could not be reached or rejected a call."""


class WatchFinishingError(TrackingError):
    """The token was already found; the watch is reporting and can no longer be cancelled."""

    def __init__(self, owner: int, token: str | None = None):
        what = f"tracking number {token!r}" if token else "every tracking number"
        super().__init__(f"The watch for {what} of owner {owner} already matched")
        self.owner = owner
        self.token = token
