from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import NamedTuple

from tracking_monitor.errors import InvalidTokenError


DEFAULT_MAX_TOKEN_LENGTH = 64


class RequestStatus(str, Enum):
    PENDING = "pending"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"


class WatchKey(NamedTuple):
    owner: int
    token_key: str


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_token(raw: str) -> str:
    return (raw or "").strip()


def token_key(token: str) -> str:
    """Comparison key for a token: trimmed and case-folded."""
    return normalize_token(token).casefold()


def validate_token(raw: str, *, max_length: int = DEFAULT_MAX_TOKEN_LENGTH) -> str:
    """
    Returns the trimmed token or raises InvalidTokenError.

    Tracking numbers on the watched page are digits with separators, so any
    alphabetic character (latin or not) means the user sent something else.
    """
    token = normalize_token(raw)
    if not token:
        raise InvalidTokenError(raw, "empty")
    if len(token) > max_length:
        raise InvalidTokenError(raw, f"longer than {max_length} characters")
    if any(c.isalpha() for c in token):
        raise InvalidTokenError(raw, "contains letters")
    if any(c.isspace() for c in token):
        raise InvalidTokenError(raw, "contains whitespace")
    return token


@dataclass(frozen=True)
class TrackingRequest:
    owner: int
    token: str
    created_at: datetime = field(default_factory=utc_now)
    status: RequestStatus = RequestStatus.PENDING

    @property
    def key(self) -> WatchKey:
        return WatchKey(self.owner, token_key(self.token))

    def with_status(self, status: RequestStatus) -> TrackingRequest:
        return replace(self, status=status)

    def to_dict(self) -> dict:
        return {
            "owner": self.owner,
            "token": self.token,
            "created_at": self.created_at.isoformat(),
            "status": self.status.value,
        }
