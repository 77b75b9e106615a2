"""
Value types for the token lifecycle: one signed token with its validity window, and a
snapshot of the active/passive state as persisted by a TokenStore.
"""
from dataclasses import dataclass, field
from datetime import datetime

DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"


@dataclass(frozen=True)
class TokenInfo:
    token: str
    created_at: datetime
    expires_at: datetime

    def __post_init__(self):
        if not isinstance(self.token, str) or not self.token:
            raise ValueError("token must be a non-empty string")
        if self.created_at.tzinfo is None or self.expires_at.tzinfo is None:
            raise ValueError("created_at and expires_at must be timezone-aware")
        if self.expires_at <= self.created_at:
            raise ValueError("expires_at must be after created_at")

    def is_expired(self, now: datetime) -> bool:
        """Strict: a token is still valid at exactly expires_at."""
        return now > self.expires_at

    def formatted_created_at(self) -> str:
        return self.created_at.strftime(DATETIME_FORMAT)

    def formatted_expires_at(self) -> str:
        return self.expires_at.strftime(DATETIME_FORMAT)

    def to_dict(self) -> dict:
        return {
            "jws": self.token,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }


@dataclass(frozen=True)
class TokenSnapshot:
    active: TokenInfo | None = None
    passive: tuple[TokenInfo, ...] = field(default_factory=tuple)

    def is_empty(self) -> bool:
        return self.active is None and not self.passive
