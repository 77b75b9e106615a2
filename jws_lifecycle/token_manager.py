"""
In-memory active/passive token state. No I/O and no notion of "now" beyond what callers pass in.
Writes replace whole values so readers on other threads never see a half-updated list.
"""
import logging
from collections.abc import Iterable
from datetime import datetime

from jws_lifecycle.models import TokenInfo, TokenSnapshot

logger = logging.getLogger(__name__)


class TokenManager:
    def __init__(self, active: TokenInfo | None = None, passive: Iterable[TokenInfo] | None = None):
        self._active = active
        self._passive: list[TokenInfo] = list(passive) if passive is not None else []

    @classmethod
    def from_snapshot(cls, snapshot: TokenSnapshot) -> "TokenManager":
        return cls(snapshot.active, snapshot.passive)

    def set_active(self, new_token: TokenInfo) -> None:
        """Demote the current active token (if any) to the end of the passive list, then replace it."""
        previous = self._active
        if previous is not None:
            self._passive = [*self._passive, previous]
            logger.info("Moved active token to passive (created: %s)", previous.formatted_created_at())
        self._active = new_token
        logger.info("Set new active token (created: %s)", new_token.formatted_created_at())

    def remove_expired(self, now: datetime) -> int:
        """
        Drop every passive token expired at `now`. Returns how many were removed.
        The active token is left alone even if expired: it is replaced by rotation, not deleted.
        """
        kept = []
        removed = 0
        for token in self._passive:
            if token.is_expired(now):
                removed += 1
                logger.info(
                    "Removed expired passive token (created: %s, expired: %s)",
                    token.formatted_created_at(),
                    token.formatted_expires_at(),
                )
            else:
                kept.append(token)
        if removed:
            self._passive = kept
        return removed

    def has_active(self) -> bool:
        return self._active is not None

    def get_active(self) -> TokenInfo | None:
        return self._active

    def get_passive(self) -> list[TokenInfo]:
        return list(self._passive)

    def is_active_expired(self, now: datetime) -> bool:
        active = self._active
        return active is not None and active.is_expired(now)

    def passive_count(self) -> int:
        return len(self._passive)

    def total_count(self) -> int:
        return (1 if self._active is not None else 0) + len(self._passive)

    def snapshot(self) -> TokenSnapshot:
        return TokenSnapshot(active=self._active, passive=tuple(self._passive))

    def summary(self) -> str:
        active = self._active
        passive = self._passive
        parts = []
        if active is not None:
            parts.append(
                f"Active: {active.formatted_created_at()} (expires: {active.formatted_expires_at()})"
            )
        else:
            parts.append("Active: none")
        passive_part = f"Passive: {len(passive)} tokens"
        if passive:
            entries = ", ".join(
                f"{t.formatted_created_at()} (expires: {t.formatted_expires_at()})" for t in passive
            )
            passive_part += f" [{entries}]"
        parts.append(passive_part)
        return "Token Summary - " + ", ".join(parts)
