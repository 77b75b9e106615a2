"""
Token lifecycle state machine.

Each active token goes FRESH -> DUE_FOR_ROTATION once rotation_period has elapsed since it
was created. A due token is not removed: a replacement is signed first, then the old token is
demoted to passive and left to expire after ttl ("create-then-retire"). If signing fails the
old token keeps serving and rotation is retried on the next tick.

Readers call get_current_active_token() from any thread; it returns the last published
TokenInfo without locking. All writes go through maintain()/bootstrap()/force_rotation(),
which are serialized by an internal lock.
"""
import logging
import threading
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

from jws_lifecycle.errors import ConfigurationError, SigningError
from jws_lifecycle.models import DATETIME_FORMAT, TokenInfo
from jws_lifecycle.signer import Signer
from jws_lifecycle.token_manager import TokenManager
from jws_lifecycle.token_store import TokenStore

logger = logging.getLogger(__name__)

# Published when no token has ever been signed, so readers always get a value
DEGRADED_TOKEN = "JWS_UNAVAILABLE"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _aware(now: datetime) -> datetime:
    # Naive clock readings are taken as UTC
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now


def _default_payload() -> dict:
    return {}


class LifecycleController:
    def __init__(
        self,
        signer: Signer,
        store: TokenStore,
        *,
        ttl: timedelta,
        rotation_period: timedelta,
        payload_provider: Callable[[], Any] | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        if ttl <= timedelta(0):
            raise ConfigurationError(f"ttl must be positive, got {ttl}")
        if rotation_period <= timedelta(0):
            raise ConfigurationError(f"rotation_period must be positive, got {rotation_period}")
        if rotation_period > ttl:
            logger.warning(
                "rotation_period (%s) is longer than ttl (%s); there will be windows with no passive token",
                rotation_period,
                ttl,
            )
        self._signer = signer
        self._store = store
        self._ttl = ttl
        self._rotation_period = rotation_period
        self._payload_provider = payload_provider or _default_payload
        self._clock = clock or utc_now
        self._manager = TokenManager()
        self._lock = threading.Lock()
        self._published: TokenInfo | None = None
        self._last_rotation: datetime | None = None
        self._last_save_ok: bool | None = None

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    @property
    def rotation_period(self) -> timedelta:
        return self._rotation_period

    @property
    def manager(self) -> TokenManager:
        return self._manager

    def bootstrap(self) -> TokenInfo:
        """
        Load persisted state, then make sure a usable active token exists: an absent or
        already-expired active token is replaced right away. Call once at startup.
        """
        with self._lock:
            now = self._now()
            self._manager = TokenManager.from_snapshot(self._store.load())
            self._manager.remove_expired(now)
            active = self._manager.get_active()
            if active is None:
                logger.info("No persisted active token; minting one")
                self._rotate(now)
            elif active.is_expired(now):
                logger.info(
                    "Persisted active token expired at %s; minting a replacement",
                    active.formatted_expires_at(),
                )
                if self._rotate(now):
                    # The expired token was just demoted; it has no grace period left
                    self._manager.remove_expired(now)
            else:
                self._last_rotation = active.created_at
            self._save()
            published = self._publish(now)
            logger.info("Token lifecycle initialized - %s", self._manager.summary())
            return published

    def maintain(self, now: datetime | None = None) -> TokenInfo:
        """One maintenance tick: prune, rotate if due, persist, publish. Safe to call repeatedly."""
        with self._lock:
            now = self._now(now)
            removed = self._manager.remove_expired(now)
            if removed:
                logger.info("Cleaned up %d expired passive tokens", removed)
            if self._rotation_due(now):
                self._rotate(now)
            self._save()
            published = self._publish(now)
            logger.info("Maintenance complete - %s", self._manager.summary())
            return published

    def force_rotation(self, now: datetime | None = None) -> TokenInfo:
        """Rotate immediately regardless of the rotation period (manual refresh)."""
        with self._lock:
            now = self._now(now)
            logger.info("Forcing token rotation")
            self._rotate(now)
            removed = self._manager.remove_expired(now)
            if removed:
                logger.info("Cleaned up %d expired passive tokens", removed)
            self._save()
            return self._publish(now)

    def reset(self) -> None:
        """
        Clear persisted and in-memory token state. Readers keep seeing the last published token
        until the next tick mints a new one.
        """
        with self._lock:
            self._store.clear()
            self._manager = TokenManager()
            self._last_rotation = None
            logger.info("Cleared all token data and reset manager")

    def get_current_active_token(self) -> TokenInfo:
        """Latest published active token. Never blocks and never raises."""
        published = self._published
        if published is None:
            return self._placeholder(self._now())
        return published

    def is_degraded(self) -> bool:
        published = self._published
        return published is None or published.token == DEGRADED_TOKEN

    def status(self, now: datetime | None = None) -> dict:
        """Diagnostic view of configuration and token state."""
        now = self._now(now)
        manager = self._manager
        active = manager.get_active()
        last_rotation = self._last_rotation
        return {
            "current_time": now.strftime(DATETIME_FORMAT),
            "ttl_seconds": int(self._ttl.total_seconds()),
            "rotation_period_seconds": int(self._rotation_period.total_seconds()),
            "last_rotation": last_rotation.strftime(DATETIME_FORMAT) if last_rotation else None,
            "next_rotation_due": (
                (last_rotation + self._rotation_period).strftime(DATETIME_FORMAT) if last_rotation else None
            ),
            "degraded": self.is_degraded(),
            "last_save_ok": self._last_save_ok,
            "active": _token_status(active, now) if active is not None else None,
            "passive": [_token_status(t, now) for t in manager.get_passive()],
            "summary": manager.summary(),
        }

    def _now(self, now: datetime | None = None) -> datetime:
        return _aware(now if now is not None else self._clock())

    def _rotation_due(self, now: datetime) -> bool:
        active = self._manager.get_active()
        if active is None:
            return True
        if active.is_expired(now):
            return True
        return now - active.created_at >= self._rotation_period

    def _rotate(self, now: datetime) -> bool:
        """Sign a new token and make it active. On failure the current active token stays."""
        try:
            payload = self._payload_provider()
        except Exception:
            logger.exception("Payload provider failed, keeping current active token")
            return False
        if isinstance(payload, dict) and "iat" not in payload:
            payload = {**payload, "iat": int(now.timestamp())}
        try:
            token = TokenInfo(self._signer.sign(payload), now, now + self._ttl)
        except (SigningError, ValueError) as e:
            logger.warning("Failed to create new token, keeping current active token: %s", e)
            return False
        self._manager.set_active(token)
        self._last_rotation = now
        logger.info(
            "Created new active token at %s, expires at %s",
            token.formatted_created_at(),
            token.formatted_expires_at(),
        )
        return True

    def _save(self) -> None:
        self._last_save_ok = self._store.save(self._manager.snapshot())
        if not self._last_save_ok:
            logger.warning("Token state not persisted; in-memory state remains authoritative")

    def _publish(self, now: datetime) -> TokenInfo:
        active = self._manager.get_active()
        if active is not None:
            self._published = active
        elif self._published is None:
            logger.warning("No active token could be created; publishing degraded placeholder")
            self._published = self._placeholder(now)
        return self._published

    def _placeholder(self, now: datetime) -> TokenInfo:
        return TokenInfo(DEGRADED_TOKEN, now, now + timedelta(seconds=1))


def _token_status(token: TokenInfo, now: datetime) -> dict:
    return {
        "jws": _truncate(token.token),
        "created_at": token.formatted_created_at(),
        "expires_at": token.formatted_expires_at(),
        "expired": token.is_expired(now),
    }


def _truncate(jws: str, length: int = 50) -> str:
    if len(jws) <= length:
        return jws
    return jws[:length] + "..."
