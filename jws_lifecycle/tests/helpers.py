"""Fakes and time helpers shared by the jws_lifecycle tests."""
from datetime import datetime, timedelta, timezone

from jws_lifecycle.errors import SigningError
from jws_lifecycle.models import TokenSnapshot

T0 = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def minutes(n: float) -> datetime:
    """T0 + n minutes."""
    return T0 + timedelta(minutes=n)


class FakeSigner:
    """Returns token-1, token-2, ... ; raises SigningError while `failing` is set."""

    def __init__(self):
        self.calls = 0
        self.failing = False
        self.payloads = []

    def sign(self, payload):
        if self.failing:
            raise SigningError("signer unavailable")
        self.calls += 1
        self.payloads.append(payload)
        return f"token-{self.calls}"


class MemoryStore:
    """TokenStore kept in memory; `failing` makes save() report failure like a broken disk."""

    def __init__(self, snapshot: TokenSnapshot | None = None):
        self.snapshot = snapshot or TokenSnapshot()
        self.failing = False
        self.saves = 0
        self.cleared = 0

    def save(self, snapshot: TokenSnapshot) -> bool:
        if self.failing:
            return False
        self.saves += 1
        self.snapshot = snapshot
        return True

    def load(self) -> TokenSnapshot:
        return self.snapshot

    def clear(self) -> bool:
        self.cleared += 1
        self.snapshot = TokenSnapshot()
        return True


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


