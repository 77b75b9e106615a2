"""
Tests for LifecycleController: bootstrap, rotation cadence, expiry, signer and store failures.
Time is driven explicitly; ttl=3min and rotation=1min unless a test says otherwise.
"""
import threading
from datetime import datetime, timedelta

import jwt
import pytest

from jws_lifecycle.errors import ConfigurationError
from jws_lifecycle.keys import load_or_create_signing_key
from jws_lifecycle.lifecycle import DEGRADED_TOKEN, LifecycleController
from jws_lifecycle.models import TokenInfo, TokenSnapshot
from jws_lifecycle.signer import JwsSigner
from jws_lifecycle.tests.helpers import T0, FakeClock, FakeSigner, MemoryStore, minutes
from jws_lifecycle.token_store import FileTokenStore

EPS = timedelta(seconds=1)


def _controller(signer, store, clock, ttl=3, rotation=1, **kwargs):
    return LifecycleController(
        signer,
        store,
        ttl=timedelta(minutes=ttl),
        rotation_period=timedelta(minutes=rotation),
        clock=clock,
        **kwargs,
    )


def test_invalid_durations_raise_configuration_error(signer, store):
    with pytest.raises(ConfigurationError):
        LifecycleController(signer, store, ttl=timedelta(0), rotation_period=timedelta(minutes=1))
    with pytest.raises(ConfigurationError):
        LifecycleController(signer, store, ttl=timedelta(minutes=3), rotation_period=timedelta(minutes=-1))


def test_rotation_period_longer_than_ttl_is_allowed(signer, store, clock):
    c = _controller(signer, store, clock, ttl=1, rotation=5)
    assert c.rotation_period > c.ttl


def test_bootstrap_mints_when_nothing_persisted(signer, store, clock):
    c = _controller(signer, store, clock)
    token = c.bootstrap()
    assert token.token == "token-1"
    assert token.created_at == T0
    assert token.expires_at == minutes(3)
    assert c.get_current_active_token() == token
    assert store.snapshot.active == token


def test_bootstrap_reuses_valid_persisted_token(signer, clock):
    persisted = TokenInfo("persisted", minutes(-0.5), minutes(2.5))
    store = MemoryStore(TokenSnapshot(active=persisted))
    c = _controller(signer, store, clock)
    assert c.bootstrap() == persisted
    assert signer.calls == 0


def test_bootstrap_replaces_expired_persisted_token(signer, clock):
    old_passive = TokenInfo("older", minutes(-10), minutes(-7))
    expired = TokenInfo("expired", minutes(-5), minutes(-2))
    store = MemoryStore(TokenSnapshot(active=expired, passive=(old_passive,)))
    c = _controller(signer, store, clock)
    token = c.bootstrap()
    assert token.token == "token-1"
    assert c.manager.get_passive() == []
    assert store.snapshot == TokenSnapshot(active=token)


def test_bootstrap_with_failing_signer_publishes_placeholder(signer, store, clock):
    signer.failing = True
    c = _controller(signer, store, clock)
    token = c.bootstrap()
    assert token.token == DEGRADED_TOKEN
    assert c.is_degraded() is True
    assert c.manager.has_active() is False
    # retried on the next tick
    signer.failing = False
    clock.now = T0 + EPS
    assert c.maintain().token == "token-1"
    assert c.is_degraded() is False


def test_bootstrap_with_failing_signer_keeps_expired_token(signer, clock):
    expired = TokenInfo("expired", minutes(-5), minutes(-2))
    store = MemoryStore(TokenSnapshot(active=expired))
    signer.failing = True
    c = _controller(signer, store, clock)
    assert c.bootstrap() == expired
    assert c.get_current_active_token() == expired


def test_accessor_before_bootstrap_never_fails(signer, store, clock):
    c = _controller(signer, store, clock)
    assert c.get_current_active_token().token == DEGRADED_TOKEN


def test_maintain_does_not_rotate_before_period(signer, store, clock):
    c = _controller(signer, store, clock)
    a = c.bootstrap()
    assert c.maintain(minutes(0.5)) == a
    assert c.maintain(minutes(1) - EPS) == a
    assert signer.calls == 1


def test_maintain_rotates_at_period(signer, store, clock):
    c = _controller(signer, store, clock)
    a = c.bootstrap()
    b = c.maintain(minutes(1))
    assert b.token == "token-2"
    assert b.created_at == minutes(1)
    assert b.expires_at == minutes(4)
    assert c.manager.get_passive() == [a]


def test_concrete_rotation_sequence(signer, store, clock):
    c = _controller(signer, store, clock)
    a = c.bootstrap()
    b = c.maintain(minutes(1))
    cc = c.maintain(minutes(2))
    d = c.maintain(minutes(3) + EPS)
    assert [t.token for t in (a, b, cc, d)] == ["token-1", "token-2", "token-3", "token-4"]
    assert c.manager.get_active() == d
    assert c.manager.get_passive() == [b, cc]
    assert store.snapshot == TokenSnapshot(active=d, passive=(b, cc))


def test_maintain_is_idempotent_within_a_period(signer, store, clock):
    c = _controller(signer, store, clock)
    c.bootstrap()
    c.maintain(minutes(1))
    first = c.manager.snapshot()
    c.maintain(minutes(1))
    c.maintain(minutes(1.5))
    assert c.manager.snapshot() == first
    assert signer.calls == 2


def test_signer_failure_defers_rotation(signer, store, clock):
    c = _controller(signer, store, clock)
    a = c.bootstrap()
    signer.failing = True
    assert c.maintain(minutes(1)) == a
    assert c.maintain(minutes(1.5)) == a
    assert c.get_current_active_token() == a
    signer.failing = False
    b = c.maintain(minutes(1.75))
    # deferred rotation uses the time it actually ran
    assert b.created_at == minutes(1.75)
    assert b.expires_at == minutes(4.75)
    assert c.manager.get_passive() == [a]


def test_signer_failing_indefinitely_keeps_serving_expired_token(signer, store, clock):
    c = _controller(signer, store, clock)
    a = c.bootstrap()
    signer.failing = True
    assert c.maintain(minutes(10)) == a
    assert c.get_current_active_token() == a
    assert c.manager.has_active() is True


def test_store_failure_keeps_in_memory_token_and_later_save_reconciles(signer, store, clock):
    c = _controller(signer, store, clock)
    a = c.bootstrap()
    store.failing = True
    b = c.maintain(minutes(1))
    assert c.get_current_active_token() == b
    assert store.snapshot.active == a
    assert c.status(minutes(1))["last_save_ok"] is False
    store.failing = False
    assert c.maintain(minutes(1.5)) == b
    assert signer.calls == 2
    assert store.snapshot == TokenSnapshot(active=b, passive=(a,))


def test_active_never_expired_after_maintain_when_period_exceeds_ttl(signer, store, clock):
    c = _controller(signer, store, clock, ttl=1, rotation=5)
    c.bootstrap()
    token = c.maintain(minutes(1) + EPS)
    assert token.token == "token-2"
    assert not token.is_expired(minutes(1) + EPS)


def test_payload_provider_is_passed_to_signer(signer, store, clock):
    c = _controller(signer, store, clock, payload_provider=lambda: {"iss": "test"})
    c.bootstrap()
    assert signer.payloads == [{"iss": "test", "iat": int(T0.timestamp())}]


def test_force_rotation(signer, store, clock):
    c = _controller(signer, store, clock)
    a = c.bootstrap()
    b = c.force_rotation(minutes(0.1))
    assert b.token == "token-2"
    assert c.manager.get_passive() == [a]
    assert store.snapshot.active == b


def test_reset_clears_state_but_keeps_publishing(signer, store, clock):
    c = _controller(signer, store, clock)
    a = c.bootstrap()
    c.reset()
    assert store.cleared == 1
    assert c.manager.has_active() is False
    assert c.get_current_active_token() == a
    b = c.maintain(minutes(0.1))
    assert b.token == "token-2"
    assert c.manager.get_passive() == []


def test_status_reports_tokens(signer, store, clock):
    c = _controller(signer, store, clock)
    c.bootstrap()
    c.maintain(minutes(1))
    status = c.status(minutes(3.5))
    assert status["ttl_seconds"] == 180
    assert status["rotation_period_seconds"] == 60
    assert status["last_rotation"] == "2026-01-01 12:01:00"
    assert status["next_rotation_due"] == "2026-01-01 12:02:00"
    assert status["degraded"] is False
    assert status["active"]["jws"] == "token-2"
    assert status["passive"] == [
        {"jws": "token-1", "created_at": "2026-01-01 12:00:00", "expires_at": "2026-01-01 12:03:00", "expired": True}
    ]


def test_readers_see_whole_tokens_during_maintenance(signer, store, clock):
    c = _controller(signer, store, clock)
    c.bootstrap()
    seen = []
    stop = threading.Event()

    def reader():
        while not stop.is_set():
            seen.append(c.get_current_active_token())

    threads = [threading.Thread(target=reader) for _ in range(4)]
    for t in threads:
        t.start()
    for i in range(1, 50):
        c.maintain(minutes(i))
    stop.set()
    for t in threads:
        t.join()
    assert seen
    assert all(isinstance(t, TokenInfo) and t.token.startswith("token-") for t in seen)


def test_oldest_passive_still_present_at_exact_ttl(signer, store, clock):
    c = _controller(signer, store, clock)
    a = c.bootstrap()
    b = c.maintain(minutes(1))
    cc = c.maintain(minutes(2))
    d = c.maintain(minutes(3))
    assert d.token == "token-4"
    assert c.manager.get_active() == d
    assert c.manager.get_passive() == [a, b, cc]


def test_passive_pruned_just_after_expiry(signer, store, clock):
    c = _controller(signer, store, clock)
    a = c.bootstrap()
    c.maintain(minutes(1))
    c.maintain(a.expires_at)
    assert a in c.manager.get_passive()
    c.maintain(a.expires_at + timedelta(microseconds=1))
    assert a not in c.manager.get_passive()


def test_force_rotation_prunes_expired_passive(signer, store, clock):
    c = _controller(signer, store, clock)
    a = c.bootstrap()
    b = c.maintain(minutes(1))
    c.force_rotation(minutes(3.5))
    assert c.manager.get_passive() == [b]
    assert a not in store.snapshot.passive


def test_empty_signature_defers_rotation(store, clock):
    class EmptySigner(FakeSigner):
        def sign(self, payload):
            return "" if self.failing else super().sign(payload)

    signer = EmptySigner()
    signer.failing = True
    c = _controller(signer, store, clock)
    assert c.bootstrap().token == DEGRADED_TOKEN
    signer.failing = False
    a = c.maintain(minutes(0.1))
    assert a.token == "token-1"
    signer.failing = True
    assert c.maintain(minutes(1)) == a
    assert c.manager.get_passive() == []


def test_payload_provider_error_defers_rotation(signer, store, clock):
    failing = [True]

    def payload():
        if failing[0]:
            raise RuntimeError("issuer lookup failed")
        return {"iss": "test"}

    c = _controller(signer, store, clock, payload_provider=payload)
    assert c.bootstrap().token == DEGRADED_TOKEN
    assert c.maintain(minutes(0.5)).token == DEGRADED_TOKEN
    failing[0] = False
    a = c.maintain(minutes(0.75))
    assert a.token == "token-1"
    failing[0] = True
    assert c.maintain(minutes(2)) == a
    assert signer.calls == 1


def test_iat_comes_from_controller_clock(store, tmp_path):
    jws_signer = JwsSigner(load_or_create_signing_key(str(tmp_path / "key.pem")))
    c = _controller(jws_signer, store, FakeClock(T0))
    token = c.bootstrap()
    claims = jwt.decode(token.token, jws_signer.public_key(), algorithms=["ES256"])
    assert claims["iat"] == int(T0.timestamp())


def test_token_info_rejects_naive_datetimes():
    with pytest.raises(ValueError):
        TokenInfo("x", datetime(2026, 1, 1, 12), datetime(2026, 1, 1, 12, 3))


def test_naive_clock_is_treated_as_utc(signer, tmp_path):
    file_store = FileTokenStore(tmp_path / "jws-data")
    naive_clock = FakeClock(datetime(2026, 1, 1, 12))
    first = _controller(signer, file_store, naive_clock).bootstrap()
    assert first.created_at == T0
    second = _controller(signer, file_store, naive_clock).bootstrap()
    assert second == first
    assert signer.calls == 1
