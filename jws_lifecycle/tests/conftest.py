"""
Pytest configuration for jws_lifecycle. Fake signer and in-memory store so lifecycle tests
are deterministic; host tests point persistence and the signing key at tmp_path.
"""
import pytest

from jws_lifecycle.tests.helpers import FakeClock, FakeSigner, MemoryStore


@pytest.fixture
def signer():
    return FakeSigner()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def clock():
    return FakeClock()
