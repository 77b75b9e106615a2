"""
JWS lifecycle configuration. Values come from the environment and are read once at startup.
No key material in this file; the signing key is loaded from JWS_SIGNING_KEY_PATH.
"""
import os
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import timedelta

from jws_lifecycle.errors import ConfigurationError

# Token lifetime (minutes). Passive tokens are pruned once this elapses.
DEFAULT_TTL_MINUTES = 3

# Interval between mandatory new-token creation (minutes). Expected <= TTL so a passive token
# is always around as a grace-period credential.
DEFAULT_ROTATION_PERIOD_MINUTES = 1

# How often the background maintenance tick runs (seconds)
DEFAULT_MAINTENANCE_INTERVAL_SECONDS = 10

# How long shutdown waits for an in-flight tick before abandoning it (seconds)
DEFAULT_SHUTDOWN_GRACE_SECONDS = 5

# Directory holding active-token.properties and passive-tokens.properties
DEFAULT_PERSISTENCE_PATH = "jws-data"

# EC P-256 private key PEM used for ES256 signing. Generated on first start if missing.
DEFAULT_SIGNING_KEY_PATH = ".jws_signing_key.pem"

DEFAULT_ISSUER = "http://127.0.0.1:8080"


@dataclass(frozen=True)
class Settings:
    ttl_minutes: int
    rotation_period_minutes: int
    maintenance_interval_seconds: int
    shutdown_grace_seconds: int
    persistence_path: str
    signing_key_path: str
    database_url: str | None
    issuer: str

    @property
    def ttl(self) -> timedelta:
        return timedelta(minutes=self.ttl_minutes)

    @property
    def rotation_period(self) -> timedelta:
        return timedelta(minutes=self.rotation_period_minutes)


def _positive_int(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")
    if value <= 0:
        raise ConfigurationError(f"{name} must be > 0, got {value}")
    return value


def get_settings(environ: Mapping[str, str] | None = None) -> Settings:
    """
    Build Settings from the environment (os.environ by default).
    Raises ConfigurationError on non-integer or non-positive durations.
    """
    if environ is None:
        environ = os.environ
    return Settings(
        ttl_minutes=_positive_int(environ, "JWS_TTL_MINUTES", DEFAULT_TTL_MINUTES),
        rotation_period_minutes=_positive_int(
            environ, "JWS_ROTATION_PERIOD_MINUTES", DEFAULT_ROTATION_PERIOD_MINUTES
        ),
        maintenance_interval_seconds=_positive_int(
            environ, "JWS_MAINTENANCE_INTERVAL_SECONDS", DEFAULT_MAINTENANCE_INTERVAL_SECONDS
        ),
        shutdown_grace_seconds=_positive_int(
            environ, "JWS_SHUTDOWN_GRACE_SECONDS", DEFAULT_SHUTDOWN_GRACE_SECONDS
        ),
        persistence_path=environ.get("JWS_PERSISTENCE_PATH", DEFAULT_PERSISTENCE_PATH),
        signing_key_path=environ.get("JWS_SIGNING_KEY_PATH", DEFAULT_SIGNING_KEY_PATH),
        database_url=environ.get("JWS_DATABASE_URL", "").strip() or None,
        issuer=environ.get("JWS_ISSUER", DEFAULT_ISSUER).rstrip("/"),
    )
