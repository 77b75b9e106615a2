"""
EC P-256 key for signing JWS tokens (ES256).
Load from file or generate and persist; no key material in code.
"""
import base64
import logging
from pathlib import Path

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

logger = logging.getLogger(__name__)

DEFAULT_KID = "jws-signing-key"


def _generate_key() -> ec.EllipticCurvePrivateKey:
    return ec.generate_private_key(ec.SECP256R1())


def _serialize_private(key) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def _deserialize_private(pem: bytes) -> ec.EllipticCurvePrivateKey:
    key = serialization.load_pem_private_key(pem, password=None)
    if not isinstance(key, ec.EllipticCurvePrivateKey):
        raise ValueError("private key is not an EC private key")
    return key


def load_or_create_signing_key(path: str | None) -> ec.EllipticCurvePrivateKey:
    """
    Load the EC private key from path, or generate one and save it there.
    An unreadable or non-EC key file is replaced by a freshly generated key.
    """
    if not path:
        path = ".jws_signing_key.pem"
    p = Path(path)
    if p.exists():
        try:
            return _deserialize_private(p.read_bytes())
        except (OSError, ValueError, TypeError, UnsupportedAlgorithm) as e:
            logger.warning("Failed to load signing key from %s: %s; generating new key", path, e)
    key = _generate_key()
    try:
        p.write_bytes(_serialize_private(key))
        logger.info("Generated and saved signing key to %s", path)
    except OSError as e:
        logger.warning("Could not save signing key to %s: %s", path, e)
    return key


def _b64url_uint(value: int, length: int) -> str:
    return base64.urlsafe_b64encode(value.to_bytes(length, "big")).rstrip(b"=").decode("ascii")


def public_key_to_jwk(public_key: ec.EllipticCurvePublicKey, kid: str = DEFAULT_KID) -> dict:
    """Export a P-256 public key as a JWK with the given kid."""
    numbers = public_key.public_numbers()
    size = (public_key.curve.key_size + 7) // 8
    return {
        "kty": "EC",
        "kid": kid,
        "alg": "ES256",
        "use": "sig",
        "crv": "P-256",
        "x": _b64url_uint(numbers.x, size),
        "y": _b64url_uint(numbers.y, size),
    }
