"""
Signer collaborator: turns a payload into an opaque compact JWS. The lifecycle core never
looks inside the token it gets back.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Protocol

import jwt
from cryptography.hazmat.primitives.asymmetric import ec

from jws_lifecycle.errors import SigningError
from jws_lifecycle.keys import DEFAULT_KID, public_key_to_jwk

logger = logging.getLogger(__name__)

ALGORITHM = "ES256"


class Signer(Protocol):
    def sign(self, payload: Any) -> str: ...


class JwsSigner:
    """
    ES256 signer backed by PyJWT. Dict payloads become the claim set; anything else is
    carried under a "data" claim. An "iat" claim is always added.
    """

    def __init__(self, private_key: ec.EllipticCurvePrivateKey, kid: str = DEFAULT_KID):
        self._private_key = private_key
        self.kid = kid

    def sign(self, payload: Any) -> str:
        claims = dict(payload) if isinstance(payload, dict) else {}
        if payload is not None and not isinstance(payload, dict):
            claims["data"] = payload
        claims.setdefault("iat", int(datetime.now(timezone.utc).timestamp()))
        try:
            token = jwt.encode(
                claims,
                self._private_key,
                algorithm=ALGORITHM,
                headers={"kid": self.kid, "typ": "JWT"},
            )
        except (jwt.PyJWTError, TypeError, ValueError) as e:
            raise SigningError(f"failed to sign payload: {e}") from e
        if isinstance(token, bytes):
            token = token.decode("utf-8")
        return token

    def public_key(self) -> ec.EllipticCurvePublicKey:
        return self._private_key.public_key()

    def jwks(self) -> dict:
        """JSON Web Key Set with the signing key, for verifiers of issued tokens."""
        return {"keys": [public_key_to_jwk(self.public_key(), self.kid)]}
