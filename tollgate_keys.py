"""
tollgate_keys.py: RS256 signing key for Tollgate access tokens.

One RSA-2048 keypair is generated when the signer is constructed and lives
for the process lifetime. Tokens issued before a restart cannot be verified
afterwards; clients recover through the refresh or authorization flow.
"""

import json
import logging
import secrets
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

import jwt
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

logger = logging.getLogger("tollgate-keys")

JWT_ALGORITHM = "RS256"
RSA_KEY_SIZE = 2048
REQUIRED_CLAIMS = ["sub", "exp", "iss", "aud", "jti"]


class VerificationError(Exception):
    """Access token failed verification."""


class InvalidSignature(VerificationError):
    """Token is malformed or its signature does not match the key."""


class Expired(VerificationError):
    """Token signature is valid but ``exp`` is in the past."""


@dataclass
class AccessTokenClaims:
    issuer: str
    subject: str
    audience: str
    scope: str
    client_id: str
    issued_at: int
    expires_at: int
    jwt_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @classmethod
    def issue(cls, issuer: str, subject: str, scope: str, client_id: str,
              lifetime: int, now: float | None = None) -> "AccessTokenClaims":
        """Claims for a new token whose audience is the issuer itself."""
        issued_at = int(time.time() if now is None else now)
        return cls(
            issuer=issuer,
            subject=subject,
            audience=issuer,
            scope=scope,
            client_id=client_id,
            issued_at=issued_at,
            expires_at=issued_at + lifetime,
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "iss": self.issuer,
            "sub": self.subject,
            "aud": self.audience,
            "scope": self.scope,
            "client_id": self.client_id,
            "iat": self.issued_at,
            "exp": self.expires_at,
            "jti": self.jwt_id,
        }


def decode_verified(token: str, key: Any) -> dict[str, Any]:
    """Check signature and expiry of ``token`` against ``key``.

    Audience is not checked here; BearerGate owns that check. PyJWT errors
    are folded into the two verification outcomes.
    """
    try:
        return jwt.decode(
            token,
            key,
            algorithms=[JWT_ALGORITHM],
            options={"require": REQUIRED_CLAIMS, "verify_aud": False},
        )
    except jwt.ExpiredSignatureError as e:
        raise Expired("token expired") from e
    except jwt.InvalidTokenError as e:
        raise InvalidSignature("token signature or structure invalid") from e


class KeySigner:
    """Holds the process keypair; signs and verifies access tokens."""

    def __init__(self, key_size: int = RSA_KEY_SIZE):
        self._private_key = rsa.generate_private_key(
            public_exponent=65537, key_size=key_size,
        )
        self._public_key = self._private_key.public_key()
        self.key_id = secrets.token_hex(8)
        logger.info("signing key generated: kid=%s bits=%d", self.key_id, key_size)

    def sign(self, claims: AccessTokenClaims) -> str:
        return jwt.encode(
            claims.to_payload(),
            self._private_key,
            algorithm=JWT_ALGORITHM,
            headers={"kid": self.key_id, "typ": "JWT"},
        )

    def verify(self, token: str) -> dict[str, Any]:
        return decode_verified(token, self._public_key)

    def public_jwks(self) -> dict[str, Any]:
        jwk = json.loads(RSAAlgorithm.to_jwk(self._public_key))
        jwk.update({"kid": self.key_id, "use": "sig", "alg": JWT_ALGORITHM})
        return {"keys": [jwk]}
