"""
tollgate_gate.py: Bearer token enforcement for the protected MCP endpoint.

BearerGate is ASGI middleware placed in front of the downstream app. Every
request that is not an OAuth, login or discovery request must carry
``Authorization: Bearer <jwt>``. The token is verified (signature + expiry)
by a TokenVerifier, then its audience is checked against the issuer. On
success the request scope gets ``user`` / ``auth`` entries in the shape
starlette's AuthenticationMiddleware uses; on failure the caller gets a 401
with a challenge pointing at the protected-resource metadata document.

Two verifiers exist:
  - KeySigner (tollgate_keys): the in-process key, used when the
    authorization server and resource server share a process.
  - DiscoveryVerifier: fetches the issuer's metadata and JWKS once,
    lazily, and verifies against the published key.
"""

import json
import logging
import threading
import time
from typing import Any, Callable, Generic, Protocol, TypeVar

import httpx
import jwt
from starlette.authentication import AuthCredentials, SimpleUser
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Receive, Scope, Send

from tollgate_keys import Expired, InvalidSignature, VerificationError, decode_verified

logger = logging.getLogger("tollgate-gate")
audit_logger = logging.getLogger("tollgate-audit")

RESOURCE_METADATA_PATH = "/.well-known/oauth-protected-resource"
AUTH_SERVER_METADATA_PATH = "/.well-known/oauth-authorization-server"
DISCOVERY_TIMEOUT = 10.0  # seconds

T = TypeVar("T")


def _audit(event: str, **kwargs: Any) -> None:
    entry = {"ts": time.time(), "event": event, **kwargs}
    audit_logger.info(json.dumps(entry))


class TokenVerifier(Protocol):
    def verify(self, token: str) -> dict[str, Any]: ...


# ---------------------------------------------------------------------------
# Single-initialisation primitive
# ---------------------------------------------------------------------------

class LazyValue(Generic[T]):
    """Value computed by ``factory`` at most once, on first ``get()``.

    Concurrent first callers block until the winner has finished; everyone
    afterwards reads the memoised value without taking the lock. If the
    factory raises, nothing is memoised and the next caller tries again.
    """

    def __init__(self, factory: Callable[[], T]):
        self._factory = factory
        self._lock = threading.Lock()
        self._resolved = False
        self._value: T | None = None

    @property
    def resolved(self) -> bool:
        return self._resolved

    def get(self) -> T:
        if not self._resolved:
            with self._lock:
                if not self._resolved:
                    self._value = self._factory()
                    self._resolved = True
        return self._value  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# Discovery-derived verifier
# ---------------------------------------------------------------------------

def _http_get_json(url: str) -> dict[str, Any]:
    response = httpx.get(url, timeout=DISCOVERY_TIMEOUT, follow_redirects=True)
    response.raise_for_status()
    return response.json()


class DiscoveryVerifier:
    """Verifies tokens against the JWKS advertised by the issuer's metadata."""

    def __init__(self, issuer_url: str,
                 fetch_json: Callable[[str], dict[str, Any]] = _http_get_json):
        self.issuer_url = issuer_url.rstrip("/")
        self._fetch_json = fetch_json
        self._jwks_client: LazyValue[jwt.PyJWKClient] = LazyValue(self._discover)

    def _discover(self) -> jwt.PyJWKClient:
        metadata = self._fetch_json(f"{self.issuer_url}{AUTH_SERVER_METADATA_PATH}")
        jwks_uri = metadata.get("jwks_uri")
        if not isinstance(jwks_uri, str) or not jwks_uri:
            raise VerificationError("authorization server metadata has no jwks_uri")
        logger.info("discovery: jwks_uri=%s", jwks_uri)
        return jwt.PyJWKClient(jwks_uri)

    def verify(self, token: str) -> dict[str, Any]:
        try:
            signing_key = self._jwks_client.get().get_signing_key_from_jwt(token)
        except (jwt.PyJWKClientError, jwt.InvalidTokenError) as e:
            raise InvalidSignature("no usable signing key for token") from e
        return decode_verified(token, signing_key.key)


# ---------------------------------------------------------------------------
# Claim helpers
# ---------------------------------------------------------------------------

def audience_matches(audience: Any, issuer_url: str) -> bool:
    """True when the ``aud`` claim names the issuer, ignoring trailing slashes."""
    if isinstance(audience, str):
        audiences = [audience]
    elif isinstance(audience, (list, tuple)):
        audiences = [a for a in audience if isinstance(a, str)]
    else:
        return False
    expected = issuer_url.rstrip("/")
    return any(a.rstrip("/") == expected for a in audiences)


def granted_scopes(scope_claim: Any) -> list[str]:
    if isinstance(scope_claim, str):
        return scope_claim.split()
    if isinstance(scope_claim, (list, tuple)):
        return [s for s in scope_claim if isinstance(s, str)]
    return []


# ---------------------------------------------------------------------------
# BearerGate
# ---------------------------------------------------------------------------

class BearerGate:
    """ASGI middleware requiring a valid bearer token on protected paths."""

    OPEN_PREFIXES = ("/oauth2/", "/.well-known/")
    OPEN_PATHS = {"/login"}

    def __init__(self, app: ASGIApp, issuer_url: str, verifier: TokenVerifier):
        self.app = app
        self.issuer_url = issuer_url.rstrip("/")
        self.verifier = verifier
        self.resource_metadata_url = f"{self.issuer_url}{RESOURCE_METADATA_PATH}"

    def is_open(self, path: str) -> bool:
        return path in self.OPEN_PATHS or path.startswith(self.OPEN_PREFIXES)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        # Lifespan/websocket scopes and requests already authenticated
        # upstream carry their context forward.
        if (scope["type"] != "http" or self.is_open(scope.get("path", ""))
                or isinstance(scope.get("auth"), AuthCredentials)):
            await self.app(scope, receive, send)
            return

        request = Request(scope)
        auth = request.headers.get("authorization", "")
        if not auth.startswith("Bearer ") or not auth[7:].strip():
            response = self._challenge(
                "unauthorized", "Bearer token required",
                f'Bearer realm="mcp", resource_metadata="{self.resource_metadata_url}"',
            )
            await response(scope, receive, send)
            return

        token = auth[7:].strip()
        try:
            claims = await run_in_threadpool(self.verifier.verify, token)
        except VerificationError as e:
            _audit("token_rejected", reason=type(e).__name__, path=request.url.path)
            description = "Token expired" if isinstance(e, Expired) else "Token validation failed"
            await self._invalid_token(description)(scope, receive, send)
            return
        except Exception:
            logger.exception("token verification failed unexpectedly")
            await self._invalid_token("Token validation failed")(scope, receive, send)
            return

        if not audience_matches(claims.get("aud"), self.issuer_url):
            logger.warning("token audience mismatch: expected=%s got=%s",
                           self.issuer_url, claims.get("aud"))
            _audit("token_rejected", reason="audience", path=request.url.path)
            await self._invalid_token("Invalid audience")(scope, receive, send)
            return

        subject = str(claims.get("sub", ""))
        scopes = granted_scopes(claims.get("scope"))
        scope["user"] = SimpleUser(subject)
        scope["auth"] = AuthCredentials(["authenticated", *scopes])
        scope["tollgate.claims"] = claims
        logger.debug("token accepted: sub=%s scopes=%s", subject, scopes)
        await self.app(scope, receive, send)

    def _invalid_token(self, description: str) -> JSONResponse:
        return self._challenge(
            "invalid_token", description,
            f'Bearer error="invalid_token", error_description="{description}", '
            f'resource_metadata="{self.resource_metadata_url}"',
        )

    @staticmethod
    def _challenge(error: str, description: str, www_authenticate: str) -> JSONResponse:
        return JSONResponse(
            {"error": error, "error_description": description},
            status_code=401,
            headers={"WWW-Authenticate": www_authenticate, "Cache-Control": "no-store"},
        )
