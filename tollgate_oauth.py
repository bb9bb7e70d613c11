"""
tollgate_oauth.py: OAuth 2.1 Authorization Server for Tollgate.

Authorization Code + PKCE with refresh-token rotation, for MCP clients that
register themselves. Access tokens are RS256 JWTs (tollgate_keys.KeySigner)
whose audience is the issuer; refresh tokens and authorization codes are
opaque, single-use and held in memory (tollgate_store).

Implements:
  /.well-known/oauth-protected-resource[/...]    RFC 9728 metadata
  /.well-known/oauth-authorization-server[/...]  RFC 8414 metadata
  /oauth2/jwks                                   public signing key
  /oauth2/register                               RFC 7591 dynamic registration
  /oauth2/authorize                              authorization endpoint
  /oauth2/callback                               post-login continuation
  /oauth2/token                                  code / refresh exchange
  /login                                         login form (GET) and submit (POST)

Every other path is passed to the wrapped app, which is normally the
BearerGate in front of the MCP endpoint.
"""

import base64
import hashlib
import hmac
import html as html_mod
import json
import logging
import os
import secrets
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping

from mcp.server.auth.provider import construct_redirect_uri
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException
from starlette.formparsers import MultiPartException
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from starlette.types import ASGIApp, Receive, Scope, Send

from tollgate_keys import AccessTokenClaims, KeySigner
from tollgate_store import (
    AuthorizationCode,
    AuthorizationCodeStore,
    ClientRegistry,
    PendingAuthorization,
    RefreshTokenEntry,
    RefreshTokenStore,
    RegisteredClient,
    Session,
    SessionStore,
)
from tollgate_users import UserDirectory, verify_credentials

logger = logging.getLogger("tollgate-oauth")
audit_logger = logging.getLogger("tollgate-audit")

SESSION_COOKIE = "tollgate_session"
PKCE_METHODS = ("S256", "plain")
RATE_LIMIT_WINDOW = 60  # seconds
NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}


def _audit(event: str, **kwargs: Any) -> None:
    """Emit a structured JSON audit log entry."""
    entry = {"ts": time.time(), "event": event, **kwargs}
    audit_logger.info(json.dumps(entry))


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

def _env_int(environ: Mapping[str, str], name: str, default: int | None) -> int | None:
    raw = environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise SystemExit(f"Invalid {name}={raw!r}: expected an integer number of seconds")


@dataclass
class OAuthSettings:
    issuer_url: str
    access_token_ttl: int = 3600
    refresh_token_ttl: int | None = None  # None = refresh tokens never expire
    auth_code_ttl: int = 600
    scopes: tuple[str, ...] = ("mcp:tools",)
    strict_redirect_uris: bool = False
    rate_limit: int = 30  # per IP per minute on register/token/login; 0 disables
    resource_name: str = "Tollgate MCP Server"

    def __post_init__(self) -> None:
        self.issuer_url = self.issuer_url.rstrip("/")
        if not self.scopes:
            raise SystemExit("At least one scope must be configured")

    @property
    def default_scope(self) -> str:
        return self.scopes[0]

    @classmethod
    def from_env(cls, environ: Mapping[str, str] = os.environ) -> "OAuthSettings":
        scopes = tuple(environ.get("TOLLGATE_SCOPES", "mcp:tools").split())
        return cls(
            issuer_url=environ.get("TOLLGATE_ISSUER_URL", "http://localhost:8080"),
            access_token_ttl=_env_int(environ, "TOLLGATE_ACCESS_TOKEN_TTL", 3600),
            refresh_token_ttl=_env_int(environ, "TOLLGATE_REFRESH_TOKEN_TTL", None),
            auth_code_ttl=_env_int(environ, "TOLLGATE_AUTH_CODE_TTL", 600),
            scopes=scopes,
            strict_redirect_uris=environ.get("TOLLGATE_STRICT_REDIRECT_URIS", "").lower()
            in ("1", "true", "yes"),
            rate_limit=_env_int(environ, "TOLLGATE_RATE_LIMIT", 30),
        )


# ---------------------------------------------------------------------------
# Rate limiter
# ---------------------------------------------------------------------------

class _RateLimiter:
    """In-memory sliding window rate limiter."""

    def __init__(self, max_requests: int, window: int = RATE_LIMIT_WINDOW):
        self.max_requests = max_requests
        self.window = window
        self._buckets: dict[str, deque[float]] = {}

    def is_allowed(self, key: str) -> bool:
        if self.max_requests <= 0:
            return True
        now = time.time()
        cutoff = now - self.window
        bucket = self._buckets.setdefault(key, deque())
        while bucket and bucket[0] < cutoff:
            bucket.popleft()
        if len(bucket) >= self.max_requests:
            return False
        bucket.append(now)
        return True

    def cleanup(self, now: float | None = None) -> None:
        """Remove buckets with no request inside the current window."""
        cutoff = (time.time() if now is None else now) - self.window
        stale = [k for k, v in self._buckets.items() if not v or v[-1] < cutoff]
        for k in stale:
            del self._buckets[k]


async def _read_form(request: Request) -> dict[str, str] | None:
    """Text fields of a form body, or None when the body cannot be parsed."""
    try:
        form = await request.form()
    except (MultiPartException, HTTPException):
        return None
    return {k: v for k, v in form.items() if isinstance(v, str)}


def _get_client_ip(request: Request) -> str:
    """Extract real client IP, preferring CF-Connecting-IP."""
    cf_ip = request.headers.get("cf-connecting-ip")
    if cf_ip:
        return cf_ip.strip()
    if request.client:
        return request.client.host
    return "unknown"


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------

class ClientRegistrationRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    client_name: str = "Unknown Client"
    redirect_uris: list[str] = Field(default_factory=list)
    grant_types: list[str] = Field(default_factory=lambda: ["authorization_code", "refresh_token"])
    response_types: list[str] = Field(default_factory=lambda: ["code"])


class ClientRegistrationResponse(BaseModel):
    client_id: str
    client_name: str
    redirect_uris: list[str]
    grant_types: list[str]
    response_types: list[str]
    client_id_issued_at: int
    token_endpoint_auth_method: str = "none"

    @classmethod
    def from_client(cls, client: RegisteredClient) -> "ClientRegistrationResponse":
        return cls(
            client_id=client.client_id,
            client_name=client.client_name,
            redirect_uris=list(client.redirect_uris),
            grant_types=list(client.grant_types),
            response_types=list(client.response_types),
            client_id_issued_at=int(client.created_at),
        )


class TokenRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    grant_type: str | None = None
    client_id: str | None = None
    code: str | None = None
    redirect_uri: str | None = None
    code_verifier: str | None = None
    refresh_token: str | None = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    scope: str
    refresh_token: str


class OAuthError(Exception):
    """An OAuth protocol error, rendered as ``{error, error_description}``."""

    def __init__(self, error: str, description: str, status_code: int = 400):
        super().__init__(f"{error}: {description}")
        self.error = error
        self.description = description
        self.status_code = status_code

    def to_response(self) -> JSONResponse:
        return JSONResponse(
            {"error": self.error, "error_description": self.description},
            status_code=self.status_code,
            headers=NO_STORE,
        )


# ---------------------------------------------------------------------------
# PKCE verification
# ---------------------------------------------------------------------------

def s256_challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def canonical_pkce_method(method: str) -> str | None:
    """``S256`` or ``plain`` for any casing of either, else None."""
    for known in PKCE_METHODS:
        if method.lower() == known.lower():
            return known
    return None


def verify_pkce(verifier: str, challenge: str, method: str | None) -> bool:
    """Check a code_verifier against the stored challenge; S256 when method is absent."""
    method = canonical_pkce_method(method) if method else "S256"
    if method == "S256":
        try:
            computed = s256_challenge(verifier)
        except UnicodeEncodeError:
            return False
        return hmac.compare_digest(computed.encode(), challenge.encode())
    if method == "plain":
        return hmac.compare_digest(verifier.encode(), challenge.encode())
    return False


# ---------------------------------------------------------------------------
# Metadata documents
# ---------------------------------------------------------------------------

def protected_resource_metadata(settings: OAuthSettings) -> dict[str, Any]:
    """RFC 9728: OAuth Protected Resource Metadata."""
    return {
        "resource": settings.issuer_url,
        "authorization_servers": [settings.issuer_url],
        "scopes_supported": list(settings.scopes),
        "bearer_methods_supported": ["header"],
        "resource_name": settings.resource_name,
    }


def authorization_server_metadata(settings: OAuthSettings) -> dict[str, Any]:
    """RFC 8414: OAuth Authorization Server Metadata."""
    issuer = settings.issuer_url
    return {
        "issuer": issuer,
        "authorization_endpoint": f"{issuer}/oauth2/authorize",
        "token_endpoint": f"{issuer}/oauth2/token",
        "registration_endpoint": f"{issuer}/oauth2/register",
        "jwks_uri": f"{issuer}/oauth2/jwks",
        "scopes_supported": list(settings.scopes),
        "response_types_supported": ["code"],
        "grant_types_supported": ["authorization_code", "refresh_token"],
        "token_endpoint_auth_methods_supported": ["none"],
        "code_challenge_methods_supported": list(PKCE_METHODS),
    }


# ---------------------------------------------------------------------------
# Token endpoint
# ---------------------------------------------------------------------------

class TokenEndpoint:
    """Grant handlers for /oauth2/token. Raises OAuthError on any failure."""

    def __init__(self, settings: OAuthSettings, signer: KeySigner,
                 codes: AuthorizationCodeStore, refresh_tokens: RefreshTokenStore):
        self.settings = settings
        self.signer = signer
        self.codes = codes
        self.refresh_tokens = refresh_tokens

    def exchange(self, req: TokenRequest) -> TokenResponse:
        if req.grant_type == "authorization_code":
            return self._authorization_code_grant(req)
        if req.grant_type == "refresh_token":
            return self._refresh_token_grant(req)
        if not req.grant_type:
            raise OAuthError("invalid_request", "Missing grant_type")
        raise OAuthError("unsupported_grant_type",
                         "Supported grant types: authorization_code, refresh_token")

    def _authorization_code_grant(self, req: TokenRequest) -> TokenResponse:
        if not req.code or not req.client_id:
            raise OAuthError("invalid_request", "Missing code or client_id")

        # Consumed before any check: a failed attempt burns the code.
        auth_code = self.codes.consume(req.code)
        if auth_code is None:
            raise OAuthError("invalid_grant", "Invalid or expired authorization code")
        if auth_code.expired(self.settings.auth_code_ttl):
            raise OAuthError("invalid_grant", "Authorization code expired")
        if auth_code.client_id != req.client_id:
            raise OAuthError("invalid_grant", "Client ID mismatch")
        if auth_code.redirect_uri is not None and auth_code.redirect_uri != req.redirect_uri:
            raise OAuthError("invalid_grant", "Redirect URI mismatch")
        if auth_code.code_challenge is not None:
            if not req.code_verifier:
                raise OAuthError("invalid_grant", "Missing code_verifier")
            if not verify_pkce(req.code_verifier, auth_code.code_challenge,
                               auth_code.code_challenge_method):
                raise OAuthError("invalid_grant", "Invalid code_verifier")

        return self._issue(auth_code.client_id, auth_code.subject, auth_code.scope, "token_issued")

    def _refresh_token_grant(self, req: TokenRequest) -> TokenResponse:
        if not req.refresh_token or not req.client_id:
            raise OAuthError("invalid_request", "Missing refresh_token or client_id")

        entry = self.refresh_tokens.consume(req.refresh_token)
        if entry is None:
            raise OAuthError("invalid_grant", "Invalid refresh token")
        if entry.client_id != req.client_id:
            raise OAuthError("invalid_grant", "Client ID mismatch")
        if entry.expired(self.settings.refresh_token_ttl):
            raise OAuthError("invalid_grant", "Refresh token expired")

        return self._issue(entry.client_id, entry.subject, entry.scope, "token_refreshed")

    def _issue(self, client_id: str, subject: str, scope: str, event: str) -> TokenResponse:
        claims = AccessTokenClaims.issue(
            issuer=self.settings.issuer_url,
            subject=subject,
            scope=scope,
            client_id=client_id,
            lifetime=self.settings.access_token_ttl,
        )
        access_token = self.signer.sign(claims)
        refresh = RefreshTokenEntry(
            token=secrets.token_urlsafe(32),
            client_id=client_id,
            subject=subject,
            scope=scope,
            created_at=time.time(),
        )
        self.refresh_tokens.save(refresh)
        _audit(event, client_id=client_id, sub=subject, jti=claims.jwt_id,
               expires_in=self.settings.access_token_ttl)
        return TokenResponse(
            access_token=access_token,
            expires_in=self.settings.access_token_ttl,
            scope=scope,
            refresh_token=refresh.token,
        )


# ---------------------------------------------------------------------------
# AuthorizationServer
# ---------------------------------------------------------------------------

Handler = Callable[[Request], Awaitable[Response]]


class AuthorizationServer:
    """ASGI middleware serving the OAuth, login and discovery routes.

    Intercepts its own paths before they reach the wrapped app; everything
    else (lifespan included) passes through untouched.
    """

    RATE_LIMITED = {("POST", "/oauth2/register"), ("POST", "/oauth2/token"), ("POST", "/login")}

    def __init__(
        self,
        app: ASGIApp,
        settings: OAuthSettings,
        signer: KeySigner,
        users: UserDirectory,
        clients: ClientRegistry | None = None,
        codes: AuthorizationCodeStore | None = None,
        refresh_tokens: RefreshTokenStore | None = None,
        sessions: SessionStore | None = None,
    ):
        self.app = app
        self.settings = settings
        self.signer = signer
        self.users = users
        self.clients = clients if clients is not None else ClientRegistry()
        self.codes = codes if codes is not None else AuthorizationCodeStore()
        self.refresh_tokens = refresh_tokens if refresh_tokens is not None else RefreshTokenStore()
        self.sessions = sessions if sessions is not None else SessionStore()
        self.token_endpoint = TokenEndpoint(settings, signer, self.codes, self.refresh_tokens)
        self._rate_limiter = _RateLimiter(settings.rate_limit)
        self._last_cleanup = time.time()
        self._routes: dict[str, dict[str, Handler]] = {
            "/oauth2/jwks": {"GET": self._handle_jwks},
            "/oauth2/register": {"POST": self._handle_register},
            "/oauth2/authorize": {"GET": self._handle_authorize},
            "/oauth2/callback": {"GET": self._handle_callback},
            "/oauth2/token": {"POST": self._handle_token},
            "/login": {"GET": self._handle_login_get, "POST": self._handle_login_post},
        }

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        path = scope.get("path", "")
        methods = self._match(path)
        if methods is None:
            await self.app(scope, receive, send)
            return

        request = Request(scope, receive)
        handler = methods.get(request.method)
        if handler is None:
            response: Response = JSONResponse({"error": "method_not_allowed"}, status_code=405,
                                              headers={"Allow": ", ".join(methods)})
        elif not self._allow(request):
            response = JSONResponse({
                "error": "too_many_requests",
                "error_description": "Rate limit exceeded. Try again later.",
            }, status_code=429, headers={"Retry-After": str(RATE_LIMIT_WINDOW)})
        else:
            response = await handler(request)
        await response(scope, receive, send)

    def _match(self, path: str) -> dict[str, Handler] | None:
        if path == "/.well-known/oauth-protected-resource" \
                or path.startswith("/.well-known/oauth-protected-resource/"):
            return {"GET": self._handle_resource_metadata}
        if path == "/.well-known/oauth-authorization-server" \
                or path.startswith("/.well-known/oauth-authorization-server/"):
            return {"GET": self._handle_server_metadata}
        return self._routes.get(path)

    def _allow(self, request: Request) -> bool:
        if (request.method, request.url.path) not in self.RATE_LIMITED:
            return True
        now = time.time()
        if now - self._last_cleanup > 300:
            self._rate_limiter.cleanup()
            self._last_cleanup = now
        client_ip = _get_client_ip(request)
        if self._rate_limiter.is_allowed(f"{request.url.path}:{client_ip}"):
            return True
        _audit("rate_limited", ip=client_ip, path=request.url.path)
        return False

    # --- Discovery ---

    async def _handle_resource_metadata(self, request: Request) -> Response:
        return JSONResponse(protected_resource_metadata(self.settings))

    async def _handle_server_metadata(self, request: Request) -> Response:
        return JSONResponse(authorization_server_metadata(self.settings))

    async def _handle_jwks(self, request: Request) -> Response:
        return JSONResponse(self.signer.public_jwks())

    # --- Registration ---

    async def _handle_register(self, request: Request) -> Response:
        """RFC 7591: Dynamic Client Registration."""
        try:
            body = await request.json()
            reg = ClientRegistrationRequest.model_validate(body)
        except (json.JSONDecodeError, UnicodeDecodeError, ValidationError):
            return OAuthError("invalid_request", "Malformed client registration request").to_response()

        client = self.clients.register(
            reg.client_name, reg.redirect_uris, reg.grant_types, reg.response_types,
        )
        _audit("client_registered", client_id=client.client_id,
               client_name=client.client_name, ip=_get_client_ip(request))
        logger.info("client registered: %s (%s)", client.client_name, client.client_id)
        return JSONResponse(
            ClientRegistrationResponse.from_client(client).model_dump(),
            status_code=201,
            headers=NO_STORE,
        )

    # --- Authorization ---

    async def _handle_authorize(self, request: Request) -> Response:
        params = request.query_params
        response_type = params.get("response_type", "")
        client_id = params.get("client_id", "")
        redirect_uri = params.get("redirect_uri") or None
        state = params.get("state") or None

        if not client_id or not response_type:
            return _inline_error("Invalid request", "Missing client_id or response_type.")

        client = self.clients.get(client_id)
        if client is None:
            _audit("authorize_rejected", reason="unknown_client", client_id=client_id)
            return _inline_error("Unknown client", "This application is not registered.")

        if redirect_uri is not None and not self._redirect_allowed(client, redirect_uri):
            _audit("authorize_rejected", reason="redirect_uri", client_id=client_id)
            return _inline_error("Invalid redirect", "The redirect_uri is not registered for this client.")
        if redirect_uri is None and self.settings.strict_redirect_uris and not client.redirect_uris:
            return _inline_error("Invalid redirect", "This client has no registered redirect_uri.")

        if response_type != "code":
            return _error_redirect(redirect_uri, state, "unsupported_response_type",
                                   "Only 'code' response type is supported")

        code_challenge = params.get("code_challenge") or None
        code_challenge_method = params.get("code_challenge_method") or None
        if code_challenge_method is not None:
            if code_challenge is None:
                return _error_redirect(redirect_uri, state, "invalid_request",
                                       "code_challenge_method without code_challenge")
            canonical = canonical_pkce_method(code_challenge_method)
            if canonical is None:
                return _error_redirect(redirect_uri, state, "invalid_request",
                                       "Unsupported code_challenge_method")
            code_challenge_method = canonical

        pending = PendingAuthorization(
            client_id=client.client_id,
            redirect_uri=redirect_uri,
            scope=params.get("scope") or self.settings.default_scope,
            state=state,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
        )

        session = self._session(request)
        if session is not None and session.authenticated:
            return self._issue_code(session.subject, client, pending)

        if session is None:
            session = self.sessions.create()
        session.pending = pending
        _audit("authorize_pending", client_id=client.client_id)
        response = HTMLResponse(_login_page(
            client_name=client.client_name,
            scope=pending.scope,
            csrf_token=session.csrf_token,
        ))
        self._set_session_cookie(response, session)
        return response

    async def _handle_callback(self, request: Request) -> Response:
        session = self._session(request)
        if session is not None and session.authenticated:
            pending = self.sessions.take_pending(session)
            if pending is not None:
                client = self.clients.get(pending.client_id)
                if client is None:
                    return _inline_error("Unknown client", "This application is not registered.")
                return self._issue_code(session.subject, client, pending)

        # Landing spot for clients that authorized without a redirect_uri.
        if "code" in request.query_params:
            return HTMLResponse(_code_page(request.query_params["code"]), headers=NO_STORE)

        if session is None or not session.authenticated:
            return RedirectResponse("/login", status_code=302)
        return RedirectResponse("/login?error=no_oauth_session", status_code=302)

    def _issue_code(self, subject: str, client: RegisteredClient,
                    pending: PendingAuthorization) -> Response:
        code = secrets.token_urlsafe(32)
        self.codes.save(AuthorizationCode(
            code=code,
            client_id=client.client_id,
            redirect_uri=pending.redirect_uri,
            scope=pending.scope,
            code_challenge=pending.code_challenge,
            code_challenge_method=pending.code_challenge_method,
            subject=subject,
            created_at=time.time(),
        ))
        _audit("authorize_approved", client_id=client.client_id, sub=subject)
        logger.info("authorization code issued: sub=%s client=%s", subject, client.client_id)

        target = pending.redirect_uri
        if target is None and len(client.redirect_uris) == 1:
            target = client.redirect_uris[0]
        if target is None:
            target = f"{self.settings.issuer_url}/oauth2/callback"
        location = construct_redirect_uri(target, code=code, state=pending.state)
        return RedirectResponse(location, status_code=302, headers=NO_STORE)

    def _redirect_allowed(self, client: RegisteredClient, redirect_uri: str) -> bool:
        if not client.redirect_uris:
            return not self.settings.strict_redirect_uris
        return client.allows_redirect(redirect_uri)

    # --- Login ---

    async def _handle_login_get(self, request: Request) -> Response:
        session = self._session(request)
        if session is None:
            # Sessions start at /oauth2/authorize; nothing to sign in to yet.
            return HTMLResponse(_notice_page(
                "Sign in", "Start sign-in from the application you want to connect.",
            ))
        client_name, scope = self._pending_summary(session)
        error = request.query_params.get("error")
        response = HTMLResponse(_login_page(
            client_name=client_name,
            scope=scope,
            csrf_token=session.csrf_token,
            error="Your sign-in session expired. Start again from the application."
            if error == "no_oauth_session" else None,
        ))
        self._set_session_cookie(response, session)
        return response

    async def _handle_login_post(self, request: Request) -> Response:
        client_ip = _get_client_ip(request)
        form = await _read_form(request)
        if form is None:
            _audit("login_rejected", reason="malformed_form", ip=client_ip)
            return _inline_error("Invalid request", "The sign-in form could not be read.")
        identifier = form.get("username", "").strip()
        password = form.get("password", "")
        csrf_token = form.get("csrf_token", "")

        session = self._session(request)
        if session is None or not hmac.compare_digest(csrf_token.encode(), session.csrf_token.encode()):
            _audit("csrf_rejected", ip=client_ip)
            return _inline_error("Session expired",
                                 "Your sign-in session expired. Start again from the application.",
                                 status_code=403)

        user = await run_in_threadpool(verify_credentials, self.users, identifier, password)
        if user is None:
            _audit("login_failed", ip=client_ip)
            client_name, scope = self._pending_summary(session)
            return HTMLResponse(_login_page(
                client_name=client_name,
                scope=scope,
                csrf_token=session.csrf_token,
                error="Invalid email or password.",
            ), status_code=401)

        session = self.sessions.rotate(session, user.identifier)
        _audit("login_succeeded", sub=user.identifier, ip=client_ip)
        response = RedirectResponse("/oauth2/callback", status_code=303)
        self._set_session_cookie(response, session)
        return response

    def _pending_summary(self, session: Session) -> tuple[str | None, str | None]:
        if session.pending is None:
            return None, None
        client = self.clients.get(session.pending.client_id)
        return (client.client_name if client else None), session.pending.scope

    # --- Token ---

    async def _handle_token(self, request: Request) -> Response:
        form = await _read_form(request)
        if form is None:
            return OAuthError("invalid_request", "Malformed token request").to_response()
        try:
            token_request = TokenRequest.model_validate(form)
            token = self.token_endpoint.exchange(token_request)
        except OAuthError as e:
            _audit("token_rejected", error=e.error, reason=e.description,
                   client_id=form.get("client_id"))
            return e.to_response()
        except ValidationError:
            return OAuthError("invalid_request", "Malformed token request").to_response()
        return JSONResponse(token.model_dump(), headers=NO_STORE)

    # --- Sessions ---

    def _session(self, request: Request) -> Session | None:
        return self.sessions.get(request.cookies.get(SESSION_COOKIE))

    def _set_session_cookie(self, response: Response, session: Session) -> None:
        response.set_cookie(
            SESSION_COOKIE,
            session.session_id,
            max_age=self.sessions.ttl,
            path="/",
            httponly=True,
            samesite="lax",
            secure=self.settings.issuer_url.startswith("https://"),
        )


def _error_redirect(redirect_uri: str | None, state: str | None,
                    error: str, description: str) -> Response:
    """Send the error back to the client, or show it when there is nowhere to send it."""
    _audit("authorize_rejected", reason=error)
    if redirect_uri is None:
        return _inline_error("Authorization failed", description)
    location = construct_redirect_uri(
        redirect_uri, error=error, error_description=description, state=state,
    )
    return RedirectResponse(location, status_code=302)


def _inline_error(title: str, message: str, status_code: int = 400) -> HTMLResponse:
    return HTMLResponse(_error_page(title, message), status_code=status_code)


# ---------------------------------------------------------------------------
# HTML templates
# ---------------------------------------------------------------------------

_STYLE = """
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif;
            background: #0a0a1a; color: #e0e0e0;
            display: flex; justify-content: center; align-items: center;
            min-height: 100vh; margin: 0; }
        .card { background: #1a1a2e; border: 1px solid #2a2a4a; border-radius: 12px;
            padding: 2rem; max-width: 400px; width: 90%;
            box-shadow: 0 4px 24px rgba(0, 0, 0, 0.5); }
        .card.error { border-color: #ff4444; text-align: center; }
        h1 { font-size: 1.3rem; margin: 0 0 0.5rem 0; color: #00d4ff; }
        .error h1, .alert { color: #ff4444; }
        .client { color: #ff6b9d; font-weight: 600; }
        label { font-size: 0.9rem; color: #aaa; display: block; margin-top: 1rem; }
        input { width: 100%; padding: 0.6rem; border: 1px solid #2a2a4a; border-radius: 6px;
            background: #12122a; color: #e0e0e0; font-size: 1rem; margin-top: 0.4rem;
            box-sizing: border-box; }
        button { width: 100%; margin-top: 1.5rem; padding: 0.75rem; border: none;
            border-radius: 8px; font-size: 1rem; cursor: pointer; font-weight: 600;
            background: #00d4ff; color: #0a0a1a; }
        code { word-break: break-all; background: #12122a; padding: 0.3rem; }
        a { color: #00d4ff; }
"""


def _page(title: str, body: str) -> str:
    return f"""<!DOCTYPE html>
<html>
<head>
    <title>Tollgate | {html_mod.escape(title)}</title>
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <style>{_STYLE}    </style>
</head>
<body>
{body}
</body>
</html>"""


def _login_page(client_name: str | None, scope: str | None, csrf_token: str,
                error: str | None = None) -> str:
    if client_name:
        intro = (f'<p><span class="client">{html_mod.escape(client_name)}</span> wants access '
                 f'with scope <code>{html_mod.escape(scope or "")}</code>.</p>')
    else:
        intro = "<p>Sign in to continue.</p>"
    alert = f'<p class="alert">{html_mod.escape(error)}</p>' if error else ""
    return _page("Sign in", f"""    <div class="card">
        <h1>Tollgate</h1>
        {intro}
        {alert}
        <form method="POST" action="/login">
            <input type="hidden" name="csrf_token" value="{html_mod.escape(csrf_token)}">
            <label for="username">Email</label>
            <input type="email" id="username" name="username" autocomplete="username" required>
            <label for="password">Password</label>
            <input type="password" id="password" name="password"
                autocomplete="current-password" required>
            <button type="submit">Sign in</button>
        </form>
    </div>""")


def _error_page(title: str, message: str) -> str:
    return _page(title, f"""    <div class="card error">
        <h1>{html_mod.escape(title)}</h1>
        <p>{html_mod.escape(message)}</p>
        <p style="margin-top:1.5rem"><a href="javascript:window.close()">Close this tab</a></p>
    </div>""")


def _notice_page(title: str, message: str) -> str:
    return _page(title, f"""    <div class="card">
        <h1>{html_mod.escape(title)}</h1>
        <p>{html_mod.escape(message)}</p>
    </div>""")


def _code_page(code: str) -> str:
    return _page("Authorized", f"""    <div class="card">
        <h1>Authorized</h1>
        <p>Paste this authorization code into your application:</p>
        <p><code>{html_mod.escape(code)}</code></p>
    </div>""")
