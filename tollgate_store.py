"""
tollgate_store.py: in-memory stores for Tollgate OAuth artifacts.

Every store is an explicit object, created empty and injected into the
endpoints that need it. Nothing survives a restart.

Redemption (``consume``) removes and returns an entry under the store's lock
in one step, so two concurrent redemptions of the same code or refresh token
can never both succeed.
"""

import logging
import secrets
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Generic, TypeVar

logger = logging.getLogger("tollgate-store")

SESSION_TTL = 8 * 3600  # 8 hours
SESSION_SWEEP_INTERVAL = 300  # seconds

# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RegisteredClient:
    client_id: str
    client_name: str
    redirect_uris: tuple[str, ...] = ()
    grant_types: tuple[str, ...] = ("authorization_code", "refresh_token")
    response_types: tuple[str, ...] = ("code",)
    created_at: float = 0.0

    def allows_redirect(self, redirect_uri: str) -> bool:
        """An empty registration accepts any redirect target."""
        return not self.redirect_uris or redirect_uri in self.redirect_uris


@dataclass(frozen=True)
class AuthorizationCode:
    code: str
    client_id: str
    redirect_uri: str | None
    scope: str
    code_challenge: str | None
    code_challenge_method: str | None
    subject: str
    created_at: float

    def expired(self, ttl: int, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        return now - self.created_at > ttl


@dataclass(frozen=True)
class RefreshTokenEntry:
    token: str
    client_id: str
    subject: str
    scope: str
    created_at: float

    def expired(self, ttl: int | None, now: float | None = None) -> bool:
        if ttl is None:
            return False
        now = time.time() if now is None else now
        return now - self.created_at > ttl


@dataclass
class PendingAuthorization:
    """Authorization parameters parked while the user logs in."""
    client_id: str
    redirect_uri: str | None
    scope: str
    state: str | None
    code_challenge: str | None
    code_challenge_method: str | None


@dataclass
class Session:
    session_id: str
    csrf_token: str
    created_at: float
    subject: str | None = None
    pending: PendingAuthorization | None = None

    @property
    def authenticated(self) -> bool:
        return self.subject is not None


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------

K = TypeVar("K")
V = TypeVar("V")


class _LockedMap(Generic[K, V]):
    def __init__(self) -> None:
        self._items: dict[K, V] = {}
        self._lock = threading.Lock()

    def _put(self, key: K, value: V) -> None:
        with self._lock:
            self._items[key] = value

    def _get(self, key: K) -> V | None:
        with self._lock:
            return self._items.get(key)

    def _pop(self, key: K) -> V | None:
        with self._lock:
            return self._items.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


class ClientRegistry(_LockedMap[str, RegisteredClient]):
    """Dynamically registered clients, keyed by client_id."""

    def register(self, client_name: str, redirect_uris: list[str],
                 grant_types: list[str], response_types: list[str]) -> RegisteredClient:
        client = RegisteredClient(
            client_id=str(uuid.uuid4()),
            client_name=client_name,
            redirect_uris=tuple(redirect_uris),
            grant_types=tuple(grant_types),
            response_types=tuple(response_types),
            created_at=time.time(),
        )
        self._put(client.client_id, client)
        return client

    def get(self, client_id: str) -> RegisteredClient | None:
        return self._get(client_id)


class AuthorizationCodeStore(_LockedMap[str, AuthorizationCode]):
    def save(self, entry: AuthorizationCode) -> None:
        self._put(entry.code, entry)

    def consume(self, code: str) -> AuthorizationCode | None:
        return self._pop(code)


class RefreshTokenStore(_LockedMap[str, RefreshTokenEntry]):
    def save(self, entry: RefreshTokenEntry) -> None:
        self._put(entry.token, entry)

    def consume(self, token: str) -> RefreshTokenEntry | None:
        return self._pop(token)


class SessionStore(_LockedMap[str, Session]):
    """Browser sessions for the login step, keyed by the session cookie."""

    def __init__(self, ttl: int = SESSION_TTL, sweep_interval: int = SESSION_SWEEP_INTERVAL) -> None:
        super().__init__()
        self.ttl = ttl
        self.sweep_interval = sweep_interval
        self._last_sweep = time.time()

    def create(self) -> Session:
        now = time.time()
        if now - self._last_sweep >= self.sweep_interval:
            self.prune(now)
        session = Session(
            session_id=secrets.token_urlsafe(32),
            csrf_token=secrets.token_urlsafe(32),
            created_at=now,
        )
        self._put(session.session_id, session)
        return session

    def get(self, session_id: str | None) -> Session | None:
        if not session_id:
            return None
        session = self._get(session_id)
        if session and time.time() - session.created_at > self.ttl:
            self._pop(session_id)
            return None
        return session

    def prune(self, now: float | None = None) -> int:
        """Drop every expired session; returns how many were removed."""
        now = time.time() if now is None else now
        with self._lock:
            expired = [k for k, s in self._items.items() if now - s.created_at > self.ttl]
            for k in expired:
                del self._items[k]
            self._last_sweep = now
        if expired:
            logger.debug("pruned %d expired sessions", len(expired))
        return len(expired)

    def rotate(self, session: Session, subject: str) -> Session:
        """Replace ``session`` with a fresh one bound to ``subject``.

        The pending authorization moves over; the old session id stops
        working, so an id planted before login is useless afterwards.
        """
        fresh = self.create()
        with self._lock:
            self._items.pop(session.session_id, None)
            fresh.subject = subject
            fresh.pending, session.pending = session.pending, None
        return fresh

    def take_pending(self, session: Session) -> PendingAuthorization | None:
        """Detach and return the session's pending authorization, if any."""
        with self._lock:
            pending, session.pending = session.pending, None
        return pending
