"""Shared fixtures for the Tollgate test suite."""
import sys
from pathlib import Path

import pytest
from starlette.responses import JSONResponse

# Add project root to path so the top-level modules import without installing.
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from tollgate_keys import KeySigner
from tollgate_oauth import OAuthSettings
from tollgate_users import InMemoryUserDirectory

ISSUER = "http://testserver"
USER_EMAIL = "u@x.com"
USER_PASSWORD = "correct horse battery staple"


@pytest.fixture(scope="session")
def signer():
    # RSA key generation is slow; one key serves the whole run.
    return KeySigner()


@pytest.fixture
def settings():
    return OAuthSettings(issuer_url=ISSUER)


@pytest.fixture(scope="session")
def users():
    directory = InMemoryUserDirectory()
    directory.add(USER_EMAIL, USER_PASSWORD, display_name="U")
    return directory


async def echo_principal(scope, receive, send):
    """Stand-in for the MCP app: reports what the gate attached."""
    user = scope.get("user")
    auth = scope.get("auth")
    response = JSONResponse({
        "path": scope["path"],
        "subject": user.username if user else None,
        "scopes": list(auth.scopes) if auth else [],
    })
    await response(scope, receive, send)


@pytest.fixture
def downstream():
    return echo_principal
