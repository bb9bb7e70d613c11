#!/usr/bin/env python3
"""
Tollgate: OAuth-protected MCP server.

Serves an MCP streamable-http endpoint at /mcp behind a bearer-token gate,
together with the OAuth 2.1 authorization server that issues those tokens
(dynamic client registration, authorization code + PKCE, refresh rotation).

Configuration comes from TOLLGATE_* environment variables (see
tollgate_oauth.OAuthSettings) and a users.yaml file for the login step.
"""

import argparse
import getpass
import json
import logging
import os
from pathlib import Path

from mcp.server.fastmcp import Context, FastMCP
from mcp.server.transport_security import TransportSecuritySettings
from starlette.types import ASGIApp

from tollgate_gate import BearerGate, DiscoveryVerifier, TokenVerifier
from tollgate_keys import KeySigner
from tollgate_oauth import AuthorizationServer, OAuthSettings
from tollgate_users import UserDirectory, hash_password, load_users

logger = logging.getLogger("tollgate")

VERIFIER_MODES = ("local", "discovery")


# ---------------------------------------------------------------------------
# MCP app (the protected resource)
# ---------------------------------------------------------------------------

def build_mcp() -> FastMCP:
    mcp = FastMCP(
        "tollgate",
        instructions="Tools behind the Tollgate OAuth gate. Use whoami to inspect the token in use.",
        # Host header is the public name when running behind a proxy.
        transport_security=TransportSecuritySettings(
            enable_dns_rebinding_protection=False,
        ),
    )

    @mcp.tool()
    async def whoami(ctx: Context) -> str:
        """Report the authenticated user, client and scopes of the calling token."""
        request = ctx.request_context.request
        scope = request.scope if request is not None else {}
        claims = scope.get("tollgate.claims", {})
        auth = scope.get("auth")
        return json.dumps({
            "subject": claims.get("sub"),
            "client_id": claims.get("client_id"),
            "scopes": [s for s in getattr(auth, "scopes", []) if s != "authenticated"],
            "expires_at": claims.get("exp"),
        })

    return mcp


# ---------------------------------------------------------------------------
# Application assembly
# ---------------------------------------------------------------------------

def build_verifier(mode: str, settings: OAuthSettings, signer: KeySigner) -> TokenVerifier:
    if mode == "local":
        return signer
    if mode == "discovery":
        return DiscoveryVerifier(settings.issuer_url)
    raise SystemExit(f"Invalid TOLLGATE_VERIFIER={mode!r}. Valid options: {', '.join(VERIFIER_MODES)}")


def build_app(settings: OAuthSettings, users: UserDirectory,
              verifier_mode: str = "local", downstream: ASGIApp | None = None) -> AuthorizationServer:
    """Authorization server in front of the bearer gate in front of the MCP app."""
    signer = KeySigner()
    if downstream is None:
        downstream = build_mcp().streamable_http_app()
    gate = BearerGate(downstream, settings.issuer_url, build_verifier(verifier_mode, settings, signer))
    return AuthorizationServer(gate, settings, signer, users)


def _configure_logging(audit_log_path: Path | None) -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )
    if audit_log_path is None:
        return
    # Audit logger: JSON lines, kept out of the main log.
    audit_log_path.parent.mkdir(parents=True, exist_ok=True)
    audit_handler = logging.FileHandler(audit_log_path)
    audit_handler.setFormatter(logging.Formatter("%(message)s"))
    audit_logger = logging.getLogger("tollgate-audit")
    audit_logger.addHandler(audit_handler)
    audit_logger.setLevel(logging.INFO)
    audit_logger.propagate = False


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main() -> None:
    parser = argparse.ArgumentParser(description="Tollgate OAuth-protected MCP server")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8080)
    parser.add_argument("--users", type=Path,
                        default=Path(os.environ.get("TOLLGATE_USERS_FILE", "users.yaml")))
    parser.add_argument("--audit-log", type=Path,
                        default=Path(os.environ["TOLLGATE_AUDIT_LOG"])
                        if os.environ.get("TOLLGATE_AUDIT_LOG") else None)
    parser.add_argument("--hash-password", action="store_true",
                        help="Prompt for a password, print its hash for users.yaml and exit")
    args = parser.parse_args()

    if args.hash_password:
        print(hash_password(getpass.getpass("Password: ")))
        return

    _configure_logging(args.audit_log)

    import uvicorn

    settings = OAuthSettings.from_env()
    users = load_users(args.users)
    verifier_mode = os.environ.get("TOLLGATE_VERIFIER", "local")
    app = build_app(settings, users, verifier_mode)

    logger.info("tollgate: issuer=%s verifier=%s listening on %s:%d",
                settings.issuer_url, verifier_mode, args.host, args.port)
    uvicorn.run(app, host=args.host, port=args.port, log_level="info",
                proxy_headers=True, forwarded_allow_ips="*")


if __name__ == "__main__":
    main()
