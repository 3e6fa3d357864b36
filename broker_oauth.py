"""
broker_oauth.py — Two-hop OAuth 2.0 (Authorization Code + PKCE) broker for GitHub.

The MCP client runs a normal public-client PKCE flow against this server.
Behind it, the broker runs its own confidential-client flow against GitHub
and folds the GitHub access token into a broker-signed JWT:

  client ─/oauth/authorize─▶ broker ─302─▶ GitHub login
  GitHub ─/oauth/callback─▶ broker (code → GitHub token) ─302─▶ client redirect_uri
  client ─/oauth/token─▶ broker (PKCE check) ─▶ JWT{github_token}

Everything here is transport-independent: operations take plain values,
return redirect URLs or response dicts, and raise OAuthError on failure.
broker_middleware.py maps them onto HTTP.

State lives only in the SessionStore:
  - session:<id> binds the GitHub leg (state=<id>) to the client's request.
  - code:<code> binds the broker's authorization code to the GitHub token.
Both are single use. Token consumption uses the store's atomic pop when it
has one; a store with only get/delete leaves a narrow window in which two
concurrent redemptions of one code can both succeed. That race is accepted.
"""

import json
import logging
import os
import secrets
import time
from dataclasses import dataclass
from typing import Any, Callable

import httpx
import jwt
from mcp.server.auth.provider import construct_redirect_uri

from broker_store import (
    AUTH_CODE_TTL,
    CODE_PREFIX,
    SESSION_PREFIX,
    SESSION_TTL,
    AuthorizationCodeRecord,
    SessionRecord,
    SessionStore,
)
from broker_tokens import UPSTREAM_CLAIM, TokenSigner, verify_code_challenge

logger = logging.getLogger("broker-oauth")
audit_logger = logging.getLogger("broker-audit")

GITHUB_AUTHORIZE_URL = "https://github.com/login/oauth/authorize"
GITHUB_TOKEN_URL = "https://github.com/login/oauth/access_token"
DEFAULT_SCOPES = "repo,read:user"
BROKER_SCOPE = "mcp:tools"
UPSTREAM_TIMEOUT = 30.0  # seconds


def _audit(event: str, **kwargs: Any) -> None:
    """Emit a structured JSON audit log entry."""
    entry = {"ts": time.time(), "event": event, **kwargs}
    audit_logger.info(json.dumps(entry))


class OAuthError(Exception):
    """RFC 6749 style error, rendered as {error, error_description}."""

    def __init__(self, error: str, description: str | None = None, status_code: int = 400):
        super().__init__(description or error)
        self.error = error
        self.description = description
        self.status_code = status_code

    def to_dict(self) -> dict[str, str]:
        body = {"error": self.error}
        if self.description:
            body["error_description"] = self.description
        return body


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@dataclass
class BrokerConfig:
    server_url: str
    github_client_id: str
    github_client_secret: str
    jwt_secret: str
    oauth_scopes: str = DEFAULT_SCOPES

    def __post_init__(self) -> None:
        self.server_url = self.server_url.rstrip("/")

    @property
    def callback_url(self) -> str:
        return f"{self.server_url}/oauth/callback"

    @classmethod
    def from_env(cls) -> "BrokerConfig":
        """Load configuration from environment variables."""
        missing = [name for name in ("GITHUB_CLIENT_ID", "GITHUB_CLIENT_SECRET", "JWT_SECRET")
                   if not os.environ.get(name)]
        if missing:
            raise SystemExit(f"Missing required environment variables: {', '.join(missing)}")
        return cls(
            server_url=os.environ.get("SERVER_URL", "http://localhost:8787"),
            github_client_id=os.environ["GITHUB_CLIENT_ID"],
            github_client_secret=os.environ["GITHUB_CLIENT_SECRET"],
            jwt_secret=os.environ["JWT_SECRET"],
            oauth_scopes=os.environ.get("OAUTH_SCOPES") or DEFAULT_SCOPES,
        )


# ---------------------------------------------------------------------------
# Discovery metadata
# ---------------------------------------------------------------------------

def protected_resource_metadata(server_url: str) -> dict[str, Any]:
    """RFC 9728 — OAuth Protected Resource Metadata."""
    return {
        "resource": server_url,
        "authorization_servers": [server_url],
        "scopes_supported": [BROKER_SCOPE],
        "bearer_methods_supported": ["header"],
    }


def authorization_server_metadata(server_url: str) -> dict[str, Any]:
    """RFC 8414 — OAuth Authorization Server Metadata."""
    return {
        "issuer": server_url,
        "authorization_endpoint": f"{server_url}/oauth/authorize",
        "token_endpoint": f"{server_url}/oauth/token",
        "registration_endpoint": f"{server_url}/oauth/register",
        "scopes_supported": [BROKER_SCOPE],
        "response_types_supported": ["code"],
        "grant_types_supported": ["authorization_code"],
        "token_endpoint_auth_methods_supported": ["none"],
        "code_challenge_methods_supported": ["S256"],
        "service_documentation": f"{server_url}/docs",
    }


# ---------------------------------------------------------------------------
# Broker
# ---------------------------------------------------------------------------

class GitHubOAuthBroker:
    """Authorize / callback / token operations of the two-hop flow."""

    def __init__(
        self,
        config: BrokerConfig,
        store: SessionStore,
        signer: TokenSigner | None = None,
        http_client: httpx.AsyncClient | None = None,
        id_factory: Callable[[], str] = lambda: secrets.token_urlsafe(32),
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.store = store
        self.signer = signer or TokenSigner(config.jwt_secret, config.server_url)
        self._http_client = http_client
        self._new_id = id_factory
        self._clock = clock

    # --- /oauth/authorize ---

    async def authorize(self, params: dict[str, str]) -> str:
        """Start the flow. Returns the GitHub authorization URL."""
        client_id = params.get("client_id", "")
        redirect_uri = params.get("redirect_uri", "")
        state = params.get("state", "")
        code_challenge = params.get("code_challenge", "")
        code_challenge_method = params.get("code_challenge_method")

        if not client_id or not redirect_uri or not state or not code_challenge:
            raise OAuthError("invalid_request", "Missing required parameters")

        if code_challenge_method and code_challenge_method != "S256":
            raise OAuthError("invalid_request", "Only S256 code_challenge_method is supported")

        session_id = self._new_id()
        record = SessionRecord(
            state=state,
            code_challenge=code_challenge,
            client_id=client_id,
            redirect_uri=redirect_uri,
            created_at=self._clock(),
        )
        await self.store.put(f"{SESSION_PREFIX}{session_id}", record.to_json(), SESSION_TTL)
        _audit("session_created", client_id=client_id)

        return construct_redirect_uri(
            GITHUB_AUTHORIZE_URL,
            client_id=self.config.github_client_id,
            redirect_uri=self.config.callback_url,
            scope=self.config.oauth_scopes,
            state=session_id,
        )

    # --- /oauth/callback ---

    async def callback(self, params: dict[str, str]) -> str:
        """Finish the GitHub leg. Returns the client redirect URL."""
        error = params.get("error")
        if error:
            _audit("upstream_denied", error=error)
            raise OAuthError(error, params.get("error_description"))

        code = params.get("code", "")
        session_id = params.get("state", "")
        if not code or not session_id:
            raise OAuthError("invalid_request", "Missing code or state")

        session_key = f"{SESSION_PREFIX}{session_id}"
        raw = await self.store.get(session_key)
        if raw is None:
            raise OAuthError("invalid_request", "Session not found or expired")
        session = SessionRecord.from_json(raw)

        upstream_token = await self._exchange_upstream_code(code)

        auth_code = self._new_id()
        record = AuthorizationCodeRecord(
            upstream_token=upstream_token,
            session_id=session_id,
            client_id=session.client_id,
            redirect_uri=session.redirect_uri,
            code_challenge=session.code_challenge,
            created_at=self._clock(),
        )
        await self.store.put(f"{CODE_PREFIX}{auth_code}", record.to_json(), AUTH_CODE_TTL)
        await self.store.delete(session_key)
        _audit("code_issued", client_id=session.client_id)

        return construct_redirect_uri(session.redirect_uri, code=auth_code, state=session.state)

    async def _exchange_upstream_code(self, code: str) -> str:
        payload = {
            "client_id": self.config.github_client_id,
            "client_secret": self.config.github_client_secret,
            "code": code,
        }
        http = self._http_client or httpx.AsyncClient(timeout=UPSTREAM_TIMEOUT)
        should_close = self._http_client is None
        try:
            response = await http.post(
                GITHUB_TOKEN_URL,
                json=payload,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            logger.warning("upstream token exchange failed: %s", type(e).__name__)
            _audit("upstream_exchange_failed", reason=type(e).__name__)
            raise OAuthError("token_error", "Failed to reach GitHub") from e
        finally:
            if should_close:
                await http.aclose()

        try:
            data = response.json()
        except ValueError as e:
            logger.warning("upstream token response was not JSON (HTTP %d)", response.status_code)
            _audit("upstream_exchange_failed", reason="invalid_json")
            raise OAuthError("token_error", "Failed to get access token") from e

        if not isinstance(data, dict):
            data = {}
        access_token = data.get("access_token")
        if data.get("error") or not access_token:
            _audit("upstream_exchange_failed", reason=data.get("error", "no_access_token"))
            raise OAuthError(
                data.get("error") or "token_error",
                data.get("error_description") or "Failed to get access token",
            )
        return access_token

    # --- /oauth/token ---

    async def exchange_token(self, params: dict[str, Any]) -> dict[str, Any]:
        """Redeem a broker authorization code for a broker access token."""
        grant_type = params.get("grant_type")
        code = params.get("code")
        code_verifier = params.get("code_verifier")
        client_id = params.get("client_id")
        redirect_uri = params.get("redirect_uri")

        if grant_type != "authorization_code":
            raise OAuthError("unsupported_grant_type")

        if not code or not code_verifier:
            raise OAuthError("invalid_request", "Missing code or code_verifier")

        # Consumed before any further check: a failed redemption burns the code.
        raw = await self._consume(f"{CODE_PREFIX}{code}")
        if raw is None:
            raise OAuthError("invalid_grant", "Code not found or expired")
        record = AuthorizationCodeRecord.from_json(raw)

        if client_id and client_id != record.client_id:
            _audit("token_rejected", reason="client_id_mismatch", client_id=client_id)
            raise OAuthError("invalid_grant", "client_id mismatch")

        if redirect_uri and redirect_uri != record.redirect_uri:
            _audit("token_rejected", reason="redirect_uri_mismatch", client_id=record.client_id)
            raise OAuthError("invalid_grant", "redirect_uri mismatch")

        if not verify_code_challenge(str(code_verifier), record.code_challenge):
            _audit("token_rejected", reason="pkce_failed", client_id=record.client_id)
            raise OAuthError("invalid_grant", "Invalid code_verifier")

        access_token = self.signer.sign(record.upstream_token)
        _audit("token_issued", client_id=record.client_id, expires_in=self.signer.expires_in)

        return {
            "access_token": access_token,
            "token_type": "Bearer",
            "expires_in": self.signer.expires_in,
            "scope": BROKER_SCOPE,
        }

    async def _consume(self, key: str) -> str | None:
        pop = getattr(self.store, "pop", None)
        if pop is not None:
            return await pop(key)
        raw = await self.store.get(key)
        if raw is not None:
            await self.store.delete(key)
        return raw

    # --- Bearer verification ---

    def verify_bearer(self, token: str) -> str | None:
        """Return the embedded GitHub token, or None if the token is not valid."""
        try:
            claims = self.signer.verify(token)
        except jwt.ExpiredSignatureError:
            _audit("bearer_rejected", reason="expired")
            return None
        except jwt.InvalidTokenError as e:
            _audit("bearer_rejected", reason=type(e).__name__)
            return None
        return claims[UPSTREAM_CLAIM]
