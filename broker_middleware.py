"""
broker_middleware.py — ASGI front door for the GitHub OAuth broker.

Intercepts the OAuth, discovery and informational paths before they reach
the MCP app. Every other path requires a broker-issued Bearer JWT; the
GitHub token embedded in it is placed in ``scope["state"]["github_token"]``
for the wrapped app.

Routes:
  GET  /                                       — health
  GET  /.well-known/oauth-protected-resource   — RFC 9728 metadata
  GET  /.well-known/oauth-authorization-server — RFC 8414 metadata
  GET  /oauth/authorize                        — start flow (302 → GitHub)
  GET  /oauth/callback                         — GitHub redirect target (302 → client)
  POST /oauth/token                            — code → broker JWT
  POST /oauth/register                         — RFC 7591 stub, accepts any client
  GET  /docs                                   — HTML docs
"""

import json
import logging
import secrets
import urllib.parse

from starlette.types import ASGIApp, Receive, Scope, Send

from broker_oauth import (
    GitHubOAuthBroker,
    OAuthError,
    _audit,
    authorization_server_metadata,
    protected_resource_metadata,
)

logger = logging.getLogger("broker-http")

SERVER_NAME = "GitHub MCP Server"
SERVER_VERSION = "1.0.0"


# ---------------------------------------------------------------------------
# ASGI helpers
# ---------------------------------------------------------------------------

async def _read_body(receive: Receive) -> bytes:
    body = b""
    while True:
        message = await receive()
        body += message.get("body", b"")
        if not message.get("more_body", False):
            break
    return body


async def _send_json(send: Send, status: int, data: dict, extra_headers: list | None = None) -> None:
    body = json.dumps(data).encode()
    headers = [
        [b"content-type", b"application/json"],
        [b"content-length", str(len(body)).encode()],
        [b"cache-control", b"no-store"],
    ]
    if extra_headers:
        headers.extend(extra_headers)
    await send({"type": "http.response.start", "status": status, "headers": headers})
    await send({"type": "http.response.body", "body": body})


async def _send_html(send: Send, status: int, html: str) -> None:
    body = html.encode()
    await send({
        "type": "http.response.start",
        "status": status,
        "headers": [
            [b"content-type", b"text/html; charset=utf-8"],
            [b"content-length", str(len(body)).encode()],
        ],
    })
    await send({"type": "http.response.body", "body": body})


async def _send_redirect(send: Send, location: str) -> None:
    await send({
        "type": "http.response.start",
        "status": 302,
        "headers": [
            [b"location", location.encode()],
            [b"content-length", b"0"],
        ],
    })
    await send({"type": "http.response.body", "body": b""})


def _parse_qs(query: str) -> dict[str, str]:
    """Parse query string, returning first value for each key."""
    parsed = urllib.parse.parse_qs(query, keep_blank_values=True)
    return {k: v[0] for k, v in parsed.items()}


def _parse_body(body: bytes, content_type: str) -> dict:
    """Parse a JSON or application/x-www-form-urlencoded request body.

    Raises ValueError if a JSON body is malformed or not an object.
    """
    if "application/json" in content_type:
        data = json.loads(body or b"{}")
        if not isinstance(data, dict):
            raise ValueError("JSON body must be an object")
        return data
    return _parse_qs(body.decode("utf-8", errors="replace"))


def _header(scope: Scope, name: bytes) -> str:
    headers = dict(scope.get("headers", []))
    return headers.get(name, b"").decode("latin-1")


# ---------------------------------------------------------------------------
# Docs page
# ---------------------------------------------------------------------------

def _docs_page(server_url: str) -> str:
    return f"""<!DOCTYPE html>
<html>
<head>
    <title>{SERVER_NAME}</title>
    <style>
        body {{ font-family: system-ui, sans-serif; max-width: 800px; margin: 40px auto; padding: 20px; }}
        code {{ background: #f0f0f0; padding: 2px 6px; border-radius: 4px; }}
        h1, h2 {{ color: #333; }}
    </style>
</head>
<body>
    <h1>{SERVER_NAME}</h1>
    <p>A Model Context Protocol server for the GitHub API.</p>

    <h2>Connecting</h2>
    <ol>
        <li>Add a remote MCP server in your client.</li>
        <li>Enter the URL: <code>{server_url}/mcp</code></li>
        <li>Connect and authorize with GitHub.</li>
    </ol>

    <h2>Available Tools</h2>
    <ul>
        <li><strong>list_repos</strong> - List your repositories</li>
        <li><strong>get_repo</strong> - Get repository details</li>
        <li><strong>create_repo</strong> - Create a new repository</li>
        <li><strong>get_contents</strong> - Get file/directory contents</li>
        <li><strong>get_file_content</strong> - Get decoded file content</li>
        <li><strong>create_or_update_file</strong> - Create or update a file</li>
        <li><strong>list_issues</strong> - List repository issues</li>
        <li><strong>get_issue</strong> - Get issue details</li>
        <li><strong>create_issue</strong> - Create a new issue</li>
        <li><strong>update_issue</strong> - Update an issue</li>
        <li><strong>list_branches</strong> - List branches</li>
        <li><strong>search_repos</strong> - Search repositories</li>
        <li><strong>search_code</strong> - Search code</li>
    </ul>

    <h2>Endpoints</h2>
    <ul>
        <li><code>GET /.well-known/oauth-protected-resource</code> - Resource metadata</li>
        <li><code>GET /.well-known/oauth-authorization-server</code> - Auth server metadata</li>
        <li><code>GET /oauth/authorize</code> - Start OAuth flow</li>
        <li><code>GET /oauth/callback</code> - OAuth callback</li>
        <li><code>POST /oauth/token</code> - Exchange code for token</li>
        <li><code>POST /oauth/register</code> - Dynamic client registration</li>
        <li><code>POST /mcp</code> - MCP endpoint (Bearer token required)</li>
    </ul>
</body>
</html>"""


# ---------------------------------------------------------------------------
# BrokerOAuthMiddleware
# ---------------------------------------------------------------------------

class BrokerOAuthMiddleware:
    """ASGI middleware serving the broker's OAuth surface.

    All other paths require a valid Bearer token.
    """

    def __init__(self, app: ASGIApp, broker: GitHubOAuthBroker):
        self.app = app
        self.broker = broker
        self.server_url = broker.config.server_url
        self._www_auth = f'Bearer resource="{self.server_url}"'.encode()

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        path = scope.get("path", "")
        method = scope.get("method", "GET")

        if path == "/" and method == "GET":
            await _send_json(send, 200, {
                "name": SERVER_NAME,
                "version": SERVER_VERSION,
                "status": "ok",
            })
            return

        if path == "/.well-known/oauth-protected-resource":
            await _send_json(send, 200, protected_resource_metadata(self.server_url))
            return

        if path == "/.well-known/oauth-authorization-server":
            await _send_json(send, 200, authorization_server_metadata(self.server_url))
            return

        if path == "/docs":
            await _send_html(send, 200, _docs_page(self.server_url))
            return

        if path == "/mcp/sse":
            await _send_json(send, 501, {"error": "SSE not implemented, use POST /mcp"})
            return

        if path in ("/oauth/authorize", "/oauth/callback"):
            if method != "GET":
                await _send_json(send, 405, {"error": "method_not_allowed"})
                return
            qs = _parse_qs(scope.get("query_string", b"").decode())
            if path == "/oauth/authorize":
                await self._handle_authorize(send, qs)
            else:
                await self._handle_callback(send, qs)
            return

        if path in ("/oauth/token", "/oauth/register"):
            if method != "POST":
                await _send_json(send, 405, {"error": "method_not_allowed"})
                return
            body = await _read_body(receive)
            content_type = _header(scope, b"content-type")
            if path == "/oauth/token":
                await self._handle_token(send, body, content_type)
            else:
                await self._handle_register(send, body)
            return

        # --- All other paths: require valid JWT ---

        auth = _header(scope, b"authorization")
        github_token = None
        if auth.startswith("Bearer "):
            github_token = self.broker.verify_bearer(auth[7:].strip())
        if github_token is None:
            logger.info("unauthorized: %s %s auth=%s", method, path,
                        "bearer" if auth.startswith("Bearer ") else (auth[:10] or "none"))
            await _send_json(send, 401, {"error": "unauthorized"}, [
                [b"www-authenticate", self._www_auth],
            ])
            return

        scope.setdefault("state", {})["github_token"] = github_token
        await self.app(scope, receive, send)

    # --- Endpoint handlers ---

    async def _handle_authorize(self, send: Send, params: dict) -> None:
        try:
            location = await self.broker.authorize(params)
        except OAuthError as e:
            await _send_json(send, e.status_code, e.to_dict())
            return
        await _send_redirect(send, location)

    async def _handle_callback(self, send: Send, params: dict) -> None:
        try:
            location = await self.broker.callback(params)
        except OAuthError as e:
            await _send_json(send, e.status_code, e.to_dict())
            return
        await _send_redirect(send, location)

    async def _handle_token(self, send: Send, body: bytes, content_type: str) -> None:
        try:
            params = _parse_body(body, content_type)
        except ValueError:
            await _send_json(send, 400, {
                "error": "invalid_request",
                "error_description": "Malformed request body",
            })
            return

        try:
            token = await self.broker.exchange_token(params)
        except OAuthError as e:
            await _send_json(send, e.status_code, e.to_dict())
            return
        await _send_json(send, 200, token)

    async def _handle_register(self, send: Send, body: bytes) -> None:
        """RFC 7591 — Dynamic Client Registration (stub, nothing is stored)."""
        try:
            data = json.loads(body or b"{}")
        except ValueError:
            await _send_json(send, 400, {"error": "invalid_request"})
            return
        if not isinstance(data, dict):
            await _send_json(send, 400, {"error": "invalid_request"})
            return

        client_id = secrets.token_urlsafe(16)
        client_name = data.get("client_name") or "MCP Client"
        _audit("client_registered", client_id=client_id, client_name=client_name)

        await _send_json(send, 201, {
            "client_id": client_id,
            "client_name": client_name,
            "redirect_uris": data.get("redirect_uris") or [],
            "grant_types": ["authorization_code"],
            "response_types": ["code"],
            "token_endpoint_auth_method": "none",
        })
