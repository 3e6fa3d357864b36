#!/usr/bin/env python3
"""
GitHub MCP Server — MCP tools for the GitHub API behind an OAuth broker.

Runs as a streamable-http MCP server. MCP clients authenticate through the
broker's own OAuth 2.0 + PKCE flow (broker_oauth.py); the broker completes a
second OAuth flow against GitHub and hands the client a signed JWT carrying
the GitHub token. Tools read that GitHub token from the request state set by
BrokerOAuthMiddleware and call the GitHub REST API on the user's behalf.
"""

import argparse
import base64
import json
import logging
from pathlib import Path
from typing import Any

import httpx
from mcp.server.fastmcp import Context, FastMCP
from mcp.server.transport_security import TransportSecuritySettings
from starlette.middleware.cors import CORSMiddleware
from starlette.types import ASGIApp

from broker_middleware import BrokerOAuthMiddleware
from broker_oauth import BrokerConfig, GitHubOAuthBroker
from broker_store import MemorySessionStore, SessionStore

logger = logging.getLogger("github-broker")

GITHUB_API = "https://api.github.com"
GITHUB_API_VERSION = "2022-11-28"
USER_AGENT = "GitHub-MCP-Server/1.0"
GITHUB_TIMEOUT = 30.0  # seconds

# ---------------------------------------------------------------------------
# MCP server
# ---------------------------------------------------------------------------

mcp = FastMCP(
    "github-mcp-server",
    # Host header is the public domain when deployed behind a proxy.
    transport_security=TransportSecuritySettings(
        enable_dns_rebinding_protection=False,
    ),
    instructions="Tools for GitHub repositories, issues and branches of the authenticated user.",
)


class GitHubAPIError(Exception):
    """Non-2xx response from the GitHub REST API."""

    def __init__(self, status_code: int, message: str):
        super().__init__(f"GitHub API error: {status_code} {message}")
        self.status_code = status_code


def _github_token(ctx: Context) -> str:
    request = ctx.request_context.request
    token = getattr(request.state, "github_token", None) if request is not None else None
    if not token:
        raise PermissionError("No GitHub credential on this request")
    return token


async def _github_json(
    ctx: Context,
    method: str,
    endpoint: str,
    params: dict[str, Any] | None = None,
    body: dict[str, Any] | None = None,
) -> Any:
    """Call the GitHub REST API and return the decoded JSON response."""
    headers = {
        "Authorization": f"Bearer {_github_token(ctx)}",
        "Accept": "application/vnd.github+json",
        "X-GitHub-Api-Version": GITHUB_API_VERSION,
        "User-Agent": USER_AGENT,
    }
    if params:
        params = {k: v for k, v in params.items() if v is not None}
    if body:
        body = {k: v for k, v in body.items() if v is not None}
    async with httpx.AsyncClient(base_url=GITHUB_API, timeout=GITHUB_TIMEOUT) as http:
        response = await http.request(method, endpoint, params=params, json=body, headers=headers)
    if response.is_error:
        raise GitHubAPIError(response.status_code, response.text[:500])
    return response.json()


async def _github(
    ctx: Context,
    method: str,
    endpoint: str,
    params: dict[str, Any] | None = None,
    body: dict[str, Any] | None = None,
) -> str:
    return json.dumps(await _github_json(ctx, method, endpoint, params=params, body=body), indent=2)


def _decode_file_content(content: Any) -> Any:
    """Add ``decoded_content`` to a base64-encoded contents API file entry."""
    if isinstance(content, dict) and content.get("content") and content.get("encoding") == "base64":
        raw = base64.b64decode(content["content"].replace("\n", ""))
        return {**content, "decoded_content": raw.decode("utf-8", errors="replace")}
    return content


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------

@mcp.tool()
async def list_repos(
    ctx: Context,
    type: str | None = None,
    sort: str | None = None,
    per_page: int | None = None,
    page: int | None = None,
) -> str:
    """List repositories for the authenticated user.

    Args:
        type: all, owner, public, private or member.
        sort: created, updated, pushed or full_name.
        per_page: Results per page (max 100).
        page: Page number.
    """
    return await _github(ctx, "GET", "/user/repos",
                         params={"type": type, "sort": sort, "per_page": per_page, "page": page})


@mcp.tool()
async def get_repo(ctx: Context, owner: str, repo: str) -> str:
    """Get repository details."""
    return await _github(ctx, "GET", f"/repos/{owner}/{repo}")


@mcp.tool()
async def create_repo(
    ctx: Context,
    name: str,
    description: str | None = None,
    private: bool | None = None,
    auto_init: bool | None = None,
) -> str:
    """Create a new repository for the authenticated user.

    Args:
        name: Repository name.
        description: Short description.
        private: Create a private repository.
        auto_init: Create an initial commit with an empty README.
    """
    return await _github(ctx, "POST", "/user/repos", body={
        "name": name,
        "description": description,
        "private": private,
        "auto_init": auto_init,
    })


@mcp.tool()
async def get_contents(ctx: Context, owner: str, repo: str, path: str, ref: str | None = None) -> str:
    """Get the contents of a file or directory."""
    return await _github(ctx, "GET", f"/repos/{owner}/{repo}/contents/{path}", params={"ref": ref})


@mcp.tool()
async def get_file_content(ctx: Context, owner: str, repo: str, path: str, ref: str | None = None) -> str:
    """Get a file with its base64 content decoded into ``decoded_content``."""
    content = await _github_json(ctx, "GET", f"/repos/{owner}/{repo}/contents/{path}",
                                 params={"ref": ref})
    return json.dumps(_decode_file_content(content), indent=2)


@mcp.tool()
async def create_or_update_file(
    ctx: Context,
    owner: str,
    repo: str,
    path: str,
    message: str,
    content: str,
    branch: str | None = None,
    sha: str | None = None,
) -> str:
    """Create or update a file.

    Args:
        owner: Repository owner.
        repo: Repository name.
        path: File path in the repository.
        message: Commit message.
        content: New file content (plain text, encoded here).
        branch: Target branch; the default branch when omitted.
        sha: Blob SHA of the file being replaced. Required for updates.
    """
    return await _github(ctx, "PUT", f"/repos/{owner}/{repo}/contents/{path}", body={
        "message": message,
        "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
        "branch": branch,
        "sha": sha,
    })


@mcp.tool()
async def list_issues(
    ctx: Context,
    owner: str,
    repo: str,
    state: str | None = None,
    labels: str | None = None,
    per_page: int | None = None,
) -> str:
    """List issues in a repository.

    Args:
        owner: Repository owner.
        repo: Repository name.
        state: open, closed or all.
        labels: Comma-separated label names.
        per_page: Results per page (max 100).
    """
    return await _github(ctx, "GET", f"/repos/{owner}/{repo}/issues",
                         params={"state": state, "labels": labels, "per_page": per_page})


@mcp.tool()
async def get_issue(ctx: Context, owner: str, repo: str, issue_number: int) -> str:
    """Get issue details."""
    return await _github(ctx, "GET", f"/repos/{owner}/{repo}/issues/{issue_number}")


@mcp.tool()
async def create_issue(
    ctx: Context,
    owner: str,
    repo: str,
    title: str,
    body: str | None = None,
    labels: list[str] | None = None,
) -> str:
    """Create a new issue."""
    payload: dict[str, Any] = {"title": title}
    if body is not None:
        payload["body"] = body
    if labels:
        payload["labels"] = labels
    return await _github(ctx, "POST", f"/repos/{owner}/{repo}/issues", body=payload)


@mcp.tool()
async def update_issue(
    ctx: Context,
    owner: str,
    repo: str,
    issue_number: int,
    title: str | None = None,
    body: str | None = None,
    state: str | None = None,
    labels: list[str] | None = None,
) -> str:
    """Update an issue. Only the fields given are changed.

    Args:
        state: open or closed.
    """
    return await _github(ctx, "PATCH", f"/repos/{owner}/{repo}/issues/{issue_number}", body={
        "title": title,
        "body": body,
        "state": state,
        "labels": labels,
    })


@mcp.tool()
async def list_branches(ctx: Context, owner: str, repo: str, per_page: int | None = None) -> str:
    """List branches of a repository."""
    return await _github(ctx, "GET", f"/repos/{owner}/{repo}/branches",
                         params={"per_page": per_page})


@mcp.tool()
async def search_repos(ctx: Context, q: str, sort: str | None = None, per_page: int | None = None) -> str:
    """Search repositories.

    Args:
        q: GitHub search query.
        sort: stars, forks, help-wanted-issues or updated.
        per_page: Results per page (max 100).
    """
    return await _github(ctx, "GET", "/search/repositories",
                         params={"q": q, "sort": sort, "per_page": per_page})


@mcp.tool()
async def search_code(
    ctx: Context,
    q: str,
    sort: str | None = None,
    order: str | None = None,
    per_page: int | None = None,
    page: int | None = None,
) -> str:
    """Search code across repositories.

    Args:
        q: GitHub code search query, e.g. ``addClass repo:jquery/jquery``.
        sort: indexed.
        order: asc or desc.
        per_page: Results per page (max 100).
        page: Page number.
    """
    return await _github(ctx, "GET", "/search/code",
                         params={"q": q, "sort": sort, "order": order, "per_page": per_page, "page": page})


# ---------------------------------------------------------------------------
# App assembly
# ---------------------------------------------------------------------------

def create_app(
    config: BrokerConfig,
    store: SessionStore | None = None,
    inner: ASGIApp | None = None,
) -> ASGIApp:
    """Wrap the MCP app with the OAuth broker and CORS."""
    broker = GitHubOAuthBroker(config, store or MemorySessionStore())
    app = BrokerOAuthMiddleware(inner or mcp.streamable_http_app(), broker)
    return CORSMiddleware(
        app,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "MCP-Protocol-Version"],
        expose_headers=["WWW-Authenticate"],
    )


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    # Audit logger — JSON-lines to ~/.github-broker/audit.log
    _audit_log_path = Path.home() / ".github-broker" / "audit.log"
    _audit_log_path.parent.mkdir(parents=True, exist_ok=True)
    _audit_handler = logging.FileHandler(_audit_log_path)
    _audit_handler.setFormatter(logging.Formatter("%(message)s"))
    _audit_logger = logging.getLogger("broker-audit")
    _audit_logger.addHandler(_audit_handler)
    _audit_logger.setLevel(logging.INFO)
    _audit_logger.propagate = False

    parser = argparse.ArgumentParser(description="GitHub MCP server with OAuth broker")
    parser.add_argument("--port", type=int, default=8787)
    parser.add_argument("--host", default="127.0.0.1")
    args = parser.parse_args()

    import uvicorn

    config = BrokerConfig.from_env()
    app = create_app(config)

    logger.info("github-broker: starting HTTP server on %s:%d (issuer %s)",
                args.host, args.port, config.server_url)
    uvicorn.run(app, host=args.host, port=args.port, log_level="info",
                proxy_headers=True, forwarded_allow_ips="*")
