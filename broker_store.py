"""
broker_store.py — Session store interface and records for the GitHub OAuth broker.

The broker keeps exactly two kinds of short-lived state, both in a key-value
store with per-key time-to-live:

  session:<session_id>  — SessionRecord, 10 minutes
  code:<auth_code>      — AuthorizationCodeRecord, 5 minutes

Anything implementing SessionStore can back the broker (a hosted KV service,
Redis, ...). MemorySessionStore is the in-process implementation used for
single-node deployments and tests.
"""

import json
import time
from dataclasses import asdict, dataclass
from typing import Callable, Protocol

SESSION_TTL = 600  # 10 minutes
AUTH_CODE_TTL = 300  # 5 minutes

SESSION_PREFIX = "session:"
CODE_PREFIX = "code:"


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass
class SessionRecord:
    state: str
    code_challenge: str
    client_id: str
    redirect_uri: str
    created_at: float

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str) -> "SessionRecord":
        return cls(**json.loads(raw))


@dataclass
class AuthorizationCodeRecord:
    upstream_token: str
    session_id: str
    client_id: str
    redirect_uri: str
    code_challenge: str
    created_at: float

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str) -> "AuthorizationCodeRecord":
        return cls(**json.loads(raw))


# ---------------------------------------------------------------------------
# Store interface
# ---------------------------------------------------------------------------

class SessionStore(Protocol):
    """Key-value store with per-key expiry. Values are JSON strings."""

    async def put(self, key: str, value: str, ttl: int) -> None: ...

    async def get(self, key: str) -> str | None: ...

    async def delete(self, key: str) -> None: ...


class MemorySessionStore:
    """In-memory SessionStore with lazy expiry.

    Expired entries are dropped when they are next touched; there is no
    background sweep. ``pop`` reads and removes a key in one step, which
    makes single-use consumption atomic within one process.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._entries: dict[str, tuple[str, float]] = {}

    async def put(self, key: str, value: str, ttl: int) -> None:
        self._entries[key] = (value, self._clock() + ttl)

    async def get(self, key: str) -> str | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            del self._entries[key]
            return None
        return value

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def pop(self, key: str) -> str | None:
        entry = self._entries.pop(key, None)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            return None
        return value

    def __len__(self) -> int:
        return len(self._entries)
