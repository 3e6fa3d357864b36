"""
broker_tokens.py — PKCE verification and broker access tokens.

Broker access tokens are HS256 JWTs that carry the upstream GitHub token as
the ``github_token`` claim. They are never stored server-side: a token is
valid exactly as long as its signature, issuer and ``exp`` check out.
"""

import base64
import hashlib
import hmac
import secrets
import time
from typing import Any, Callable

import jwt

JWT_ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRY = 3600  # 1 hour
UPSTREAM_CLAIM = "github_token"


# ---------------------------------------------------------------------------
# PKCE (RFC 7636, S256 only)
# ---------------------------------------------------------------------------

def compute_code_challenge(verifier: str) -> str:
    """BASE64URL(SHA256(code_verifier)), padding stripped."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def verify_code_challenge(verifier: str, challenge: str) -> bool:
    try:
        computed = compute_code_challenge(verifier)
    except UnicodeEncodeError:
        return False
    return hmac.compare_digest(computed.encode("ascii"), challenge.encode("utf-8"))


# ---------------------------------------------------------------------------
# Token signing
# ---------------------------------------------------------------------------

class TokenSigner:
    """Mints and verifies broker access tokens.

    ``clock`` and ``subject_factory`` are injectable so tests can produce
    tokens with a known subject or an issuance time in the past.
    """

    def __init__(
        self,
        secret: str,
        issuer: str,
        expires_in: int = ACCESS_TOKEN_EXPIRY,
        clock: Callable[[], float] = time.time,
        subject_factory: Callable[[], str] = lambda: secrets.token_hex(16),
    ):
        if not secret:
            raise ValueError("Token signing secret must not be empty")
        self._secret = secret
        self.issuer = issuer.rstrip("/")
        self.expires_in = expires_in
        self._clock = clock
        self._subject_factory = subject_factory

    def sign(self, upstream_token: str) -> str:
        now = int(self._clock())
        payload = {
            "sub": self._subject_factory(),
            UPSTREAM_CLAIM: upstream_token,
            "iss": self.issuer,
            "iat": now,
            "exp": now + self.expires_in,
        }
        return jwt.encode(payload, self._secret, algorithm=JWT_ALGORITHM)

    def verify(self, token: str) -> dict[str, Any]:
        """Decode and validate a broker token.

        Raises jwt.InvalidTokenError (or a subclass) on a bad signature,
        wrong issuer, expiry, or a missing claim.
        """
        return jwt.decode(
            token,
            self._secret,
            algorithms=[JWT_ALGORITHM],
            issuer=self.issuer,
            options={"require": ["sub", "iss", "iat", "exp", UPSTREAM_CLAIM]},
        )
