"""
auth/tokens.py -- JWT access tokens and opaque token helpers.

Security design decisions:
  JWT: python-jose with HS256. Access tokens carry sub (user id), email, role,
       space-joined scope, a token_type marker, iat, and exp. They are
       short-lived (default 900s) and cannot be revoked before expiry; the
       refresh token is the revocable half of the pair.

  TokenIssuer receives its signing key explicitly. The API lifespan builds
       one from get_settings() at startup and stores it on app.state, so key
       rotation means constructing a new issuer -- no call site reads the key.

  verify_access_token() distinguishes expiry from bad signatures from
       garbage input so the bearer dependency can report the right
       description. All three are InvalidToken subclasses; callers that only
       care about validity catch InvalidToken.

  Opaque tokens (refresh tokens): secrets.token_hex(64) gives 512 bits of
       entropy. We store SHA-256(token) so a database leak does not expose
       usable tokens. A plain digest is sufficient because the input is
       already uniformly random; bcrypt's slowness buys nothing here and would
       prevent O(1) lookup by hash.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Iterable

from jose import jwt
from jose.exceptions import ExpiredSignatureError, JWTClaimsError, JWTError

from auth.errors import SignatureInvalid, TokenExpired, TokenMalformed

if TYPE_CHECKING:
    from auth.models import User

ACCESS_TOKEN_TYPE = "access_token"  # noqa: S105 -- claim marker, not a password

_REQUIRED_CLAIMS = ("sub", "email", "role", "scope", "exp")


@dataclass(frozen=True)
class AccessClaims:
    """Verified claims of an access token."""

    user_id: int
    email: str
    role: str
    scope: list[str] = field(default_factory=list)
    exp: int = 0
    iat: int = 0


class TokenIssuer:
    """Mints and verifies signed access tokens.

    Stateless: holds only the injected key, algorithm, and TTL.
    """

    def __init__(self, secret_key: str, algorithm: str = "HS256", ttl_seconds: int = 900) -> None:
        if not secret_key:
            raise ValueError("TokenIssuer requires a signing key")
        self._secret_key = secret_key
        self.algorithm = algorithm
        self.ttl_seconds = ttl_seconds

    def issue_access_token(self, user: User, scope: Iterable[str], ttl_seconds: int = 0) -> tuple[str, int]:
        """Return (token, expires_in_seconds) for the given user and scope.

        ttl_seconds overrides the configured TTL; tests use a negative value to
        mint already-expired tokens.
        """
        duration = ttl_seconds or self.ttl_seconds
        now = datetime.now(timezone.utc)
        payload = {
            "sub": str(user.id),
            "email": user.email,
            "role": user.role,
            "scope": " ".join(scope),
            "token_type": ACCESS_TOKEN_TYPE,
            "iat": now,
            "exp": now + timedelta(seconds=duration),
        }
        return jwt.encode(payload, self._secret_key, algorithm=self.algorithm), duration

    def verify_access_token(self, token: str) -> AccessClaims:
        """Verify signature and expiry. Raises an InvalidToken subclass on failure.

        python-jose checks the signature before the claims, so an expired
        token with a forged signature is reported as SignatureInvalid.
        """
        try:
            jwt.get_unverified_header(token)
        except JWTError as exc:
            raise TokenMalformed() from exc

        try:
            payload = jwt.decode(token, self._secret_key, algorithms=[self.algorithm])
        except ExpiredSignatureError as exc:
            raise TokenExpired() from exc
        except JWTClaimsError as exc:
            raise TokenMalformed() from exc
        except JWTError as exc:
            raise SignatureInvalid() from exc

        if payload.get("token_type") != ACCESS_TOKEN_TYPE:
            raise TokenMalformed()
        if any(name not in payload for name in _REQUIRED_CLAIMS):
            raise TokenMalformed()
        try:
            user_id = int(payload["sub"])
        except (TypeError, ValueError) as exc:
            raise TokenMalformed() from exc

        scope = payload["scope"].split() if isinstance(payload["scope"], str) else []
        return AccessClaims(
            user_id=user_id,
            email=payload["email"],
            role=payload["role"],
            scope=scope,
            exp=int(payload["exp"]),
            iat=int(payload.get("iat", 0)),
        )


# ---------------------------------------------------------------------------
# Opaque tokens
# ---------------------------------------------------------------------------


def generate_opaque_token() -> str:
    """Return a new refresh token: 64 random bytes as 128 hex characters."""
    return secrets.token_hex(64)


def hash_opaque_token(raw: str) -> str:
    """Return SHA-256(raw) as hex -- the only form a refresh token is stored in."""
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()
