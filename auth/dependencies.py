"""
auth/dependencies.py -- FastAPI Depends() helpers for bearer authentication.

Only one method is accepted: Authorization: Bearer <access JWT>. Refresh
tokens are never valid here; they are only exchanged at /oauth/token.

get_principal() verifies the JWT and returns a Principal built from its
claims, without touching the database.
get_current_user() additionally loads the User and rejects deleted or
deactivated accounts, for routes that act on account state.
require_scope() / require_role() are dependency factories layered on top;
require_admin is require_role("admin").

Failures raise AuthError subclasses; api/main.py renders them and adds
WWW-Authenticate: Bearer error="..." to 401/403 token errors (RFC 6750).

Layer rule: no imports from api/. This module may import from fastapi
because it is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable

from fastapi import Depends, Request

from auth.errors import Forbidden, InsufficientScope, InvalidToken
from auth.models import User


@dataclass(frozen=True)
class Principal:
    """The authenticated caller as asserted by a verified access token."""

    user_id: int
    email: str
    role: str
    scope: list[str] = field(default_factory=list)


def _bearer_token(request: Request) -> str:
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise InvalidToken("Missing bearer token.")
    return token.strip()


def get_principal(request: Request) -> Principal:
    """Require a valid access token. Raises InvalidToken (401) otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(principal: Principal = Depends(get_principal)): ...
    """
    claims = request.app.state.issuer.verify_access_token(_bearer_token(request))
    return Principal(user_id=claims.user_id, email=claims.email, role=claims.role, scope=list(claims.scope))


def get_current_user(request: Request, principal: Principal = Depends(get_principal)) -> User:
    """Require a valid token whose account still exists and is active."""
    user = request.app.state.user_store.get_by_id(principal.user_id)
    if user is None or not user.is_active:
        raise InvalidToken("The account behind this token is no longer active.")
    return user


def require_scope(*scopes: str) -> Callable[..., Principal]:
    """Dependency factory: the token must carry every scope listed.

    Usage:
        @router.post("/things", dependencies=[Depends(require_scope("write"))])
    """

    def _check(principal: Principal = Depends(get_principal)) -> Principal:
        missing = [s for s in scopes if s not in principal.scope]
        if missing:
            raise InsufficientScope(f"Missing required scope: {' '.join(missing)}.")
        return principal

    return _check


def require_role(*roles: str) -> Callable[..., User]:
    """Dependency factory: the account's current role must be one of roles.

    The role is read from the database, not the token, so a demotion takes
    effect immediately instead of when the access token expires.
    """

    def _check(user: User = Depends(get_current_user)) -> User:
        if user.role not in roles:
            raise Forbidden()
        return user

    return _check


require_admin = require_role("admin")
