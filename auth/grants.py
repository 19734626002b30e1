"""
auth/grants.py -- OAuth2 grant handler: password and refresh_token grants,
token revocation, and introspection.

Flow (password grant):
  body -> PasswordGrantRequest (pydantic) -> scope check -> authenticate_user
  -> [2FA gate] -> TokenIssuer.issue_access_token + RefreshTokenStore.issue

Flow (refresh_token grant):
  body -> RefreshGrantRequest -> RefreshTokenStore.verify -> scope narrowing
  -> RefreshTokenStore.rotate -> TokenIssuer.issue_access_token

Every body is validated against its grant schema before any store access, so
a malformed request never costs a bcrypt round or a database read.

Error mapping is by exception type:
  unknown user, wrong password, inactive account, bad second factor, and every
  refresh failure all surface as InvalidGrant with one description. The
  concrete refresh reason is logged server-side only.

The 2FA gate returns MfaRequired (not a token pair) when the account has 2FA
enabled and the request carries no totp_code. The client resubmits the same
credentials with the code.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from auth.credentials import authenticate_user
from auth.errors import (
    InvalidGrant,
    InvalidRequest,
    InvalidScope,
    InvalidToken,
    MfaRequired,
    NotEnabled,
    RefreshTokenInvalid,
    UnsupportedGrantType,
)
from auth.models import User
from auth.refresh import RefreshTokenStore
from auth.store import UserStore
from auth.tokens import TokenIssuer
from auth.totp import TwoFactorEngine

logger = logging.getLogger("pyroalert.auth")

GRANT_PASSWORD = "password"  # noqa: S105 -- grant type name, not a password
GRANT_REFRESH_TOKEN = "refresh_token"  # noqa: S105

ScopeInput = Optional[Union[str, list[str]]]


# ---------------------------------------------------------------------------
# Grant request schemas
# ---------------------------------------------------------------------------


class PasswordGrantRequest(BaseModel):
    """grant_type=password. username is accepted as an alias for email (RFC 6749 naming)."""

    model_config = ConfigDict(extra="ignore")

    grant_type: Literal["password"]
    email: str = Field(min_length=1, max_length=255, validation_alias=AliasChoices("email", "username"))
    password: str = Field(min_length=1, max_length=1024)
    scope: ScopeInput = None
    totp_code: Optional[str] = Field(default=None, max_length=64)
    client_id: Optional[str] = Field(default=None, max_length=64)


class RefreshGrantRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    grant_type: Literal["refresh_token"]
    refresh_token: str = Field(min_length=1, max_length=512)
    scope: ScopeInput = None
    client_id: Optional[str] = Field(default=None, max_length=64)


@dataclass
class TokenResponse:
    """Successful grant result. scope is rendered space-joined on the wire."""

    access_token: str
    expires_in: int
    refresh_token: str
    scope: list[str] = field(default_factory=list)
    token_type: str = "Bearer"
    user: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
            "refresh_token": self.refresh_token,
            "scope": " ".join(self.scope),
        }
        if self.user is not None:
            body["user"] = self.user
        return body


def user_summary(user: User) -> dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "role": user.role,
        "two_factor_enabled": user.two_factor_enabled,
    }


def parse_scope(value: ScopeInput) -> list[str]:
    """Split a space-delimited scope (or list) into an ordered, de-duplicated list."""
    if value is None:
        return []
    parts = value.split() if isinstance(value, str) else [p for item in value for p in str(item).split()]
    seen: list[str] = []
    for part in parts:
        if part not in seen:
            seen.append(part)
    return seen


def _validation_message(exc: ValidationError) -> str:
    first = exc.errors()[0]
    loc = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    return f"{loc}: {first.get('msg', 'invalid value')}" if loc else first.get("msg", "Invalid request.")


# ---------------------------------------------------------------------------
# Handler
# ---------------------------------------------------------------------------


class GrantHandler:
    """Implements the token endpoint semantics on top of the auth components."""

    def __init__(
        self,
        user_store: UserStore,
        issuer: TokenIssuer,
        refresh_store: RefreshTokenStore,
        two_factor: TwoFactorEngine,
        default_scope: Iterable[str] = ("read", "write"),
        allowed_scopes: Iterable[str] = ("read", "write"),
    ) -> None:
        self.users = user_store
        self.issuer = issuer
        self.refresh_store = refresh_store
        self.two_factor = two_factor
        self.default_scope = list(default_scope)
        self.allowed_scopes = list(allowed_scopes)

    def grant(self, body: dict[str, Any], metadata: Optional[dict[str, Any]] = None) -> TokenResponse:
        """Dispatch on grant_type. Raises an AuthError subclass on any failure."""
        grant_type = body.get("grant_type")
        if not grant_type:
            raise InvalidRequest("grant_type is required.")
        metadata = dict(metadata or {})
        if grant_type == GRANT_PASSWORD:
            return self._password_grant(_parse(PasswordGrantRequest, body), metadata)
        if grant_type == GRANT_REFRESH_TOKEN:
            return self._refresh_grant(_parse(RefreshGrantRequest, body), metadata)
        raise UnsupportedGrantType()

    def revoke(self, token: str, type_hint: Optional[str] = None) -> None:
        """Revoke a refresh token. Always succeeds, per RFC 7009.

        Access tokens are stateless and expire on their own, so an
        access_token hint is accepted and does nothing.
        """
        if not token:
            raise InvalidRequest("token is required.")
        if type_hint == "access_token":
            return
        if self.refresh_store.revoke(token):
            logger.info("Refresh token revoked")

    def revoke_all(self, user_id: int) -> int:
        count = self.refresh_store.revoke_all(user_id)
        logger.info("All refresh tokens revoked (user_id=%s count=%d)", user_id, count)
        return count

    def introspect(self, token: str, type_hint: Optional[str] = None) -> dict[str, Any]:
        """RFC 7662 style introspection. Returns {"active": False} on any failure."""
        if not token:
            return {"active": False}

        if type_hint != "refresh_token":
            try:
                claims = self.issuer.verify_access_token(token)
            except InvalidToken:
                pass
            else:
                return {
                    "active": True,
                    "token_type": "access_token",
                    "scope": " ".join(claims.scope),
                    "client_id": "default",
                    "sub": str(claims.user_id),
                    "email": claims.email,
                    "role": claims.role,
                    "exp": claims.exp,
                    "iat": claims.iat,
                }

        if type_hint != "access_token":
            try:
                record = self.refresh_store.verify(token, detect_replay=False)
            except RefreshTokenInvalid:
                pass
            else:
                user = record.user or self.users.get_by_id(record.user_id)
                return {
                    "active": True,
                    "token_type": "refresh_token",
                    "scope": " ".join(record.scope),
                    "client_id": record.client_id,
                    "sub": str(record.user_id),
                    "email": user.email if user else None,
                    "role": user.role if user else None,
                    "exp": _timestamp(record.expires_at),
                    "iat": _timestamp(record.created_at) if record.created_at else None,
                }

        return {"active": False}

    # ------------------------------------------------------------------
    # Grants
    # ------------------------------------------------------------------

    def _password_grant(self, req: PasswordGrantRequest, metadata: dict[str, Any]) -> TokenResponse:
        scope = self._check_requested_scope(parse_scope(req.scope)) or list(self.default_scope)
        if req.client_id:
            metadata.setdefault("client_id", req.client_id)

        user = authenticate_user(self.users, req.email, req.password)
        if user is None:
            logger.info("Password grant rejected: bad credentials")
            raise InvalidGrant()

        if user.two_factor_enabled:
            if not req.totp_code:
                raise MfaRequired()
            try:
                passed = self.two_factor.verify_factor(user, req.totp_code)
            except NotEnabled:
                # 2FA was disabled between authentication and this check.
                passed = True
            if not passed:
                logger.info("Password grant rejected: bad second factor (user_id=%s)", user.id)
                raise InvalidGrant()

        access_token, expires_in = self.issuer.issue_access_token(user, scope)
        refresh_token, _ = self.refresh_store.issue(user.id, scope, metadata)
        self.users.update_last_login(user.id)
        logger.info("Password grant issued (user_id=%s scope=%s)", user.id, " ".join(scope))
        return TokenResponse(
            access_token=access_token,
            expires_in=expires_in,
            refresh_token=refresh_token,
            scope=scope,
            user=user_summary(user),
        )

    def _refresh_grant(self, req: RefreshGrantRequest, metadata: dict[str, Any]) -> TokenResponse:
        requested = self._check_requested_scope(parse_scope(req.scope))
        if req.client_id:
            metadata.setdefault("client_id", req.client_id)

        try:
            record = self.refresh_store.verify(req.refresh_token)
            if requested and not set(requested) <= set(record.scope):
                raise InvalidScope()
            new_refresh, _, predecessor = self.refresh_store.rotate(req.refresh_token, requested or None, metadata)
        except RefreshTokenInvalid as exc:
            logger.info("Refresh grant rejected (reason=%s)", exc.reason)
            raise

        user = record.user or self.users.get_by_id(predecessor.user_id)
        if user is None or not user.is_active:
            self.refresh_store.revoke(new_refresh)
            raise RefreshTokenInvalid("unknown")

        scope = requested or predecessor.scope
        access_token, expires_in = self.issuer.issue_access_token(user, scope)
        logger.info("Refresh token rotated (user_id=%s family_id=%s)", user.id, predecessor.family_id)
        return TokenResponse(
            access_token=access_token,
            expires_in=expires_in,
            refresh_token=new_refresh,
            scope=scope,
        )

    def _check_requested_scope(self, requested: list[str]) -> list[str]:
        unknown = [s for s in requested if s not in self.allowed_scopes]
        if unknown:
            raise InvalidScope(f"Unknown scope: {' '.join(unknown)}.")
        return requested


def _parse(schema: type[BaseModel], body: dict[str, Any]):
    try:
        return schema.model_validate(body)
    except ValidationError as exc:
        raise InvalidRequest(_validation_message(exc)) from exc


def _timestamp(iso_value: str) -> int:
    return int(datetime.fromisoformat(iso_value).timestamp())
