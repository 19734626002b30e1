"""
tests/test_grants.py -- Unit tests for auth/grants.py (GrantHandler).

Covers:
  - password grant: token pair, default scope, username alias, last_login stamp
  - uniform invalid_grant for unknown user and wrong password
  - 2FA gate: mfa_required without code, invalid_grant with a bad code,
    success with TOTP or a (single-use) recovery code
  - refresh grant: rotation, scope narrowing, widening rejected, replay rejected
  - request validation: missing grant_type, unsupported grant, bad scope
  - revoke and introspect semantics
"""

from __future__ import annotations

import time

import pyotp
import pytest

from auth.credentials import register_user
from auth.errors import (
    InvalidGrant,
    InvalidRequest,
    InvalidScope,
    MfaRequired,
    RefreshTokenInvalid,
    UnsupportedGrantType,
)
from auth.grants import GrantHandler, parse_scope
from auth.models import User
from auth.refresh import RefreshTokenStore
from auth.store import UserStore
from auth.tokens import TokenIssuer
from auth.totp import TwoFactorEngine

EMAIL = "grant@example.com"
PASSWORD = "s3cret-pass"


@pytest.fixture
def issuer() -> TokenIssuer:
    return TokenIssuer("g" * 48, ttl_seconds=900)


@pytest.fixture
def handler(
    user_store: UserStore,
    refresh_store: RefreshTokenStore,
    two_factor: TwoFactorEngine,
    issuer: TokenIssuer,
) -> GrantHandler:
    return GrantHandler(user_store, issuer, refresh_store, two_factor)


@pytest.fixture
def user(user_store: UserStore) -> User:
    return register_user(user_store, EMAIL, PASSWORD, role="operator")


def _password_body(**extra) -> dict:
    body = {"grant_type": "password", "email": EMAIL, "password": PASSWORD}
    body.update(extra)
    return body


def _enable_2fa(two_factor: TwoFactorEngine, user: User) -> tuple[str, list[str]]:
    setup = two_factor.begin_setup(user)
    codes = two_factor.confirm_setup(user, pyotp.TOTP(setup.secret).now())
    return setup.secret, codes


class TestParseScope:
    def test_space_delimited_and_deduplicated(self) -> None:
        assert parse_scope("read  write read") == ["read", "write"]
        assert parse_scope(["read", "write read"]) == ["read", "write"]
        assert parse_scope(None) == []
        assert parse_scope("") == []


class TestPasswordGrant:
    def test_success_issues_pair(self, handler: GrantHandler, user: User, issuer: TokenIssuer) -> None:
        result = handler.grant(_password_body(), {"user_agent": "pytest"})
        body = result.to_dict()
        assert body["token_type"] == "Bearer"
        assert body["expires_in"] == 900
        assert body["scope"] == "read write"
        assert body["user"]["email"] == EMAIL
        assert len(body["refresh_token"]) == 128

        claims = issuer.verify_access_token(result.access_token)
        assert claims.user_id == user.id
        assert claims.role == "operator"
        assert claims.scope == ["read", "write"]

    def test_username_alias_and_requested_scope(self, handler: GrantHandler, user: User) -> None:
        result = handler.grant({"grant_type": "password", "username": EMAIL, "password": PASSWORD, "scope": "read"})
        assert result.scope == ["read"]

    def test_last_login_stamped(self, handler: GrantHandler, user: User, user_store: UserStore) -> None:
        assert user_store.get_by_id(user.id).last_login is None
        handler.grant(_password_body())
        assert user_store.get_by_id(user.id).last_login is not None

    def test_unknown_user_and_wrong_password_are_indistinguishable(self, handler: GrantHandler, user: User) -> None:
        with pytest.raises(InvalidGrant) as wrong_password:
            handler.grant(_password_body(password="wrong-pass"))
        with pytest.raises(InvalidGrant) as unknown_user:
            handler.grant(_password_body(email="ghost@example.com"))
        assert wrong_password.value.to_dict() == unknown_user.value.to_dict()
        assert wrong_password.value.status_code == 401

    def test_unknown_scope_rejected_before_authentication(self, handler: GrantHandler, user: User) -> None:
        with pytest.raises(InvalidScope):
            handler.grant(_password_body(scope="read admin:everything"))

    def test_missing_password_is_invalid_request(self, handler: GrantHandler) -> None:
        with pytest.raises(InvalidRequest):
            handler.grant({"grant_type": "password", "email": EMAIL})

    def test_missing_grant_type(self, handler: GrantHandler) -> None:
        with pytest.raises(InvalidRequest):
            handler.grant({"email": EMAIL, "password": PASSWORD})

    def test_unsupported_grant_type(self, handler: GrantHandler) -> None:
        with pytest.raises(UnsupportedGrantType):
            handler.grant({"grant_type": "client_credentials"})


class TestTwoFactorGate:
    def test_mfa_required_without_code(
        self, handler: GrantHandler, user: User, two_factor: TwoFactorEngine, refresh_store: RefreshTokenStore
    ) -> None:
        _enable_2fa(two_factor, user)
        with pytest.raises(MfaRequired) as exc_info:
            handler.grant(_password_body())
        body = exc_info.value.to_dict()
        assert exc_info.value.status_code == 400
        assert body["error"] == "mfa_required"
        assert body["mfa_required"] is True
        assert body["mfa_type"] == "totp"
        assert refresh_store.list_active(user.id) == []

    def test_wrong_password_with_2fa_is_invalid_grant_not_mfa(
        self, handler: GrantHandler, user: User, two_factor: TwoFactorEngine
    ) -> None:
        _enable_2fa(two_factor, user)
        with pytest.raises(InvalidGrant):
            handler.grant(_password_body(password="wrong-pass"))

    def test_bad_code_is_invalid_grant(
        self, handler: GrantHandler, user: User, two_factor: TwoFactorEngine, refresh_store: RefreshTokenStore
    ) -> None:
        secret, _ = _enable_2fa(two_factor, user)
        totp = pyotp.TOTP(secret)
        # Four steps back is outside the +/-1 window.
        stale = totp.at(time.time() - 120)
        if stale == totp.now():
            stale = totp.at(time.time() - 150)
        with pytest.raises(InvalidGrant):
            handler.grant(_password_body(totp_code=stale))
        with pytest.raises(InvalidGrant):
            handler.grant(_password_body(totp_code="not-a-code"))
        assert refresh_store.list_active(user.id) == []

    def test_totp_code_completes_login(self, handler: GrantHandler, user: User, two_factor: TwoFactorEngine) -> None:
        secret, _ = _enable_2fa(two_factor, user)
        result = handler.grant(_password_body(totp_code=pyotp.TOTP(secret).now()))
        assert result.access_token
        assert result.user["two_factor_enabled"] is True

    def test_recovery_code_completes_login_once(
        self, handler: GrantHandler, user: User, two_factor: TwoFactorEngine
    ) -> None:
        _, codes = _enable_2fa(two_factor, user)
        assert handler.grant(_password_body(totp_code=codes[0])).access_token
        with pytest.raises(InvalidGrant):
            handler.grant(_password_body(totp_code=codes[0]))


class TestRefreshGrant:
    def test_rotation(self, handler: GrantHandler, user: User, issuer: TokenIssuer) -> None:
        first = handler.grant(_password_body())
        second = handler.grant({"grant_type": "refresh_token", "refresh_token": first.refresh_token})

        assert second.refresh_token != first.refresh_token
        assert second.scope == ["read", "write"]
        assert second.user is None
        assert issuer.verify_access_token(second.access_token).user_id == user.id

        with pytest.raises(InvalidGrant):
            handler.grant({"grant_type": "refresh_token", "refresh_token": first.refresh_token})
        # The successor is unaffected by the replay.
        third = handler.grant({"grant_type": "refresh_token", "refresh_token": second.refresh_token})
        assert third.access_token

    def test_scope_can_narrow(self, handler: GrantHandler, user: User, issuer: TokenIssuer) -> None:
        first = handler.grant(_password_body())
        narrowed = handler.grant(
            {"grant_type": "refresh_token", "refresh_token": first.refresh_token, "scope": "read"}
        )
        assert narrowed.scope == ["read"]
        assert issuer.verify_access_token(narrowed.access_token).scope == ["read"]

    def test_scope_cannot_widen(self, handler: GrantHandler, user: User) -> None:
        first = handler.grant(_password_body(scope="read"))
        with pytest.raises(InvalidScope):
            handler.grant({"grant_type": "refresh_token", "refresh_token": first.refresh_token, "scope": "read write"})
        # A rejected widening does not consume the token.
        assert handler.grant({"grant_type": "refresh_token", "refresh_token": first.refresh_token}).access_token

    def test_unknown_refresh_token(self, handler: GrantHandler) -> None:
        with pytest.raises(RefreshTokenInvalid) as exc_info:
            handler.grant({"grant_type": "refresh_token", "refresh_token": "f" * 128})
        assert exc_info.value.error == "invalid_grant"

    def test_refresh_after_deactivation(self, handler: GrantHandler, user: User, user_store: UserStore) -> None:
        first = handler.grant(_password_body())
        user_store.update_user(user.id, is_active=False)
        with pytest.raises(InvalidGrant):
            handler.grant({"grant_type": "refresh_token", "refresh_token": first.refresh_token})

    def test_missing_refresh_token_is_invalid_request(self, handler: GrantHandler) -> None:
        with pytest.raises(InvalidRequest):
            handler.grant({"grant_type": "refresh_token"})


class TestRevokeAndIntrospect:
    def test_revoke_then_refresh_fails(self, handler: GrantHandler, user: User) -> None:
        pair = handler.grant(_password_body())
        handler.revoke(pair.refresh_token)
        handler.revoke(pair.refresh_token)
        handler.revoke("never-issued")
        with pytest.raises(InvalidGrant):
            handler.grant({"grant_type": "refresh_token", "refresh_token": pair.refresh_token})

    def test_access_token_hint_does_not_touch_refresh_tokens(self, handler: GrantHandler, user: User) -> None:
        pair = handler.grant(_password_body())
        handler.revoke(pair.refresh_token, "access_token")
        assert handler.introspect(pair.refresh_token)["active"] is True

    def test_revoke_all(self, handler: GrantHandler, user: User) -> None:
        pairs = [handler.grant(_password_body()) for _ in range(2)]
        assert handler.revoke_all(user.id) == 2
        for pair in pairs:
            assert handler.introspect(pair.refresh_token) == {"active": False}

    def test_introspect_access_token(self, handler: GrantHandler, user: User) -> None:
        pair = handler.grant(_password_body())
        info = handler.introspect(pair.access_token)
        assert info["active"] is True
        assert info["token_type"] == "access_token"
        assert info["sub"] == str(user.id)
        assert info["email"] == EMAIL
        assert info["role"] == "operator"
        assert info["scope"] == "read write"
        assert info["exp"] > info["iat"]

    def test_introspect_refresh_token(self, handler: GrantHandler, user: User) -> None:
        pair = handler.grant(_password_body())
        info = handler.introspect(pair.refresh_token)
        assert info["active"] is True
        assert info["token_type"] == "refresh_token"
        assert info["sub"] == str(user.id)
        assert info["client_id"] == "default"

    def test_introspect_respects_hint(self, handler: GrantHandler, user: User) -> None:
        pair = handler.grant(_password_body())
        assert handler.introspect(pair.access_token, "refresh_token") == {"active": False}
        assert handler.introspect(pair.refresh_token, "access_token") == {"active": False}

    def test_introspect_garbage(self, handler: GrantHandler) -> None:
        assert handler.introspect("garbage") == {"active": False}
        assert handler.introspect("") == {"active": False}
