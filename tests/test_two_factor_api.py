"""
tests/test_two_factor_api.py -- Integration tests for /api/v1/2fa/* endpoints.

Coverage:
  - auth required on every 2FA route
  - status -> setup -> verify -> status walk, with camelCase response keys
  - verify before setup, setup after enable, wrong code
  - password grant after enabling: mfa_required, then TOTP and recovery code
  - disable and recovery-code regeneration gated on password + code
  - setup can start over after disable

Each test logs in its own user so 2FA state never leaks between tests that
share the module-scoped api_client.
"""

from __future__ import annotations

import pyotp
from fastapi.testclient import TestClient

from auth.credentials import register_user
from auth.models import TwoFactorState

PASSWORD = "twofactor-pass-1"


def _user_headers(client: TestClient, email: str) -> dict[str, str]:
    register_user(client.app.state.user_store, email, PASSWORD)
    resp = client.post("/oauth/token", json={"grant_type": "password", "email": email, "password": PASSWORD})
    assert resp.status_code == 200, resp.text
    return {"Authorization": f"Bearer {resp.json()['access_token']}"}


def _enable(client: TestClient, headers: dict[str, str]) -> tuple[str, list[str]]:
    setup = client.post("/api/v1/2fa/setup", headers=headers).json()
    resp = client.post("/api/v1/2fa/verify", json={"code": pyotp.TOTP(setup["secret"]).now()}, headers=headers)
    assert resp.status_code == 200, resp.text
    return setup["secret"], resp.json()["recoveryCodes"]


class TestTwoFactorAuthRequired:
    def test_routes_reject_anonymous(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        assert client.get("/api/v1/2fa/status").status_code == 401
        assert client.post("/api/v1/2fa/setup").status_code == 401
        assert client.post("/api/v1/2fa/verify", json={"code": "123456"}).status_code == 401


class TestSetupFlow:
    def test_full_enable_flow(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        headers = _user_headers(client, "flow@example.com")

        status = client.get("/api/v1/2fa/status", headers=headers)
        assert status.status_code == 200
        assert status.json() == {"enabled": False, "recoveryCodesRemaining": 0}

        setup = client.post("/api/v1/2fa/setup", headers=headers)
        assert setup.status_code == 200
        assert setup.headers["cache-control"] == "no-store"
        data = setup.json()
        assert set(data) == {"secret", "otpauthUri", "qrImage"}
        assert data["otpauthUri"].startswith("otpauth://totp/")
        assert data["qrImage"].startswith("data:image/png;base64,")

        verify = client.post("/api/v1/2fa/verify", json={"code": pyotp.TOTP(data["secret"]).now()}, headers=headers)
        assert verify.status_code == 200
        codes = verify.json()["recoveryCodes"]
        assert len(codes) == 10

        status = client.get("/api/v1/2fa/status", headers=headers).json()
        assert status == {"enabled": True, "recoveryCodesRemaining": 10}

    def test_verify_before_setup(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        headers = _user_headers(client, "nosetup@example.com")
        resp = client.post("/api/v1/2fa/verify", json={"code": "123456"}, headers=headers)
        assert resp.status_code == 400
        assert resp.json()["error"] == "two_factor_setup_not_started"

    def test_wrong_code(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        headers = _user_headers(client, "wrongcode@example.com")
        secret = client.post("/api/v1/2fa/setup", headers=headers).json()["secret"]
        wrong = "000000" if pyotp.TOTP(secret).now() != "000000" else "111111"
        resp = client.post("/api/v1/2fa/verify", json={"code": wrong}, headers=headers)
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_code"
        assert client.get("/api/v1/2fa/status", headers=headers).json()["enabled"] is False

    def test_setup_when_enabled(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        headers = _user_headers(client, "twice@example.com")
        _enable(client, headers)
        resp = client.post("/api/v1/2fa/setup", headers=headers)
        assert resp.status_code == 400
        assert resp.json()["error"] == "two_factor_already_enabled"


class TestLoginWithTwoFactor:
    def test_login_requires_and_accepts_second_factor(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        email = "login2fa@example.com"
        headers = _user_headers(client, email)
        secret, codes = _enable(client, headers)
        body = {"grant_type": "password", "email": email, "password": PASSWORD}

        assert client.post("/oauth/token", json=body).json()["error"] == "mfa_required"

        with_totp = client.post("/oauth/token", json={**body, "totp_code": pyotp.TOTP(secret).now()})
        assert with_totp.status_code == 200

        with_recovery = client.post("/oauth/token", json={**body, "totp_code": codes[0]})
        assert with_recovery.status_code == 200
        reused = client.post("/oauth/token", json={**body, "totp_code": codes[0]})
        assert reused.status_code == 401
        assert reused.json()["error"] == "invalid_grant"

        status = client.get("/api/v1/2fa/status", headers=headers).json()
        assert status["recoveryCodesRemaining"] == 9


class TestDisableAndRegenerate:
    def test_disable_requires_password(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        headers = _user_headers(client, "disable-pw@example.com")
        secret, _ = _enable(client, headers)
        resp = client.post(
            "/api/v1/2fa/disable",
            json={"code": pyotp.TOTP(secret).now(), "password": "not-the-password"},
            headers=headers,
        )
        assert resp.status_code == 401
        assert resp.json()["error"] == "invalid_password"

    def test_disable(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        email = "disable@example.com"
        headers = _user_headers(client, email)
        secret, _ = _enable(client, headers)
        resp = client.post(
            "/api/v1/2fa/disable",
            json={"code": pyotp.TOTP(secret).now(), "password": PASSWORD},
            headers=headers,
        )
        assert resp.status_code == 200
        assert resp.json()["success"] is True
        assert client.get("/api/v1/2fa/status", headers=headers).json() == {
            "enabled": False,
            "recoveryCodesRemaining": 0,
        }
        login = client.post("/oauth/token", json={"grant_type": "password", "email": email, "password": PASSWORD})
        assert login.status_code == 200

        # Setup is available again after disabling.
        setup = client.post("/api/v1/2fa/setup", headers=headers)
        assert setup.status_code == 200
        new_secret = setup.json()["secret"]
        assert new_secret != secret
        user = client.app.state.user_store.get_by_email(email)
        assert user.two_factor_state is TwoFactorState.PENDING_SETUP

        verify = client.post("/api/v1/2fa/verify", json={"code": pyotp.TOTP(new_secret).now()}, headers=headers)
        assert verify.status_code == 200
        assert client.get("/api/v1/2fa/status", headers=headers).json() == {
            "enabled": True,
            "recoveryCodesRemaining": 10,
        }

    def test_disable_when_not_enabled(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        headers = _user_headers(client, "never-enabled@example.com")
        resp = client.post("/api/v1/2fa/disable", json={"code": "123456", "password": PASSWORD}, headers=headers)
        assert resp.status_code == 400
        assert resp.json()["error"] == "two_factor_not_enabled"

    def test_regenerate_recovery_codes(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        headers = _user_headers(client, "regen@example.com")
        secret, old_codes = _enable(client, headers)
        resp = client.post(
            "/api/v1/2fa/recovery-codes",
            json={"code": pyotp.TOTP(secret).now(), "password": PASSWORD},
            headers=headers,
        )
        assert resp.status_code == 200
        new_codes = resp.json()["recoveryCodes"]
        assert len(new_codes) == 10
        assert set(new_codes).isdisjoint(old_codes)

    def test_regenerate_with_bad_code(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        headers = _user_headers(client, "regen-bad@example.com")
        _enable(client, headers)
        resp = client.post(
            "/api/v1/2fa/recovery-codes",
            json={"code": "FFFF-FFFF-FFFF", "password": PASSWORD},
            headers=headers,
        )
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_code"
