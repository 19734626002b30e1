"""
auth/errors.py -- Error taxonomy for the auth core.

Every failure the auth components can report is a typed exception carrying
its protocol-level error code, HTTP status, and a client-safe description.
Callers map failures by *type*, never by parsing messages. The API layer
renders any AuthError as:

    {"error": <code>, "error_description": <description>, ...extra}

Information hiding:
  Credential, token, and 2FA failures deliberately collapse into a small set
  of codes. "Unknown user" and "wrong password" are both InvalidGrant with the
  same description; RefreshTokenInvalid keeps the real reason in `reason` for
  server-side logs only and never serializes it.

Layer rule: no imports from api/ or core/. Pure Python.
"""

from __future__ import annotations

from typing import Any, Optional


class AuthError(Exception):
    """Base class for auth failures mapped to protocol error responses."""

    error: str = "invalid_request"
    status_code: int = 400
    description: str = "The request is invalid."

    def __init__(self, description: Optional[str] = None, *, extra: Optional[dict[str, Any]] = None) -> None:
        if description is not None:
            self.description = description
        super().__init__(self.description)
        self.extra: dict[str, Any] = extra or {}

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.error, "error_description": self.description}
        body.update(self.extra)
        return body


# ---------------------------------------------------------------------------
# OAuth grant errors (RFC 6749 section 5.2 plus mfa_required)
# ---------------------------------------------------------------------------


class InvalidRequest(AuthError):
    error = "invalid_request"
    status_code = 400
    description = "The request is missing a required parameter or is malformed."


class InvalidGrant(AuthError):
    error = "invalid_grant"
    status_code = 401
    description = "Invalid credentials."


class UnsupportedGrantType(AuthError):
    error = "unsupported_grant_type"
    status_code = 400
    description = "Supported grant types are 'password' and 'refresh_token'."


class InvalidScope(AuthError):
    error = "invalid_scope"
    status_code = 400
    description = "The requested scope is invalid or exceeds the granted scope."


class MfaRequired(AuthError):
    """Credentials were valid but the account requires a second factor.

    400 rather than 401: the client authenticated correctly and only needs to
    resubmit with totp_code.
    """

    error = "mfa_required"
    status_code = 400
    description = "Two-factor authentication is required."

    def __init__(self, description: Optional[str] = None) -> None:
        super().__init__(description, extra={"mfa_required": True, "mfa_type": "totp"})


class RefreshTokenInvalid(InvalidGrant):
    """A refresh token failed verification or rotation.

    reason is one of "unknown", "expired", "revoked" and is for logging only;
    the client always sees the same invalid_grant description.
    """

    description = "The refresh token is invalid or expired."

    def __init__(self, reason: str) -> None:
        super().__init__()
        self.reason = reason


# ---------------------------------------------------------------------------
# Access token errors (bearer middleware, RFC 6750)
# ---------------------------------------------------------------------------


class InvalidToken(AuthError):
    error = "invalid_token"
    status_code = 401
    description = "The access token is invalid."


class TokenExpired(InvalidToken):
    description = "The access token has expired."


class TokenMalformed(InvalidToken):
    description = "The access token is malformed."


class SignatureInvalid(InvalidToken):
    description = "The access token signature is invalid."


class InsufficientScope(AuthError):
    error = "insufficient_scope"
    status_code = 403
    description = "The access token does not carry the required scope."


class Forbidden(AuthError):
    error = "forbidden"
    status_code = 403
    description = "You do not have permission to perform this action."


# ---------------------------------------------------------------------------
# Resource errors
# ---------------------------------------------------------------------------


class ValidationFailed(AuthError):
    """A field failed deterministic format validation (email, id_number, phone)."""

    error = "invalid_request"
    status_code = 400

    def __init__(self, field: str, description: str) -> None:
        super().__init__(description, extra={"field": field})
        self.field = field


class Conflict(AuthError):
    error = "conflict"
    status_code = 409
    description = "A user with that identity already exists."


class NotFound(AuthError):
    error = "not_found"
    status_code = 404
    description = "Resource not found."


# ---------------------------------------------------------------------------
# Two-factor state machine errors
# ---------------------------------------------------------------------------


class TwoFactorError(AuthError):
    status_code = 400


class AlreadyEnabled(TwoFactorError):
    error = "two_factor_already_enabled"
    description = "Two-factor authentication is already enabled. Disable it first to reconfigure."


class NotEnabled(TwoFactorError):
    error = "two_factor_not_enabled"
    description = "Two-factor authentication is not enabled."


class SetupNotStarted(TwoFactorError):
    error = "two_factor_setup_not_started"
    description = "Start two-factor setup first."


class InvalidCode(TwoFactorError):
    error = "invalid_code"
    description = "Invalid verification code."


class InvalidPassword(TwoFactorError):
    error = "invalid_password"
    status_code = 401
    description = "Incorrect password."
