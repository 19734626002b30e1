"""
API request and response models for PyroAlert auth endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

The token endpoint body is NOT modelled here: it accepts JSON or form data and
is validated per grant type by auth/grants.py.

2FA responses use camelCase keys (recoveryCodesRemaining, otpauthUri, ...) to
stay wire-compatible with existing dashboard clients. FastAPI serializes
response models by alias, so the Python side keeps snake_case names.
"""

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import User

RoleLiteral = Literal["admin", "operator", "viewer"]


# ---------------------------------------------------------------------------
# OAuth endpoints
# ---------------------------------------------------------------------------


class TokenTypeHintRequest(BaseModel):
    """Request body for POST /oauth/revoke and POST /oauth/introspect."""

    model_config = ConfigDict(str_strip_whitespace=True)

    token: str = Field(min_length=1, max_length=4096)
    token_type_hint: Optional[Literal["access_token", "refresh_token"]] = None


class UserSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    name: Optional[str] = None
    role: str
    two_factor_enabled: bool


class TokenResponse(BaseModel):
    """Response body for a successful POST /oauth/token."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    refresh_token: str
    scope: str
    user: Optional[UserSummary] = None


class RevokeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    message: str


class RevokeAllResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    revoked: int


class IntrospectResponse(BaseModel):
    """RFC 7662 introspection result. Inactive tokens carry only active=false."""

    model_config = ConfigDict(frozen=True)

    active: bool
    token_type: Optional[str] = None
    scope: Optional[str] = None
    client_id: Optional[str] = None
    sub: Optional[str] = None
    email: Optional[str] = None
    role: Optional[str] = None
    exp: Optional[int] = None
    iat: Optional[int] = None


# ---------------------------------------------------------------------------
# Two-factor endpoints
# ---------------------------------------------------------------------------


class TwoFactorCodeRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    code: str = Field(min_length=1, max_length=64)


class TwoFactorGatedRequest(BaseModel):
    """Body for destructive 2FA operations: a second factor plus the password."""

    code: str = Field(min_length=1, max_length=64)
    password: str = Field(min_length=1, max_length=1024)


class TwoFactorStatusResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool
    recovery_codes_remaining: int = Field(serialization_alias="recoveryCodesRemaining")


class TwoFactorSetupResponse(BaseModel):
    """The secret is returned once so users can type it in when they cannot scan."""

    model_config = ConfigDict(frozen=True)

    secret: str
    otpauth_uri: str = Field(serialization_alias="otpauthUri")
    qr_image: str = Field(serialization_alias="qrImage")


class RecoveryCodesResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    message: str
    recovery_codes: list[str] = Field(serialization_alias="recoveryCodes")


class SuccessResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    message: str


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Self-registration body. Field formats are checked by auth.credentials."""

    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=1, max_length=1024)
    name: Optional[str] = Field(default=None, max_length=255)
    id_number: Optional[str] = Field(default=None, max_length=32)
    phone: Optional[str] = Field(default=None, max_length=32)


class UserCreate(RegisterRequest):
    """Admin-created account: same fields as registration plus a role."""

    role: RoleLiteral = "viewer"


class UserPatch(BaseModel):
    role: Optional[RoleLiteral] = None
    is_active: Optional[bool] = None
    name: Optional[str] = Field(default=None, max_length=255)
    phone: Optional[str] = Field(default=None, max_length=32)


class PasswordChange(BaseModel):
    current_password: str = Field(min_length=1, max_length=1024)
    new_password: str = Field(min_length=1, max_length=1024)


class EmailChange(BaseModel):
    new_email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=1, max_length=1024)


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    name: Optional[str] = None
    role: str
    id_number: Optional[str] = None
    id_type: Optional[str] = None
    phone: Optional[str] = None
    two_factor_enabled: bool
    is_active: bool
    created_at: str
    last_login: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            role=user.role,
            id_number=user.id_number,
            id_type=user.id_type,
            phone=user.phone,
            two_factor_enabled=user.two_factor_enabled,
            is_active=user.is_active,
            created_at=user.created_at or "",
            last_login=user.last_login,
        )


class SessionResponse(BaseModel):
    """One live refresh token, as shown on the account's session list."""

    model_config = ConfigDict(frozen=True)

    id: int
    client_id: str
    scope: str
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: Optional[str] = None
    expires_at: str


# ---------------------------------------------------------------------------
# Error + health envelopes
# ---------------------------------------------------------------------------


class ErrorResponse(BaseModel):
    """Uniform error body: {"error": <code>, "error_description": <text>}.

    Some errors add fields (mfa_required/mfa_type, field); extra="allow" keeps
    them when the model is used for documentation.
    """

    model_config = ConfigDict(extra="allow")

    error: str
    error_description: str


class HealthResponse(BaseModel):
    """Response body for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    database: str = "ok"
