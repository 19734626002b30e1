"""
api/routes/v1/two_factor.py -- TOTP two-factor management endpoints.

Routes (all require a valid access token):
  GET  /api/v1/2fa/status          -- {enabled, recoveryCodesRemaining}
  POST /api/v1/2fa/setup           -- start (or restart) setup; returns secret + QR
  POST /api/v1/2fa/verify          -- confirm setup with a code; returns recovery codes once
  POST /api/v1/2fa/disable         -- requires password + code
  POST /api/v1/2fa/recovery-codes  -- regenerate batch; requires password + code

Handlers are sync: FastAPI runs them in its threadpool, which keeps bcrypt
and SQLite off the event loop. State rules live in auth/totp.py.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from api.models import (
    RecoveryCodesResponse,
    SuccessResponse,
    TwoFactorCodeRequest,
    TwoFactorGatedRequest,
    TwoFactorSetupResponse,
    TwoFactorStatusResponse,
)
from auth.dependencies import get_current_user
from auth.models import User
from auth.totp import TwoFactorEngine

router = APIRouter()


def _engine(request: Request) -> TwoFactorEngine:
    return request.app.state.two_factor


@router.get("/2fa/status", response_model=TwoFactorStatusResponse)
def status(request: Request, current_user: User = Depends(get_current_user)) -> TwoFactorStatusResponse:
    result = _engine(request).status(current_user)
    return TwoFactorStatusResponse(enabled=result.enabled, recovery_codes_remaining=result.recovery_codes_remaining)


@router.post("/2fa/setup", response_model=TwoFactorSetupResponse)
def setup(
    request: Request,
    response: Response,
    current_user: User = Depends(get_current_user),
) -> TwoFactorSetupResponse:
    """Generate a pending secret. Calling again before /verify replaces it."""
    result = _engine(request).begin_setup(current_user)
    response.headers["Cache-Control"] = "no-store"
    return TwoFactorSetupResponse(secret=result.secret, otpauth_uri=result.otpauth_uri, qr_image=result.qr_image)


@router.post("/2fa/verify", response_model=RecoveryCodesResponse)
def verify(
    request: Request,
    response: Response,
    body: TwoFactorCodeRequest,
    current_user: User = Depends(get_current_user),
) -> RecoveryCodesResponse:
    codes = _engine(request).confirm_setup(current_user, body.code)
    response.headers["Cache-Control"] = "no-store"
    return RecoveryCodesResponse(
        message="Two-factor authentication enabled. Store these recovery codes safely; they are shown only once.",
        recovery_codes=codes,
    )


@router.post("/2fa/disable", response_model=SuccessResponse)
def disable(
    request: Request,
    body: TwoFactorGatedRequest,
    current_user: User = Depends(get_current_user),
) -> SuccessResponse:
    _engine(request).disable(current_user, body.code, body.password)
    return SuccessResponse(message="Two-factor authentication disabled.")


@router.post("/2fa/recovery-codes", response_model=RecoveryCodesResponse)
def regenerate_recovery_codes(
    request: Request,
    response: Response,
    body: TwoFactorGatedRequest,
    current_user: User = Depends(get_current_user),
) -> RecoveryCodesResponse:
    """Replace every recovery code. Codes from the previous batch stop working."""
    codes = _engine(request).regenerate_recovery_codes(current_user, body.code, body.password)
    response.headers["Cache-Control"] = "no-store"
    return RecoveryCodesResponse(message="New recovery codes generated.", recovery_codes=codes)
