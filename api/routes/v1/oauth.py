"""
api/routes/v1/oauth.py -- OAuth2 token endpoints.

Routes:
  POST /oauth/token       -- password and refresh_token grants (JSON or form body)
  POST /oauth/revoke      -- revoke a refresh token (RFC 7009, always 200)
  POST /oauth/revoke-all  -- revoke every refresh token of the caller (requires auth)
  POST /oauth/introspect  -- token introspection (RFC 7662)

Security:
  POST /oauth/token is rate-limited per IP (LOGIN_RATE_LIMIT).
  Cache-Control: no-store on every token response, success or error.
  Grant semantics and error mapping live in auth/grants.py; this module only
  adapts HTTP to GrantHandler.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from api.limiter import limiter
from api.models import IntrospectResponse, RevokeAllResponse, RevokeResponse, TokenResponse, TokenTypeHintRequest
from auth.dependencies import Principal, get_principal
from auth.errors import AuthError, InvalidRequest
from auth.grants import GrantHandler
from core.config import get_settings

_FORM_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")

# Auth policy:
# - POST /oauth/token:       public -- this is where credentials are exchanged
# - POST /oauth/revoke:      public -- possession of the refresh token is the authorization
# - POST /oauth/introspect:  public -- returns {"active": false} for anything invalid
# - POST /oauth/revoke-all:  requires a valid access token (get_principal)
router = APIRouter()


def _request_metadata(request: Request) -> dict[str, Any]:
    return {
        "user_agent": request.headers.get("user-agent"),
        "ip_address": request.client.host if request.client else None,
    }


async def _read_body(request: Request) -> dict[str, Any]:
    """Return the token request parameters from a JSON or form-encoded body."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith(_FORM_TYPES):
        form = await request.form()
        return {key: value for key, value in form.items() if isinstance(value, str)}
    try:
        body = await request.json()
    except ValueError as exc:
        raise InvalidRequest("Request body must be JSON or form-encoded.") from exc
    if not isinstance(body, dict):
        raise InvalidRequest("Request body must be an object.")
    return body


@limiter.limit(get_settings().login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post(
    "/oauth/token",
    response_model=TokenResponse,
    responses={400: {"description": "invalid_request / mfa_required"}, 401: {"description": "invalid_grant"}},
)
async def token(request: Request) -> JSONResponse:
    """Exchange credentials or a refresh token for an access/refresh pair.

    With 2FA enabled and no totp_code in the body, the response is
    400 mfa_required with mfa_required=true; resubmit with totp_code.
    """
    handler: GrantHandler = request.app.state.grant_handler
    try:
        body = await _read_body(request)
        # bcrypt and SQLite are blocking; keep them off the event loop.
        result = await run_in_threadpool(handler.grant, body, _request_metadata(request))
    except AuthError as exc:
        resp = JSONResponse(status_code=exc.status_code, content=exc.to_dict())
        resp.headers["Cache-Control"] = "no-store"
        resp.headers["Pragma"] = "no-cache"
        return resp

    resp = JSONResponse(status_code=200, content=result.to_dict())
    resp.headers["Cache-Control"] = "no-store"
    resp.headers["Pragma"] = "no-cache"
    return resp


@router.post("/oauth/revoke", response_model=RevokeResponse)
def revoke(request: Request, body: TokenTypeHintRequest) -> RevokeResponse:
    """Revoke a refresh token. Unknown or already-revoked tokens still return 200."""
    handler: GrantHandler = request.app.state.grant_handler
    handler.revoke(body.token, body.token_type_hint)
    return RevokeResponse(message="Token revoked.")


@router.post("/oauth/revoke-all", response_model=RevokeAllResponse)
def revoke_all(request: Request, principal: Principal = Depends(get_principal)) -> RevokeAllResponse:
    """Log out everywhere: revoke every refresh token of the calling account.

    Outstanding access tokens stay valid until they expire (ACCESS_TOKEN_EXPIRE_SECONDS).
    """
    handler: GrantHandler = request.app.state.grant_handler
    return RevokeAllResponse(revoked=handler.revoke_all(principal.user_id))


@router.post("/oauth/introspect", response_model=IntrospectResponse, response_model_exclude_none=True)
def introspect(request: Request, body: TokenTypeHintRequest) -> IntrospectResponse:
    handler: GrantHandler = request.app.state.grant_handler
    return IntrospectResponse(**handler.introspect(body.token, body.token_type_hint))
