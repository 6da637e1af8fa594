"""
api/routes/v1/auth.py -- Sign-in, sign-out and admin bootstrap REST endpoints.

Routes:
  POST /api/v1/signin                      -- password sign-in; sets auth cookie
  POST /api/v1/signout                     -- invalidates token; clears cookie
  GET  /api/v1/signin/user                 -- current sign-in state (public)
  GET  /api/v1/signin/me                   -- signed-in user (requires auth)
  GET  /api/v1/signin/admin                -- can the caller bootstrap the admin?
  POST /api/v1/signin/generateadminuser    -- one-time admin bootstrap (loopback only)

Security:
  POST /signin is rate-limited per IP (SIGNIN_RATE_LIMIT).
  Wrong username and wrong password produce the same 401 body.
  Cache-Control: no-store on sign-in responses.
  generateadminuser rejects non-loopback clients with 403 before an
  AdminBootstrap is constructed; the bootstrap then applies its own guard.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from api.limiter import limiter, signin_rate_limit
from api.models import (
    AdminBootstrapRequest,
    AdminBootstrapResponse,
    AdminStatusResponse,
    MessageResponse,
    SignInRequest,
    SignInResponse,
    SignInStateResponse,
)
from auth.bootstrap import AdminBootstrap, BootstrapOutcome, is_loopback
from auth.dependencies import (
    get_auth_service,
    get_current_user,
    get_user_store,
    try_get_cookie_token,
    try_get_current_token,
)
from auth.models import User
from auth.tokens import clear_auth_cookie, set_auth_cookie

logger = logging.getLogger("signin.api.auth")

# Auth policy:
# - POST /api/v1/signin:                      public
# - POST /api/v1/signout:                     public -- clearing a cookie needs no prior auth
# - GET  /api/v1/signin/user:                 public -- reports signed_in=false when anonymous
# - GET  /api/v1/signin/me:                   requires auth (get_current_user)
# - GET  /api/v1/signin/admin:                public
# - POST /api/v1/signin/generateadminuser:    loopback clients only
router = APIRouter()


def _client_origin(request: Request) -> str | None:
    return request.client.host if request.client else None


# ---------------------------------------------------------------------------
# Sign in / sign out
# ---------------------------------------------------------------------------


@router.post("/signin", response_model=SignInResponse)
@limiter.limit(signin_rate_limit)
def sign_in(request: Request, body: SignInRequest) -> JSONResponse:
    """Sign in with username and password; set the auth cookie.

    remember_me=true makes the token persistent, so the cookie carries an
    explicit expiry REMEMBER_ME_DAYS out instead of ending with the browser
    session. A session the request already carried is signed out.
    """
    service = get_auth_service(request)
    token = service.sign_in(body.username, body.password)
    if token is None:
        resp = JSONResponse(
            status_code=401,
            content={"error": {"code": "bad_credentials", "message": "Invalid username or password!"}},
        )
        resp.headers["Cache-Control"] = "no-store"
        return resp

    # The new cookie replaces the old one, so the token it carried (already
    # rotated by the renewal middleware) would be unreachable but live.
    previous = try_get_cookie_token(request)
    if previous is not None:
        service.sign_out(previous)

    if body.remember_me:
        token = service.mark_remember_me(token) or token

    resp = JSONResponse(
        status_code=200,
        content=SignInResponse(
            username=body.username,
            is_persistent=token.is_persistent,
            expires_at=token.expires_at if token.is_persistent else None,
        ).model_dump(mode="json"),
    )
    set_auth_cookie(resp, token)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/signout", response_model=MessageResponse)
def sign_out(request: Request) -> JSONResponse:
    """Invalidate the current token (if any) and clear the auth cookie."""
    token = try_get_current_token(request)
    if token is not None:
        get_auth_service(request).sign_out(token)
    resp = JSONResponse(content=MessageResponse(message="Signed out.").model_dump())
    clear_auth_cookie(resp)
    return resp


@router.get("/signin/user", response_model=SignInStateResponse)
def sign_in_state(request: Request) -> SignInStateResponse:
    """Report whether the request carries a live token, and for whom."""
    token = try_get_current_token(request)
    user = get_auth_service(request).current_user(token)
    if token is None or user is None:
        return SignInStateResponse(signed_in=False)
    return SignInStateResponse(signed_in=True, username=user.username, is_persistent=token.is_persistent)


@router.get("/signin/me", response_model=SignInStateResponse)
async def me(current_user: User = Depends(get_current_user)) -> SignInStateResponse:
    return SignInStateResponse(signed_in=True, username=current_user.username)


# ---------------------------------------------------------------------------
# Admin bootstrap
# ---------------------------------------------------------------------------


@router.get("/signin/admin", response_model=AdminStatusResponse)
def admin_status(request: Request) -> AdminStatusResponse:
    """Tell the setup page whether to offer the "create admin" form."""
    bootstrap = AdminBootstrap(get_user_store(request))
    return AdminStatusResponse(can_create=bootstrap.can_create(_client_origin(request)))


@router.post("/signin/generateadminuser", response_model=AdminBootstrapResponse)
async def generate_admin_user(request: Request, body: AdminBootstrapRequest) -> JSONResponse:
    """Create the first admin account from a loopback client.

    201 on creation, 422 for an empty, mismatched or over-long password,
    200 with is_alert=false when the store is already initialized.
    """
    origin = _client_origin(request)
    if not is_loopback(origin):
        logger.warning("Admin bootstrap refused for non-loopback client %s", origin)
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Access denied."},
        )

    bootstrap = AdminBootstrap(get_user_store(request))
    result = await run_in_threadpool(bootstrap.try_create, origin, body.password, body.password_repeat)

    if result.outcome is BootstrapOutcome.created:
        status_code = 201
    elif result.is_alert:
        status_code = 422
    else:
        status_code = 200
    return JSONResponse(
        status_code=status_code,
        content=AdminBootstrapResponse(
            outcome=result.outcome.value,
            message=result.message,
            is_alert=result.is_alert,
        ).model_dump(),
    )
