"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two credential sources are checked in priority order:
  1. Auth cookie ("soauthtoken" by default) -- set by the sign-in flow.
  2. Authorization: Bearer <token> header -- API clients holding the raw value.

When the cookie-renewal middleware already resolved (and rotated) the cookie
for this request, its result on request.state wins: the value in the incoming
cookie has been replaced and no longer resolves. A stale cookie does not hide
a valid Bearer header; the header is still tried.

try_get_current_token() is the soft variant (returns None on failure).
get_current_token() / get_current_user() raise HTTP 401 if unauthenticated.

Layer rule: auth/dependencies.py may import from fastapi because this module
is part of the FastAPI dependency injection system. No imports from api/.
"""

from __future__ import annotations

import logging

from fastapi import HTTPException, Request

from auth.errors import TokenNotFound
from auth.models import AuthToken, User
from auth.service import AuthService
from auth.store import UserStore
from core.config import get_settings

logger = logging.getLogger("signin.auth.dependencies")


def get_user_store(request: Request) -> UserStore:
    return request.app.state.user_store


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _bearer_token_value(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:] or None
    return None


def _candidate_token_values(request: Request) -> list[str]:
    """Token values still worth looking up, in priority order.

    Once the renewal middleware has handled the cookie, its incoming value is
    either rotated away or dead, so only the Bearer header is left to try.
    """
    values = []
    if not getattr(request.state, "auth_resolved", False):
        values.append(request.cookies.get(get_settings().auth_cookie_name))
    values.append(_bearer_token_value(request))
    return [v for v in values if v]


def _renewed_token(request: Request) -> AuthToken | None:
    if not getattr(request.state, "auth_resolved", False):
        return None
    return request.state.auth_token


def try_get_current_token(request: Request) -> AuthToken | None:
    """Return the live AuthToken for this request, or None. Never raises for bad tokens."""
    token = _renewed_token(request)
    if token is not None:
        return token
    service = get_auth_service(request)
    for value in _candidate_token_values(request):
        token = service.resolve(value)
        if token is not None:
            return token
    return None


def try_get_cookie_token(request: Request) -> AuthToken | None:
    """The live token behind the auth cookie only. The Bearer header is ignored."""
    if getattr(request.state, "auth_resolved", False):
        return request.state.auth_token
    value = request.cookies.get(get_settings().auth_cookie_name)
    if not value:
        return None
    return get_auth_service(request).resolve(value)


def get_current_token(request: Request) -> AuthToken:
    token = _renewed_token(request)
    if token is not None:
        return token
    service = get_auth_service(request)
    for value in _candidate_token_values(request):
        try:
            return service.require_token(value)
        except TokenNotFound:
            logger.debug("Rejected unknown or expired auth token")
    raise HTTPException(
        status_code=401,
        detail={"code": "unauthorized", "message": "Authentication required."},
    )


def get_current_user(request: Request) -> User:
    """Require a signed-in user. Raises HTTP 401 if the request is not authenticated."""
    token = get_current_token(request)
    user = get_auth_service(request).current_user(token)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return user
