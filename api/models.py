"""
API request and response models for the sign-in REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class SignInRequest(BaseModel):
    """Request body for POST /api/v1/signin.

    Passwords are capped at 72 characters. bcrypt counts bytes, so non-ASCII
    input can still exceed its limit; verify_password treats that as a mismatch.
    """

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(max_length=72)
    remember_me: bool = False


class AdminBootstrapRequest(BaseModel):
    """Request body for POST /api/v1/signin/generateadminuser.

    Both fields default to "" so an empty password reaches the bootstrap's
    own validation (and its message) instead of a generic 422.
    The 72-character cap is coarse; the 72-byte bcrypt limit is checked by
    the bootstrap itself.
    """

    password: str = Field(default="", max_length=72)
    password_repeat: str = Field(default="", max_length=72)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class SignInResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    username: str
    is_persistent: bool
    expires_at: Optional[datetime] = None


class SignInStateResponse(BaseModel):
    """Response for GET /api/v1/signin/user."""

    model_config = ConfigDict(frozen=True)

    signed_in: bool
    username: Optional[str] = None
    is_persistent: bool = False


class AdminStatusResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    can_create: bool


class AdminBootstrapResponse(BaseModel):
    """Outcome of an admin bootstrap attempt.

    is_alert is False for success and for the informational
    "already initialized" outcome, so the UI can render those non-destructively.
    """

    model_config = ConfigDict(frozen=True)

    outcome: str
    message: str
    is_alert: bool


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
