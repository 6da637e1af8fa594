"""
auth/tokens.py -- Password hashing, opaque token values, and the auth cookie.

Security design decisions:
  Passwords: bcrypt directly. Bcrypt is the right choice for low-entropy
       secrets (passwords) because its cost factor makes brute-force
       expensive. The _DUMMY_HASH constant enables timing equalization in
       AuthService.sign_in() so response time does not reveal whether a
       username exists.

  Auth tokens: secrets.token_urlsafe(32) gives 256 bits of entropy. The store
       keeps HMAC-SHA256(SECRET_KEY, token) so lookup is O(1) and a leaked DB
       does not hand out live credentials. bcrypt's intentional slowness is
       unnecessary here -- the token is not a low-entropy secret.

  Cookie: the client holds the raw token value in an httpOnly cookie. A
       persistent ("remember me") token sets an explicit cookie expiry; a
       session token produces a browser-session cookie. Clearing the cookie
       means re-issuing it with an expiry in the past.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt

from core.config import get_settings

if TYPE_CHECKING:
    from auth.models import AuthToken

logger = logging.getLogger("signin.auth")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton
# ---------------------------------------------------------------------------

_settings = get_settings()

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


# bcrypt's input limit. Current bcrypt releases raise ValueError past it.
MAX_PASSWORD_BYTES = 72


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Raises ValueError for passwords longer than MAX_PASSWORD_BYTES once
    UTF-8 encoded. The 72-character cap on the API models does not rule this
    out for non-ASCII input, so callers that hash user input check the byte
    length first (see AdminBootstrap.try_create).
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed hash in the DB or an over-long password on newer bcrypt.
        return False


# Timing equalization dummy hash.
# Computed once at module load so the first sign-in attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("signin_timing_dummy")


def verify_dummy_password(plain: str) -> None:
    """Burn one bcrypt check against a throwaway hash. Used for unknown usernames."""
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# Opaque token values
# ---------------------------------------------------------------------------


def generate_token_value() -> str:
    """Return a new URL-safe opaque token value (43 chars, 256 bits)."""
    return secrets.token_urlsafe(32)


def hash_token_value(value: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, value) as a hex string.

    Deterministic, so the store can look a token up by hash through its
    UNIQUE index instead of scanning rows.
    """
    return hmac.new(
        _settings.secret_key.encode(),
        value.encode(),
        hashlib.sha256,
    ).hexdigest()


# ---------------------------------------------------------------------------
# Cookie helpers -- credential propagation contract
# ---------------------------------------------------------------------------


def set_auth_cookie(response, token: AuthToken) -> None:
    """Write the token value as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST -- CSRF mitigation.
    secure: only sent over HTTPS when SECURE_COOKIES=true.
    expires: only for persistent tokens; session tokens get a session cookie.
    """
    response.set_cookie(
        _settings.auth_cookie_name,
        value=token.token_value,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        expires=token.expires_at if token.is_persistent else None,
    )


def clear_auth_cookie(response) -> None:
    """Overwrite the auth cookie with an empty value that expired yesterday."""
    response.set_cookie(
        _settings.auth_cookie_name,
        value="",
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        expires=datetime.now(timezone.utc) - timedelta(days=1),
    )


def response_sets_auth_cookie(response) -> bool:
    """Return True if the response already carries a Set-Cookie for the auth cookie."""
    prefix = f"{_settings.auth_cookie_name}="
    return any(header.startswith(prefix) for header in response.headers.getlist("set-cookie"))
