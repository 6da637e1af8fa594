"""
auth/service.py -- Sign-in, sign-out and auth-token renewal.

AuthService is constructed with an explicit UserStore and Settings. It holds
no mutable state of its own; every state change is one store transaction, so
a renewal is never observed as "rotated but not re-expired" or the reverse.

Credential propagation is the caller's job: after sign_in(), renew() or
mark_remember_me() the caller sets the auth cookie from the returned token
(see auth.tokens.set_auth_cookie); after sign_out() it clears it.

Sign-in hardening: the username lookup is always followed by a bcrypt check
(against a dummy hash when the user does not exist), and both failure cases
produce the same result. Response time and payload do not reveal whether a
username exists.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from auth.errors import InvalidCredentials, TokenNotFound
from auth.models import AuthToken, User
from auth.store import StoreTransaction, UserStore
from auth.tokens import verify_dummy_password, verify_password
from core.config import Settings, get_settings

logger = logging.getLogger("signin.auth.service")

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuthService:
    def __init__(self, store: UserStore, settings: Settings | None = None, clock: Clock = _utcnow) -> None:
        self.store = store
        self.settings = settings or get_settings()
        self._clock = clock

    # ------------------------------------------------------------------
    # Sign in / sign out
    # ------------------------------------------------------------------

    def sign_in(self, username: str, password: str) -> AuthToken | None:
        """Verify credentials and issue a session token. None on any failure."""
        user = self.store.find_user_by_username(username)
        if user is None:
            # Equalize timing -- do NOT return before running bcrypt.
            verify_dummy_password(password)
            logger.warning("Sign-in failed")
            return None
        if not verify_password(password, user.hashed_password):
            logger.warning("Sign-in failed")
            return None

        expires_at = self._clock() + timedelta(seconds=self.settings.session_token_seconds)
        token = self.store.issue_token(user, is_persistent=False, expires_at=expires_at)
        logger.info("User %r signed in", user.username)
        return token

    def authenticate(self, username: str, password: str) -> AuthToken:
        """sign_in() for callers that want an exception instead of None."""
        token = self.sign_in(username, password)
        if token is None:
            raise InvalidCredentials()
        return token

    def sign_out(self, token: AuthToken | str) -> None:
        """Invalidate the token. Signing out an unknown token is a no-op."""
        value = token.token_value if isinstance(token, AuthToken) else token
        if self.store.invalidate_token(value):
            logger.info("Auth token signed out")
        else:
            logger.debug("Sign-out for unknown or already invalidated token")

    # ------------------------------------------------------------------
    # Token lifecycle
    # ------------------------------------------------------------------

    def resolve(self, token_value: str) -> AuthToken | None:
        """Return the live token for this value, or None if unknown or expired."""
        if not token_value:
            return None
        return self.store.find_token(token_value, now=self._clock())

    def require_token(self, token_value: str) -> AuthToken:
        """resolve() for callers that want an exception instead of None."""
        token = self.resolve(token_value)
        if token is None:
            raise TokenNotFound("Unknown or expired auth token.")
        return token

    def renew(
        self,
        token: AuthToken,
        extend_persistent: bool = False,
        remember_me_days: int | None = None,
    ) -> AuthToken | None:
        """Rotate the token value and refresh its expiry atomically.

        Persistent tokens (or any token when extend_persistent is set) get
        expires_at = now + remember_me_days and become persistent. Session
        tokens get a fresh session lifetime. Returns None if the token is no
        longer valid; the old value never resolves again after success.
        """
        days = remember_me_days if remember_me_days is not None else self.settings.remember_me_days

        def _renew(tx: StoreTransaction) -> AuthToken | None:
            now = self._clock()
            current = tx.find_token(token.token_value, now=now)
            if current is None:
                return None
            persistent = current.is_persistent or extend_persistent
            if persistent:
                expires_at = now + timedelta(days=days)
            else:
                expires_at = now + timedelta(seconds=self.settings.session_token_seconds)
            return tx.rotate_token(current, expires_at=expires_at, is_persistent=persistent)

        renewed = self.store.run_transaction(_renew)
        if renewed is None:
            logger.debug("Renewal skipped: token no longer valid")
        return renewed

    def mark_remember_me(self, token: AuthToken, remember_me_days: int | None = None) -> AuthToken | None:
        """Make the token persistent with expires_at = now + remember_me_days."""
        days = remember_me_days if remember_me_days is not None else self.settings.remember_me_days

        def _mark(tx: StoreTransaction) -> AuthToken | None:
            now = self._clock()
            current = tx.find_token(token.token_value, now=now)
            if current is None:
                return None
            return tx.update_token_expiry(current, is_persistent=True, expires_at=now + timedelta(days=days))

        return self.store.run_transaction(_mark)

    def current_user(self, token: AuthToken | None) -> User | None:
        if token is None:
            return None
        return self.store.get_user(token.user_id)

    def purge_expired_tokens(self) -> int:
        removed = self.store.purge_expired_tokens(now=self._clock())
        if removed:
            logger.info("Purged %d expired auth tokens", removed)
        return removed
