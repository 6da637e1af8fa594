"""
auth/errors.py -- Exception taxonomy for the auth layer.

Lookups never raise for "not found": resolve() and renew() return None and
callers treat that as "not signed in". Exceptions are reserved for callers
that asked for a hard failure (authenticate()) and for backing-store failures.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for all auth-layer errors."""


class InvalidCredentials(AuthError):
    """Wrong username or wrong password.

    The message is deliberately the same for both cases so an external caller
    cannot enumerate usernames.
    """

    def __init__(self, message: str = "Invalid username or password!") -> None:
        super().__init__(message)


class TokenNotFound(AuthError):
    """The token value is unknown, expired or already invalidated."""


class StoreUnavailable(AuthError):
    """A transaction or connection to the backing store failed.

    Fatal to the request. Not retried by the services; the transaction has
    already been rolled back when this is raised.
    """
