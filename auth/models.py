"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; the store and the services do the work.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass
class User:
    """A registered identity.

    username is unique and case-sensitive. Identity is immutable once created;
    hashed_password only changes through an explicit password change.
    """

    username: str
    hashed_password: str
    email: str = ""
    id: int | None = None
    created_at: str | None = None


@dataclass
class UserGroup:
    """A named group of users. Only the admin group is ever created here."""

    name: str
    description: str = ""
    id: int | None = None
    created_at: str | None = None


@dataclass
class GroupMembership:
    """Association of one user with one group. UNIQUE(user_id, group_id) in the schema."""

    user_id: int
    group_id: int
    id: int | None = None
    created_at: str | None = None


@dataclass
class AuthToken:
    """An opaque credential bound to a signed-in user.

    token_value is the raw value handed to the client. The store only keeps
    an HMAC of it, so a token loaded from the DB always comes from a lookup
    by value, an issue, or a rotation -- never from a table scan.

    is_persistent=False means a session-lifetime token: expires_at is still
    set (the store enforces it) but it is not sent to the client as a cookie
    expiry. expires_at is a timezone-aware UTC datetime.
    """

    token_value: str
    user_id: int
    is_persistent: bool = False
    expires_at: datetime | None = None
    id: int | None = None
    created_at: str | None = None
