"""
auth/bootstrap.py -- One-time creation of the first admin account.

States: Eligible -> Locked. The store is Eligible only while all of these hold:
  - the request comes from a loopback address,
  - the store contains no users at all (not just no admins),
  - nobody is a member of the admin group.
The first successful try_create() moves the store to Locked for good; there is
no reset path here.

Both guards are needed. The loopback check keeps a remote client from claiming
the admin account of a fresh deployment; the empty-database check keeps a
local client from minting a second admin on a live one.

try_create() re-evaluates the guard inside the same transaction that writes
the group, user and membership. With BEGIN IMMEDIATE on SQLite the second of
two racing callers sees the first caller's rows and gets
ALREADY_INITIALIZED_OR_NOT_LOCAL; on other backends the UNIQUE constraints
turn the same race into an IntegrityError, which maps to the same outcome.
"""

from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass
from enum import Enum

from sqlalchemy.exc import IntegrityError

from auth.models import User, UserGroup
from auth.store import StoreTransaction, UserStore
from auth.tokens import MAX_PASSWORD_BYTES, hash_password

logger = logging.getLogger("signin.auth.bootstrap")

ADMIN_USERNAME = "admin"
ADMIN_EMAIL = "admin@localhost"
ADMIN_GROUP_NAME = "Admin (System Users)"
ADMIN_GROUP_DESCRIPTION = "System User Administrator Group"


class BootstrapOutcome(str, Enum):
    created = "created"
    empty_password = "empty_password"
    password_mismatch = "password_mismatch"
    password_too_long = "password_too_long"
    already_initialized_or_not_local = "already_initialized_or_not_local"


_MESSAGES: dict[BootstrapOutcome, str] = {
    BootstrapOutcome.created: f"Admin user with username = '{ADMIN_USERNAME}' was created",
    BootstrapOutcome.empty_password: "Password cannot be empty",
    BootstrapOutcome.password_mismatch: "Passwords do not match",
    BootstrapOutcome.password_too_long: f"Password cannot be longer than {MAX_PASSWORD_BYTES} bytes",
    BootstrapOutcome.already_initialized_or_not_local: "There is already an Admin user created",
}


@dataclass(frozen=True)
class BootstrapResult:
    outcome: BootstrapOutcome
    message: str

    @property
    def ok(self) -> bool:
        return self.outcome is BootstrapOutcome.created

    @property
    def is_alert(self) -> bool:
        """True for validation errors the form should flag; False for success and the informational case."""
        return self.outcome in (
            BootstrapOutcome.empty_password,
            BootstrapOutcome.password_mismatch,
            BootstrapOutcome.password_too_long,
        )


def _result(outcome: BootstrapOutcome) -> BootstrapResult:
    return BootstrapResult(outcome=outcome, message=_MESSAGES[outcome])


def is_loopback(origin: str | None) -> bool:
    """Return True if origin is a loopback IP (v4 or v6) or the name 'localhost'."""
    if not origin:
        return False
    if origin == "localhost":
        return True
    try:
        return ipaddress.ip_address(origin).is_loopback
    except ValueError:
        return False


class AdminBootstrap:
    """Guarded creation of the well-known admin user and the admin group.

    Usage:
        bootstrap = AdminBootstrap(store)
        if bootstrap.can_create(request.client.host):
            result = bootstrap.try_create(request.client.host, password, password_repeat)
    """

    def __init__(self, store: UserStore) -> None:
        self.store = store

    def can_create(self, origin: str | None) -> bool:
        if not is_loopback(origin):
            return False
        with self.store.transaction(write=False) as tx:
            return _store_is_eligible(tx)

    def is_admin_created(self, origin: str | None) -> bool:
        return not self.can_create(origin)

    def try_create(self, origin: str | None, password: str, password_repeat: str) -> BootstrapResult:
        """Validate, then create group + user + membership in one transaction.

        First failing check wins: empty password, mismatch, over-long password
        (bcrypt takes at most 72 bytes), then the eligibility guard. Nothing is
        written unless all of them pass.
        """
        if not password:
            return _result(BootstrapOutcome.empty_password)
        if password != password_repeat:
            return _result(BootstrapOutcome.password_mismatch)
        if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
            return _result(BootstrapOutcome.password_too_long)
        if not self.can_create(origin):
            return _result(BootstrapOutcome.already_initialized_or_not_local)

        # bcrypt outside the transaction -- the write lock is held only for the inserts.
        hashed = hash_password(password)

        def _create(tx: StoreTransaction) -> bool:
            if not _store_is_eligible(tx):
                return False
            group = tx.find_group_by_name(ADMIN_GROUP_NAME)
            if group is None:
                group = tx.create_group(UserGroup(name=ADMIN_GROUP_NAME, description=ADMIN_GROUP_DESCRIPTION))
            user = tx.find_user_by_username(ADMIN_USERNAME)
            if user is None:
                user = tx.create_user(User(username=ADMIN_USERNAME, email=ADMIN_EMAIL, hashed_password=hashed))
            tx.add_member(user, group)
            return True

        try:
            created = self.store.run_transaction(_create)
        except IntegrityError:
            logger.info("Admin bootstrap lost a race with a concurrent request")
            created = False

        if not created:
            return _result(BootstrapOutcome.already_initialized_or_not_local)
        logger.info("Admin user %r created from %s", ADMIN_USERNAME, origin)
        return _result(BootstrapOutcome.created)


def _store_is_eligible(tx: StoreTransaction) -> bool:
    if tx.count_users() > 0:
        return False
    admin = tx.find_user_by_username(ADMIN_USERNAME)
    group = tx.find_group_by_name(ADMIN_GROUP_NAME)
    return not tx.is_member(admin, group)
