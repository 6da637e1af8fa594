"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. UserStore is the repository;
StoreTransaction is the unit of work handed to callers that need several
reads and writes to land atomically; the _row_to_* functions are the mappers.
Service and route code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Auth tokens are stored as HMAC-SHA256(SECRET_KEY, value). The raw value only
  exists in the AuthToken returned to the caller that issued, rotated or
  looked it up.

Transactions:
  UserStore.transaction() yields a StoreTransaction bound to one connection and
  commits when the block exits cleanly. On SQLite, write transactions start
  with BEGIN IMMEDIATE so the write lock is taken before the first read --
  two callers that both check-then-insert are serialized instead of both
  passing the check. Other backends rely on their isolation level plus the
  UNIQUE constraints below.

  IntegrityError propagates unchanged (callers treat it as "someone else got
  there first"). Every other SQLAlchemyError becomes StoreUnavailable.

Commit events:
  Token inserts, updates and deletes are queued on the transaction and handed
  to UserStore.events only after commit.

DB path: auth/signin_auth.db by default.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import TypeVar

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import StoreUnavailable
from auth.events import CommitEvents, TokenEvent, TokenEventKind
from auth.models import AuthToken, GroupMembership, User, UserGroup
from auth.tokens import generate_token_value, hash_token_value

logger = logging.getLogger("signin.auth.store")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'signin_auth.db'}"

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("email", String(255), nullable=False, server_default=""),
    Column("hashed_password", Text, nullable=False),
    Column("created_at", String(32), nullable=False),
)

_user_groups = Table(
    "user_groups",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False, unique=True),
    Column("description", Text, nullable=False, server_default=""),
    Column("created_at", String(32), nullable=False),
)

_group_members = Table(
    "group_members",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("group_id", Integer, ForeignKey("user_groups.id", ondelete="CASCADE"), nullable=False),
    Column("created_at", String(32), nullable=False),
    # A user is in a given group at most once.
    UniqueConstraint("user_id", "group_id", name="uq_group_members_user_group"),
)

_auth_tokens = Table(
    "auth_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("is_persistent", Integer, nullable=False, server_default="0"),
    Column("expires_at", DateTime),  # naive UTC
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_db_time(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _from_db_time(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Unit of work
# ---------------------------------------------------------------------------


class StoreTransaction:
    """Lookup and mutation primitives bound to one open transaction.

    Obtain one through UserStore.transaction() or UserStore.run_transaction();
    never construct directly.
    """

    def __init__(self, conn: Connection) -> None:
        self.conn = conn
        self.pending_events: list[TokenEvent] = []

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def find_user_by_username(self, username: str) -> User | None:
        row = self.conn.execute(_users.select().where(_users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user(self, user_id: int) -> User | None:
        row = self.conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def count_users(self) -> int:
        return self.conn.execute(select(func.count()).select_from(_users)).scalar() or 0

    def create_user(self, user: User) -> User:
        """Insert a user. Raises IntegrityError if the username is taken."""
        created_at = _now_iso()
        result = self.conn.execute(
            _users.insert().values(
                username=user.username,
                email=user.email,
                hashed_password=user.hashed_password,
                created_at=created_at,
            )
        )
        return User(
            id=result.inserted_primary_key[0],
            username=user.username,
            email=user.email,
            hashed_password=user.hashed_password,
            created_at=created_at,
        )

    # ------------------------------------------------------------------
    # Groups and membership
    # ------------------------------------------------------------------

    def find_group_by_name(self, name: str) -> UserGroup | None:
        row = self.conn.execute(_user_groups.select().where(_user_groups.c.name == name)).fetchone()
        return _row_to_group(row) if row is not None else None

    def create_group(self, group: UserGroup) -> UserGroup:
        created_at = _now_iso()
        result = self.conn.execute(
            _user_groups.insert().values(name=group.name, description=group.description, created_at=created_at)
        )
        return UserGroup(
            id=result.inserted_primary_key[0],
            name=group.name,
            description=group.description,
            created_at=created_at,
        )

    def is_member(self, user: User | None, group: UserGroup | None) -> bool:
        if user is None or group is None:
            return False
        row = self.conn.execute(
            select(_group_members.c.id).where(
                (_group_members.c.user_id == user.id) & (_group_members.c.group_id == group.id)
            )
        ).fetchone()
        return row is not None

    def count_group_members(self, group: UserGroup | None) -> int:
        if group is None:
            return 0
        return (
            self.conn.execute(
                select(func.count()).select_from(_group_members).where(_group_members.c.group_id == group.id)
            ).scalar()
            or 0
        )

    def add_member(self, user: User, group: UserGroup) -> GroupMembership:
        """Link user to group. Raises IntegrityError if already linked."""
        created_at = _now_iso()
        result = self.conn.execute(
            _group_members.insert().values(user_id=user.id, group_id=group.id, created_at=created_at)
        )
        return GroupMembership(
            id=result.inserted_primary_key[0],
            user_id=user.id,
            group_id=group.id,
            created_at=created_at,
        )

    # ------------------------------------------------------------------
    # Auth tokens
    # ------------------------------------------------------------------

    def issue_token(self, user: User, is_persistent: bool, expires_at: datetime | None) -> AuthToken:
        """Create a new token for user and return it with its raw value."""
        value = generate_token_value()
        created_at = _now_iso()
        result = self.conn.execute(
            _auth_tokens.insert().values(
                token_hash=hash_token_value(value),
                user_id=user.id,
                is_persistent=1 if is_persistent else 0,
                expires_at=_to_db_time(expires_at),
                created_at=created_at,
            )
        )
        token_id = result.inserted_primary_key[0]
        self.pending_events.append(TokenEvent(TokenEventKind.inserted, user.id, token_id))
        return AuthToken(
            id=token_id,
            token_value=value,
            user_id=user.id,
            is_persistent=is_persistent,
            expires_at=expires_at,
            created_at=created_at,
        )

    def find_token(self, value: str, now: datetime | None = None) -> AuthToken | None:
        """Look up a token by raw value. Expired tokens are reported as absent."""
        if not value:
            return None
        row = self.conn.execute(
            _auth_tokens.select().where(_auth_tokens.c.token_hash == hash_token_value(value))
        ).fetchone()
        if row is None:
            return None
        token = _row_to_token(row, value)
        if token.expires_at is not None and token.expires_at <= (now or _utcnow()):
            return None
        return token

    def rotate_token(
        self,
        token: AuthToken,
        expires_at: datetime | None,
        is_persistent: bool | None = None,
    ) -> AuthToken | None:
        """Replace the token's value and expiry in one UPDATE.

        Returns None if the token row no longer exists.
        """
        persistent = token.is_persistent if is_persistent is None else is_persistent
        value = generate_token_value()
        result = self.conn.execute(
            _auth_tokens.update()
            .where(_auth_tokens.c.id == token.id)
            .values(
                token_hash=hash_token_value(value),
                is_persistent=1 if persistent else 0,
                expires_at=_to_db_time(expires_at),
            )
        )
        if result.rowcount == 0:
            return None
        self.pending_events.append(TokenEvent(TokenEventKind.updated, token.user_id, token.id))
        return AuthToken(
            id=token.id,
            token_value=value,
            user_id=token.user_id,
            is_persistent=persistent,
            expires_at=expires_at,
            created_at=token.created_at,
        )

    def update_token_expiry(
        self,
        token: AuthToken,
        is_persistent: bool,
        expires_at: datetime | None,
    ) -> AuthToken | None:
        """Change persistence and expiry without touching the value."""
        result = self.conn.execute(
            _auth_tokens.update()
            .where(_auth_tokens.c.id == token.id)
            .values(is_persistent=1 if is_persistent else 0, expires_at=_to_db_time(expires_at))
        )
        if result.rowcount == 0:
            return None
        self.pending_events.append(TokenEvent(TokenEventKind.updated, token.user_id, token.id))
        return AuthToken(
            id=token.id,
            token_value=token.token_value,
            user_id=token.user_id,
            is_persistent=is_persistent,
            expires_at=expires_at,
            created_at=token.created_at,
        )

    def invalidate_token(self, value: str) -> bool:
        """Delete the token with this raw value. Returns False if there was none."""
        if not value:
            return False
        token_hash = hash_token_value(value)
        row = self.conn.execute(
            select(_auth_tokens.c.id, _auth_tokens.c.user_id).where(_auth_tokens.c.token_hash == token_hash)
        ).fetchone()
        if row is None:
            return False
        self.conn.execute(_auth_tokens.delete().where(_auth_tokens.c.id == row.id))
        self.pending_events.append(TokenEvent(TokenEventKind.deleted, row.user_id, row.id))
        return True

    def purge_expired_tokens(self, now: datetime | None = None) -> int:
        cutoff = _to_db_time(now or _utcnow())
        rows = self.conn.execute(
            select(_auth_tokens.c.id, _auth_tokens.c.user_id).where(_auth_tokens.c.expires_at <= cutoff)
        ).fetchall()
        if not rows:
            return 0
        self.conn.execute(_auth_tokens.delete().where(_auth_tokens.c.id.in_([r.id for r in rows])))
        for r in rows:
            self.pending_events.append(TokenEvent(TokenEventKind.deleted, r.user_id, r.id))
        return len(rows)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User, UserGroup, GroupMembership and AuthToken entities.

    Usage:
        store = UserStore()
        user = store.create_user(User(username="alice", hashed_password=hash_password("secret")))
        token = store.run_transaction(lambda tx: tx.issue_token(user, False, None))
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL, events: CommitEvents | None = None) -> None:
        connect_args: dict = {}
        self._is_sqlite = db_url.startswith("sqlite")
        if self._is_sqlite:
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if self._is_sqlite:
            event.listen(self.engine, "connect", _set_wal_mode)
        self.events = events or CommitEvents()
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self, write: bool = True) -> Iterator[StoreTransaction]:
        """Yield a StoreTransaction; commit on clean exit, roll back on error.

        Raises StoreUnavailable for any SQLAlchemy failure other than
        IntegrityError, which propagates as-is.
        """
        try:
            with self.engine.connect() as conn:
                if write and self._is_sqlite:
                    conn.exec_driver_sql("BEGIN IMMEDIATE")
                tx = StoreTransaction(conn)
                yield tx
                conn.commit()
        except IntegrityError:
            raise
        except SQLAlchemyError as exc:
            logger.error("Auth store transaction failed: %s", exc)
            raise StoreUnavailable("The user store is unavailable.") from exc
        for ev in tx.pending_events:
            self.events.emit(ev)

    def run_transaction(self, fn: Callable[[StoreTransaction], T]) -> T:
        """Run fn(tx) atomically and return its result."""
        with self.transaction() as tx:
            return fn(tx)

    # ------------------------------------------------------------------
    # Read-only convenience wrappers
    # ------------------------------------------------------------------

    def find_user_by_username(self, username: str) -> User | None:
        """Look up a user by exact username (case-sensitive). Returns None if not found."""
        with self.transaction(write=False) as tx:
            return tx.find_user_by_username(username)

    def get_user(self, user_id: int) -> User | None:
        with self.transaction(write=False) as tx:
            return tx.get_user(user_id)

    def find_group_by_name(self, name: str) -> UserGroup | None:
        with self.transaction(write=False) as tx:
            return tx.find_group_by_name(name)

    def is_member(self, user: User | None, group: UserGroup | None) -> bool:
        with self.transaction(write=False) as tx:
            return tx.is_member(user, group)

    def count_users(self) -> int:
        """Return the number of user records. Used by the admin bootstrap guard."""
        with self.transaction(write=False) as tx:
            return tx.count_users()

    def count_group_members(self, group: UserGroup | None) -> int:
        with self.transaction(write=False) as tx:
            return tx.count_group_members(group)

    def find_token(self, value: str, now: datetime | None = None) -> AuthToken | None:
        with self.transaction(write=False) as tx:
            return tx.find_token(value, now=now)

    # ------------------------------------------------------------------
    # Single-statement writes
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> User:
        """Insert a user. Raises sqlalchemy.exc.IntegrityError if the username exists."""
        with self.transaction() as tx:
            return tx.create_user(user)

    def create_group(self, group: UserGroup) -> UserGroup:
        with self.transaction() as tx:
            return tx.create_group(group)

    def add_member(self, user: User, group: UserGroup) -> GroupMembership:
        with self.transaction() as tx:
            return tx.add_member(user, group)

    def issue_token(self, user: User, is_persistent: bool = False, expires_at: datetime | None = None) -> AuthToken:
        with self.transaction() as tx:
            return tx.issue_token(user, is_persistent, expires_at)

    def invalidate_token(self, value: str) -> bool:
        with self.transaction() as tx:
            return tx.invalidate_token(value)

    def purge_expired_tokens(self, now: datetime | None = None) -> int:
        """Delete every token whose expiry has passed. Returns the number removed."""
        with self.transaction() as tx:
            return tx.purge_expired_tokens(now=now)

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        hashed_password=row.hashed_password,
        created_at=row.created_at,
    )


def _row_to_group(row) -> UserGroup:
    return UserGroup(
        id=row.id,
        name=row.name,
        description=row.description,
        created_at=row.created_at,
    )


def _row_to_token(row, value: str) -> AuthToken:
    return AuthToken(
        id=row.id,
        token_value=value,
        user_id=row.user_id,
        is_persistent=bool(row.is_persistent),
        expires_at=_from_db_time(row.expires_at),
        created_at=row.created_at,
    )
