"""Unit tests for auth/store.py -- UserStore primitives, transactions and commit events.

Covers:
- exact, case-sensitive username lookup and UNIQUE username
- group membership: is_member, count, UNIQUE(user_id, group_id)
- tokens: stored as HMAC only, expiry enforced on lookup, rotate, invalidate, purge
- transactions: rollback on error, SQLAlchemy failures surface as StoreUnavailable
- commit events: emitted only after commit, failing listener does not break delivery
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, OperationalError

from auth.errors import StoreUnavailable
from auth.events import TokenEvent, TokenEventKind
from auth.models import User, UserGroup
from auth.store import UserStore
from auth.tokens import hash_token_value


def _future(**kwargs) -> datetime:
    return datetime.now(timezone.utc) + timedelta(**kwargs)


# ---------------------------------------------------------------------------
# Users and groups
# ---------------------------------------------------------------------------


class TestUsers:
    def test_find_user_by_username_is_exact(self, store: UserStore, alice: User) -> None:
        assert store.find_user_by_username("alice").id == alice.id
        assert store.find_user_by_username("Alice") is None
        assert store.find_user_by_username("alic") is None

    def test_duplicate_username_raises_integrity_error(self, store: UserStore, alice: User) -> None:
        with pytest.raises(IntegrityError):
            store.create_user(User(username="alice", hashed_password="x"))
        assert store.count_users() == 1

    def test_count_users(self, store: UserStore) -> None:
        assert store.count_users() == 0
        store.create_user(User(username="a", hashed_password="x"))
        store.create_user(User(username="b", hashed_password="x"))
        assert store.count_users() == 2


class TestGroups:
    def test_is_member_false_for_missing_user_or_group(self, store: UserStore, alice: User) -> None:
        group = store.create_group(UserGroup(name="Staff"))
        assert store.is_member(None, group) is False
        assert store.is_member(alice, None) is False
        assert store.is_member(alice, group) is False

    def test_add_member(self, store: UserStore, alice: User) -> None:
        group = store.create_group(UserGroup(name="Staff", description="All staff"))
        store.add_member(alice, group)
        assert store.is_member(alice, group) is True
        assert store.count_group_members(group) == 1
        assert store.find_group_by_name("Staff").description == "All staff"

    def test_membership_is_unique(self, store: UserStore, alice: User) -> None:
        group = store.create_group(UserGroup(name="Staff"))
        store.add_member(alice, group)
        with pytest.raises(IntegrityError):
            store.add_member(alice, group)
        assert store.count_group_members(group) == 1

    def test_group_name_is_unique(self, store: UserStore) -> None:
        store.create_group(UserGroup(name="Staff"))
        with pytest.raises(IntegrityError):
            store.create_group(UserGroup(name="Staff"))


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


class TestTokens:
    def test_raw_token_value_is_never_stored(self, store: UserStore, alice: User) -> None:
        token = store.issue_token(alice, expires_at=_future(hours=1))
        with store.engine.connect() as conn:
            stored = conn.execute(text("SELECT token_hash FROM auth_tokens")).scalar()
        assert stored == hash_token_value(token.token_value)
        assert stored != token.token_value

    def test_find_token_roundtrip(self, store: UserStore, alice: User) -> None:
        token = store.issue_token(alice, is_persistent=True, expires_at=_future(days=1))
        found = store.find_token(token.token_value)
        assert found.user_id == alice.id
        assert found.is_persistent is True
        assert found.expires_at.tzinfo is not None
        assert abs((found.expires_at - token.expires_at).total_seconds()) < 1

    def test_expired_token_is_not_found(self, store: UserStore, alice: User) -> None:
        token = store.issue_token(alice, expires_at=_future(hours=1))
        assert store.find_token(token.token_value, now=_future(hours=2)) is None

    def test_unknown_and_empty_values_are_not_found(self, store: UserStore, alice: User) -> None:
        store.issue_token(alice, expires_at=_future(hours=1))
        assert store.find_token("nope") is None
        assert store.find_token("") is None

    def test_rotate_replaces_value(self, store: UserStore, alice: User) -> None:
        token = store.issue_token(alice, expires_at=_future(hours=1))
        new_expiry = _future(days=30)
        rotated = store.run_transaction(lambda tx: tx.rotate_token(token, expires_at=new_expiry, is_persistent=True))
        assert rotated.token_value != token.token_value
        assert rotated.id == token.id
        assert store.find_token(token.token_value) is None
        assert store.find_token(rotated.token_value).is_persistent is True

    def test_invalidate_twice(self, store: UserStore, alice: User) -> None:
        token = store.issue_token(alice, expires_at=_future(hours=1))
        assert store.invalidate_token(token.token_value) is True
        assert store.invalidate_token(token.token_value) is False
        assert store.find_token(token.token_value) is None

    def test_purge_expired_tokens(self, store: UserStore, alice: User) -> None:
        live = store.issue_token(alice, expires_at=_future(hours=1))
        store.issue_token(alice, expires_at=_future(seconds=1))
        removed = store.purge_expired_tokens(now=_future(minutes=1))
        assert removed == 1
        assert store.find_token(live.token_value) is not None


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


class TestTransactions:
    def test_error_inside_transaction_rolls_back(self, store: UserStore) -> None:
        with pytest.raises(RuntimeError):
            with store.transaction() as tx:
                tx.create_user(User(username="ghost", hashed_password="x"))
                raise RuntimeError("abort")
        assert store.count_users() == 0

    def test_sqlalchemy_failure_becomes_store_unavailable(self, store: UserStore) -> None:
        with pytest.raises(StoreUnavailable):
            with store.transaction() as tx:
                tx.create_user(User(username="ghost", hashed_password="x"))
                raise OperationalError("INSERT", {}, Exception("disk I/O error"))
        assert store.count_users() == 0

    def test_run_transaction_returns_result(self, store: UserStore, alice: User) -> None:
        assert store.run_transaction(lambda tx: tx.count_users()) == 1


# ---------------------------------------------------------------------------
# Commit events
# ---------------------------------------------------------------------------


class TestCommitEvents:
    def test_events_follow_token_lifecycle(self, store: UserStore, alice: User) -> None:
        seen = []
        store.events.subscribe(seen.append)

        token = store.issue_token(alice, expires_at=_future(hours=1))
        store.run_transaction(lambda tx: tx.rotate_token(token, expires_at=_future(hours=2)))
        store.invalidate_token("never-issued")
        store.purge_expired_tokens(now=_future(days=1))

        assert [e.kind for e in seen] == [TokenEventKind.inserted, TokenEventKind.updated, TokenEventKind.deleted]
        assert all(e.user_id == alice.id for e in seen)

    def test_no_event_when_transaction_rolls_back(self, store: UserStore, alice: User) -> None:
        seen = []
        store.events.subscribe(seen.append)
        with pytest.raises(RuntimeError):
            with store.transaction() as tx:
                tx.issue_token(alice, False, _future(hours=1))
                raise RuntimeError("abort")
        assert seen == []

    def test_failing_listener_does_not_block_others(self, store: UserStore, alice: User) -> None:
        seen = []

        def broken(event: TokenEvent) -> None:
            raise ValueError("listener bug")

        store.events.subscribe(broken)
        store.events.subscribe(seen.append)
        token = store.issue_token(alice, expires_at=_future(hours=1))

        assert len(seen) == 1
        assert store.find_token(token.token_value) is not None

    def test_unsubscribe(self, store: UserStore, alice: User) -> None:
        seen = []
        store.events.subscribe(seen.append)
        store.events.unsubscribe(seen.append)
        store.issue_token(alice, expires_at=_future(hours=1))
        assert seen == []
