"""
tests/test_store.py -- Unit tests for auth/store.py (UserStore).

Uses an isolated in-memory SQLite database per test via the store fixture.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from auth.models import OtpPurpose, OtpSlot, RefreshTokenRecord, User


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _record(user_id: int, token_hash: str, *, ttl: timedelta = timedelta(days=7)) -> RefreshTokenRecord:
    return RefreshTokenRecord(user_id=user_id, token_hash=token_hash, expires_at=_now() + ttl)


class TestUsers:
    def test_create_and_fetch(self, store) -> None:
        uid = store.create_user(User(email="Alice@Example.com", name="Alice", hashed_password="h"))
        user = store.get_by_id(uid)
        assert user.email == "alice@example.com"
        assert user.is_verified is False
        assert user.created_at
        assert user.verification is None and user.reset is None

    def test_email_lookup_is_case_insensitive(self, store) -> None:
        store.create_user(User(email="bob@example.com", name="Bob", hashed_password="h"))
        assert store.get_by_email("  BOB@example.COM ") is not None

    def test_duplicate_email_raises(self, store) -> None:
        store.create_user(User(email="dup@example.com", name="One", hashed_password="h"))
        with pytest.raises(IntegrityError):
            store.create_user(User(email="DUP@example.com", name="Two", hashed_password="h"))

    def test_unknown_lookups_return_none(self, store) -> None:
        assert store.get_by_email("nobody@example.com") is None
        assert store.get_by_id(9999) is None

    def test_update_user_name(self, store) -> None:
        uid = store.create_user(User(email="upd@example.com", name="Old", hashed_password="h"))
        assert store.update_user(uid, name="New") is True
        assert store.get_by_id(uid).name == "New"
        assert store.update_user(9999, name="Ghost") is False

    def test_update_user_rejects_unknown_fields(self, store) -> None:
        uid = store.create_user(User(email="bad@example.com", name="Bad", hashed_password="h"))
        with pytest.raises(ValueError):
            store.update_user(uid, hashed_password="nope")


class TestOtpSlots:
    def test_slot_round_trip(self, store) -> None:
        uid = store.create_user(User(email="slot@example.com", name="Slot", hashed_password="h"))
        expires = _now() + timedelta(minutes=10)
        store.set_otp_slot(uid, OtpPurpose.RESET, OtpSlot("hash-r", expires))
        user = store.get_by_id(uid)
        assert user.reset == OtpSlot("hash-r", expires)
        assert user.verification is None

    def test_mark_verified_is_compare_and_set(self, store) -> None:
        slot = OtpSlot("hash-v", _now() + timedelta(minutes=10))
        uid = store.create_user(User(email="cas@example.com", name="Cas", hashed_password="h", verification=slot))
        assert store.mark_verified(uid, "other-hash") is False
        assert store.mark_verified(uid, "hash-v") is True
        user = store.get_by_id(uid)
        assert user.is_verified is True
        assert user.verification is None
        # Second consumption of the same code finds nothing to update.
        assert store.mark_verified(uid, "hash-v") is False

    def test_complete_password_reset_is_compare_and_set(self, store) -> None:
        slot = OtpSlot("hash-r", _now() + timedelta(minutes=10))
        uid = store.create_user(User(email="reset@example.com", name="Reset", hashed_password="old", reset=slot))
        assert store.complete_password_reset(uid, "hash-r", "new", _now()) == 0
        assert store.complete_password_reset(uid, "hash-r", "newer", _now()) is None
        user = store.get_by_id(uid)
        assert user.hashed_password == "new"
        assert user.reset is None

    def test_complete_password_reset_revokes_sessions_atomically(self, store) -> None:
        slot = OtpSlot("hash-r", _now() + timedelta(minutes=10))
        uid = store.create_user(User(email="atomic@example.com", name="Atomic", hashed_password="old", reset=slot))
        store.create_refresh_token(_record(uid, "7" * 64))
        store.create_refresh_token(_record(uid, "8" * 64))
        store.create_refresh_token(_record(uid + 1, "9" * 64))
        assert store.complete_password_reset(uid, "hash-r", "new", _now()) == 2
        assert store.count_active_refresh_tokens(uid, _now()) == 0
        assert store.count_active_refresh_tokens(uid + 1, _now()) == 1

    def test_failed_reset_keeps_sessions(self, store) -> None:
        slot = OtpSlot("hash-r", _now() + timedelta(minutes=10))
        uid = store.create_user(User(email="keep@example.com", name="Keep", hashed_password="old", reset=slot))
        store.create_refresh_token(_record(uid, "k" * 64))
        assert store.complete_password_reset(uid, "stale-hash", "new", _now()) is None
        assert store.count_active_refresh_tokens(uid, _now()) == 1
        assert store.get_by_id(uid).hashed_password == "old"


class TestRefreshTokens:
    def test_rotate_deactivates_and_inserts(self, store) -> None:
        store.create_refresh_token(_record(1, "a" * 64))
        assert store.rotate_refresh_token("a" * 64, _record(1, "b" * 64), _now()) is True
        assert store.get_refresh_token("a" * 64).is_active is False
        assert store.get_refresh_token("b" * 64).is_active is True

    def test_rotate_inactive_inserts_nothing(self, store) -> None:
        store.create_refresh_token(_record(1, "a" * 64))
        store.deactivate_refresh_token("a" * 64, _now())
        assert store.rotate_refresh_token("a" * 64, _record(1, "c" * 64), _now()) is False
        assert store.get_refresh_token("c" * 64) is None

    def test_rotate_expired_fails(self, store) -> None:
        store.create_refresh_token(_record(1, "d" * 64, ttl=timedelta(seconds=-1)))
        assert store.rotate_refresh_token("d" * 64, _record(1, "e" * 64), _now()) is False

    def test_deactivate_user_tokens_counts(self, store) -> None:
        store.create_refresh_token(_record(1, "1" * 64))
        store.create_refresh_token(_record(1, "2" * 64))
        store.create_refresh_token(_record(2, "3" * 64))
        assert store.deactivate_user_refresh_tokens(1, _now()) == 2
        assert store.count_active_refresh_tokens(1, _now()) == 0
        assert store.count_active_refresh_tokens(2, _now()) == 1

    def test_purge_removes_dead_records_only(self, store) -> None:
        store.create_refresh_token(_record(1, "4" * 64))
        store.create_refresh_token(_record(1, "5" * 64, ttl=timedelta(seconds=-1)))
        store.create_refresh_token(_record(1, "6" * 64))
        store.deactivate_refresh_token("6" * 64, _now())
        assert store.purge_refresh_tokens(_now()) == 2
        assert store.get_refresh_token("4" * 64) is not None
        assert store.get_refresh_token("5" * 64) is None

    def test_password_bound_insert_requires_current_hash(self, store) -> None:
        uid = store.create_user(User(email="bound@example.com", name="Bound", hashed_password="current"))
        assert store.create_refresh_token_for_password(_record(uid, "p" * 64), "current") is True
        assert store.get_refresh_token("p" * 64).is_active is True
        assert store.create_refresh_token_for_password(_record(uid, "q" * 64), "replaced") is False
        assert store.get_refresh_token("q" * 64) is None

    def test_ping(self, store) -> None:
        assert store.ping() is True
