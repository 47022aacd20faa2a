"""
tests/test_tokens.py -- Unit tests for auth/tokens.py.

Covers:
  - Access tokens: round trip, wrong key, refresh token presented as access token
  - Refresh records: one active record per issued token, hashed at rest
  - Rotation: single use, replay rejected, successor usable
  - Concurrent rotation: one winner among threads racing the same token
  - Revocation: revoke_one (logout) and revoke_all (maintenance CLI)
  - Cookie helpers: httpOnly + SameSite=Strict attributes
"""

from __future__ import annotations

import threading

import pytest
from fastapi.responses import JSONResponse
from jose import jwt

from auth.errors import UnauthorizedError
from auth.models import TokenPair, User
from auth.store import UserStore
from auth.tokens import (
    INVALID_CREDENTIALS,
    INVALID_REFRESH_TOKEN,
    REFRESH_COOKIE_NAME,
    TokenEngine,
    clear_refresh_cookie,
    set_refresh_cookie,
)


def _make_user(store, email: str = "tok@example.com") -> int:
    return store.create_user(User(email=email, name="Token User", hashed_password="x", is_verified=True))


class TestAccessTokens:
    def test_round_trip(self, token_engine) -> None:
        token = token_engine.create_access_token(7)
        payload = token_engine.decode_access_token(token)
        assert payload is not None
        assert payload["user_id"] == 7

    def test_tampered_token_rejected(self, token_engine) -> None:
        token = token_engine.create_access_token(7)
        assert token_engine.decode_access_token(token[:-2] + "xx") is None

    def test_foreign_key_rejected(self, token_engine) -> None:
        forged = jwt.encode({"user_id": 7}, "x" * 40, algorithm="HS256")
        assert token_engine.decode_access_token(forged) is None

    def test_refresh_token_is_not_an_access_token(self, store, token_engine) -> None:
        uid = _make_user(store)
        pair = token_engine.issue(uid)
        assert token_engine.decode_access_token(pair.refresh_token) is None

    def test_garbage_rejected(self, token_engine) -> None:
        assert token_engine.decode_access_token("not-a-jwt") is None


class TestIssue:
    def test_issue_persists_hashed_active_record(self, store, token_engine) -> None:
        uid = _make_user(store)
        pair = token_engine.issue(uid)
        record = store.get_refresh_token(token_engine.hash_refresh_token(pair.refresh_token))
        assert record is not None
        assert record.user_id == uid
        assert record.is_active is True
        assert record.token_hash != pair.refresh_token
        assert record.expires_at == pair.refresh_expires_at

    def test_tokens_issued_together_are_distinct(self, store, token_engine) -> None:
        uid = _make_user(store)
        a = token_engine.issue(uid)
        b = token_engine.issue(uid)
        assert a.refresh_token != b.refresh_token
        assert store.count_active_refresh_tokens(uid, token_engine.clock()) == 2

    def test_password_bound_issue_refused_after_password_change(self, store, token_engine) -> None:
        uid = _make_user(store)
        token_engine.issue(uid, password_hash="x")
        with pytest.raises(UnauthorizedError) as exc_info:
            token_engine.issue(uid, password_hash="stale")
        assert exc_info.value.message == INVALID_CREDENTIALS
        assert store.count_active_refresh_tokens(uid, token_engine.clock()) == 1


class TestRotate:
    def test_rotate_returns_new_pair_and_kills_old(self, store, token_engine) -> None:
        uid = _make_user(store)
        first = token_engine.issue(uid)
        second = token_engine.rotate(first.refresh_token)
        assert second.refresh_token != first.refresh_token
        old = store.get_refresh_token(token_engine.hash_refresh_token(first.refresh_token))
        assert old.is_active is False
        assert old.revoked_at is not None
        assert store.count_active_refresh_tokens(uid, token_engine.clock()) == 1

    def test_replay_rejected(self, store, token_engine) -> None:
        uid = _make_user(store)
        first = token_engine.issue(uid)
        token_engine.rotate(first.refresh_token)
        with pytest.raises(UnauthorizedError) as exc_info:
            token_engine.rotate(first.refresh_token)
        assert exc_info.value.message == INVALID_REFRESH_TOKEN

    def test_successor_can_rotate(self, store, token_engine) -> None:
        uid = _make_user(store)
        first = token_engine.issue(uid)
        second = token_engine.rotate(first.refresh_token)
        third = token_engine.rotate(second.refresh_token)
        assert token_engine.decode_access_token(third.access_token)["user_id"] == uid

    def test_expired_record_rejected(self, store, token_engine, clock, settings) -> None:
        uid = _make_user(store)
        pair = token_engine.issue(uid)
        clock.advance(seconds=settings.refresh_token_expire_seconds + 1)
        with pytest.raises(UnauthorizedError):
            token_engine.rotate(pair.refresh_token)

    def test_signed_but_unknown_token_rejected(self, store, token_engine) -> None:
        uid = _make_user(store)
        token, _exp = token_engine._create_refresh_token(uid)
        with pytest.raises(UnauthorizedError):
            token_engine.rotate(token)

    def test_access_token_cannot_refresh(self, store, token_engine) -> None:
        uid = _make_user(store)
        pair = token_engine.issue(uid)
        with pytest.raises(UnauthorizedError):
            token_engine.rotate(pair.access_token)


class TestConcurrentRotation:
    def test_same_token_rotates_once_across_threads(self, tmp_path, settings) -> None:
        # File-backed so concurrent writers queue on SQLite's busy timeout.
        store = UserStore(f"sqlite:///{tmp_path / 'rotate.db'}")
        engine = TokenEngine(store, settings)
        try:
            uid = _make_user(store)
            pair = engine.issue(uid)
            workers = 8
            barrier = threading.Barrier(workers)
            outcomes: list[object] = []
            lock = threading.Lock()

            def attempt() -> None:
                barrier.wait()
                try:
                    result: object = engine.rotate(pair.refresh_token)
                except UnauthorizedError as exc:
                    result = exc
                with lock:
                    outcomes.append(result)

            threads = [threading.Thread(target=attempt) for _ in range(workers)]
            for t in threads:
                t.start()
            for t in threads:
                t.join(timeout=30)

            winners = [o for o in outcomes if isinstance(o, TokenPair)]
            losers = [o for o in outcomes if isinstance(o, UnauthorizedError)]
            assert len(outcomes) == workers
            assert len(winners) == 1
            assert len(losers) == workers - 1
            assert store.count_active_refresh_tokens(uid, engine.clock()) == 1
        finally:
            store.close()


class TestRevoke:
    def test_revoke_one_then_rotate_fails(self, store, token_engine) -> None:
        uid = _make_user(store)
        pair = token_engine.issue(uid)
        token_engine.revoke_one(pair.refresh_token)
        with pytest.raises(UnauthorizedError):
            token_engine.rotate(pair.refresh_token)

    def test_revoke_one_twice_fails(self, store, token_engine) -> None:
        uid = _make_user(store)
        pair = token_engine.issue(uid)
        token_engine.revoke_one(pair.refresh_token)
        with pytest.raises(UnauthorizedError):
            token_engine.revoke_one(pair.refresh_token)

    def test_revoke_all_only_touches_owner(self, store, token_engine) -> None:
        uid = _make_user(store, "owner@example.com")
        other = _make_user(store, "other@example.com")
        token_engine.issue(uid)
        token_engine.issue(uid)
        kept = token_engine.issue(other)
        assert token_engine.revoke_all(uid) == 2
        assert store.count_active_refresh_tokens(uid, token_engine.clock()) == 0
        token_engine.rotate(kept.refresh_token)


class TestCookies:
    def test_set_refresh_cookie_attributes(self, store, token_engine) -> None:
        uid = _make_user(store)
        pair = token_engine.issue(uid)
        resp = JSONResponse(content={})
        set_refresh_cookie(resp, pair)
        header = resp.headers["set-cookie"]
        assert header.startswith(f"{REFRESH_COOKIE_NAME}=")
        assert "HttpOnly" in header
        assert "SameSite=strict" in header or "samesite=strict" in header.lower()

    def test_clear_refresh_cookie_expires_it(self) -> None:
        resp = JSONResponse(content={})
        clear_refresh_cookie(resp)
        header = resp.headers["set-cookie"]
        assert header.startswith(f'{REFRESH_COOKIE_NAME}=""') or "Max-Age=0" in header
