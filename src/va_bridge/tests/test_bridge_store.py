"""Tests for the key/value store and the domain stores built on it."""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

import pytest
from va_bridge.errors import InconsistentWriteError, NotFoundError, OAuthStateError
from va_bridge.store import (
    HASHED_KEY_LENGTH,
    USER_KEY_PREFIX,
    EncodedKeyStore,
    KVStore,
    OAuth2StateStore,
    PendingStore,
    PostIDs,
    PostIDStore,
    SessionRecord,
    SQLiteKVStore,
    UserStore,
    decode_key,
    encode_key,
    hash_key,
)

if TYPE_CHECKING:
    from pathlib import Path


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _record(local_id: str = "u1", remote_id: str = "sn-1") -> SessionRecord:
    return SessionRecord(local_id=local_id, remote_id=remote_id, encrypted_token="blob")


class TestSQLiteKVStore:
    def test_file_database_persists_across_instances(self, tmp_path: Path) -> None:
        path = tmp_path / "kv.db"
        SQLiteKVStore(path).store("k", b"v")
        assert SQLiteKVStore(path).load("k") == b"v"

    def test_missing_key(self) -> None:
        with pytest.raises(NotFoundError):
            SQLiteKVStore(":memory:").load("nope")

    def test_ttl_expiry(self) -> None:
        clock = _Clock()
        store = SQLiteKVStore(":memory:", clock=clock)
        store.store_ttl("k", b"v", 60)
        clock.now += 59
        assert store.load("k") == b"v"
        clock.now += 1
        with pytest.raises(NotFoundError):
            store.load("k")

    def test_upsert_and_delete(self) -> None:
        store = SQLiteKVStore(":memory:")
        store.store("k", b"1")
        store.store("k", b"2")
        assert store.load("k") == b"2"
        store.delete("k")
        store.delete("k")
        with pytest.raises(NotFoundError):
            store.load("k")

    def test_list_keys_pages_and_skips_expired(self) -> None:
        clock = _Clock()
        store = SQLiteKVStore(":memory:", clock=clock)
        for key in ("a", "b", "c"):
            store.store(key, b"x")
        store.store_ttl("d", b"x", 1)
        clock.now += 5
        assert store.list_keys(0, 2) == ["a", "b"]
        assert store.list_keys(1, 2) == ["c"]


class TestKeys:
    def test_encoded_keys_are_reversible(self) -> None:
        stored = encode_key(USER_KEY_PREFIX, "1234567890")
        assert stored.startswith(USER_KEY_PREFIX)
        assert decode_key(USER_KEY_PREFIX, stored) == "1234567890"

    def test_empty_key_maps_to_prefix(self) -> None:
        assert encode_key("p_", "") == "p_"
        assert decode_key("p_", "p_") == ""
        assert hash_key("p_", "") == "p_"

    def test_decode_rejects_foreign_prefix(self) -> None:
        with pytest.raises(ValueError):  # noqa: PT011
            decode_key("user_", "oauth2_abc")

    def test_hashed_key_width(self) -> None:
        key = hash_key("oauth2_", "state")
        assert len(key) == HASHED_KEY_LENGTH
        assert key == hash_key("oauth2_", "state")
        assert key != hash_key("oauth2_", "other")

    def test_encoded_store_lists_only_its_namespace(self) -> None:
        raw = SQLiteKVStore(":memory:")
        raw.store("other", b"x")
        users = EncodedKeyStore(raw, USER_KEY_PREFIX)
        users.store("u1", b"x")
        assert users.list_keys(0, 10) == ["u1"]


class TestUserStore:
    def test_record_is_found_by_either_id(self) -> None:
        users = UserStore(SQLiteKVStore(":memory:"))
        users.store_user(_record())
        assert users.load_user("u1").remote_id == "sn-1"
        assert users.load_user_by_remote_id("sn-1").local_id == "u1"

    def test_delete_removes_both_keys(self) -> None:
        users = UserStore(SQLiteKVStore(":memory:"))
        users.store_user(_record())
        users.delete_user("u1")
        with pytest.raises(NotFoundError):
            users.load_user("u1")
        with pytest.raises(NotFoundError):
            users.load_user_by_remote_id("sn-1")

    def test_failed_second_write_is_reported(self) -> None:
        """The first key stays written and the caller learns the pair is inconsistent."""

        class _FailSecond(SQLiteKVStore):
            writes = 0

            def store(self, key: str, data: bytes) -> None:
                self.writes += 1
                if self.writes == 2:  # noqa: PLR2004
                    raise RuntimeError("disk full")
                super().store(key, data)

        raw = _FailSecond(":memory:")
        users = UserStore(raw)
        with pytest.raises(InconsistentWriteError):
            users.store_user(_record())
        assert users.load_user("u1").local_id == "u1"

    def test_purge_walks_every_page(self) -> None:
        """Deleting keys while paging must not skip any."""
        raw = SQLiteKVStore(":memory:")
        users = UserStore(raw, per_page=3)
        for index in range(5):
            users.store_user(_record(f"u{index}", f"sn-{index}"))
        raw.store("keep_me", b"x")

        removed = users.purge_users()

        assert removed == 10  # noqa: PLR2004
        assert raw.list_keys(0, 100) == ["keep_me"]


class TestOAuth2StateStore:
    def test_state_is_single_use(self) -> None:
        states = OAuth2StateStore(SQLiteKVStore(":memory:"))
        states.store_state("abc_u1")
        states.verify_state("abc_u1")
        with pytest.raises(OAuthStateError, match="expired"):
            states.verify_state("abc_u1")

    def test_expired_state(self) -> None:
        clock = _Clock()
        states = OAuth2StateStore(SQLiteKVStore(":memory:", clock=clock), ttl_seconds=10)
        states.store_state("abc_u1")
        clock.now += 11
        with pytest.raises(OAuthStateError):
            states.verify_state("abc_u1")

    def test_collision_with_different_value_is_rejected(self) -> None:
        raw = SQLiteKVStore(":memory:")
        states = OAuth2StateStore(raw)
        raw.store(hash_key("oauth2_", "abc_u1"), b"tampered")
        with pytest.raises(OAuthStateError, match="invalid"):
            states.verify_state("abc_u1")

    def test_concurrent_callbacks_accept_state_once(self, tmp_path: Path) -> None:
        barrier = threading.Barrier(2)

        class _Lockstep(SQLiteKVStore):
            def pop(self, key: str) -> bytes:
                barrier.wait(timeout=5)
                return super().pop(key)

        states = OAuth2StateStore(_Lockstep(str(tmp_path / "kv.db")))
        states.store_state("abc_u1")
        outcomes: list[bool] = []

        def callback() -> None:
            try:
                states.verify_state("abc_u1")
            except OAuthStateError:
                outcomes.append(False)
            else:
                outcomes.append(True)

        workers = [threading.Thread(target=callback) for _ in range(2)]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join(timeout=10)
        assert sorted(outcomes) == [False, True]

    def test_pop_removes_value(self) -> None:
        store = SQLiteKVStore(":memory:")
        store.store("k", b"v")
        assert store.pop("k") == b"v"
        with pytest.raises(NotFoundError):
            store.pop("k")


class TestSmallStores:
    def test_post_ids_default_to_empty(self) -> None:
        post_ids = PostIDStore(SQLiteKVStore(":memory:"))
        assert post_ids.load("u1") == PostIDs()
        post_ids.save("u1", PostIDs(channel_id="c1", message_ids=["m1", "m2"]))
        assert post_ids.load("u1").message_ids == ["m1", "m2"]
        post_ids.clear("u1")
        assert post_ids.load("u1").message_ids == []

    def test_pending_marker_expires(self) -> None:
        clock = _Clock()
        pending = PendingStore(SQLiteKVStore(":memory:", clock=clock))
        pending.mark("u1", "disconnect", 30)
        assert pending.get("u1") == "disconnect"
        clock.now += 31
        assert pending.get("u1") is None

    def test_kvstore_is_abstract(self) -> None:
        with pytest.raises(TypeError):
            KVStore()  # type: ignore[abstract]
