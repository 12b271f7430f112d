"""Keyed persistence for the bridge.

A single raw key/value capability (``KVStore``) backs every record kind. Named
wrappers transform keys before delegating: ``EncodedKeyStore`` keeps keys
reversible, ``HashedKeyStore`` replaces them with a truncated digest. Domain
stores (users, OAuth2 state, carousel post ids) are built on those wrappers.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TypeVar

from pydantic import BaseModel, ValidationError

from va_bridge.errors import InconsistentWriteError, NotFoundError, OAuthStateError

__all__ = [
    "EncodedKeyStore",
    "HashedKeyStore",
    "KVStore",
    "NotFoundError",
    "OAuth2StateStore",
    "PendingStore",
    "PostIDStore",
    "SQLiteKVStore",
    "SessionRecord",
    "UserStore",
    "decode_key",
    "encode_key",
    "hash_key",
    "load_json",
    "store_json",
]

logger = logging.getLogger("va_bridge.store")

USER_KEY_PREFIX = "user_"
OAUTH2_KEY_PREFIX = "oauth2_"
POST_IDS_KEY_PREFIX = "post_ids_"
PENDING_KEY_PREFIX = "pending_"
OAUTH2_STATE_TTL_SECONDS = 300
HASHED_KEY_LENGTH = 50
DEFAULT_PER_PAGE = 100

ModelT = TypeVar("ModelT", bound=BaseModel)


# ---------------------------------------------------------------------------
# Raw capability
# ---------------------------------------------------------------------------


class KVStore(ABC):
    """Byte-oriented key/value capability."""

    @abstractmethod
    def load(self, key: str) -> bytes:
        """Return the value for ``key``; raises NotFoundError when absent or expired."""
        raise NotImplementedError

    @abstractmethod
    def store(self, key: str, data: bytes) -> None:
        """Write ``data`` under ``key`` with no expiry."""
        raise NotImplementedError

    @abstractmethod
    def store_ttl(self, key: str, data: bytes, ttl_seconds: int) -> None:
        """Write ``data`` under ``key``; it becomes unreadable after ``ttl_seconds``."""
        raise NotImplementedError

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove ``key``. Deleting a missing key is not an error."""
        raise NotImplementedError

    @abstractmethod
    def pop(self, key: str) -> bytes:
        """Remove ``key`` and return its value; only one caller can take a given write."""
        raise NotImplementedError

    @abstractmethod
    def list_keys(self, page: int, per_page: int) -> list[str]:
        """Return one page of live keys in a stable order."""
        raise NotImplementedError


class SQLiteKVStore(KVStore):
    """KVStore backed by a single sqlite table.

    File databases open a connection per operation. ``":memory:"`` keeps one
    shared connection behind a lock so the data outlives each call.
    """

    def __init__(self, path: str | Path, clock: Callable[[], float] = time.time) -> None:
        """Create the store and its schema."""
        self._path = str(path)
        self._clock = clock
        self._lock = threading.Lock()
        self._shared: sqlite3.Connection | None = None
        if self._path == ":memory:":
            self._shared = sqlite3.connect(self._path, check_same_thread=False)
        with self._connect() as conn:
            _init_db(conn)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        if self._shared is not None:
            with self._lock:
                yield self._shared
                self._shared.commit()
            return
        conn = sqlite3.connect(self._path)
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def _now(self) -> float:
        return self._clock()

    def load(self, key: str) -> bytes:
        """Return the live value for ``key``."""
        with self._connect() as conn:
            row = conn.execute("SELECT value, expires_at FROM kv WHERE key = ?", (key,)).fetchone()
            if row is None:
                raise NotFoundError(key)
            value, expires_at = row
            if expires_at is not None and expires_at <= self._now():
                conn.execute("DELETE FROM kv WHERE key = ?", (key,))
                raise NotFoundError(key)
        return bytes(value)

    def store(self, key: str, data: bytes) -> None:
        """Upsert ``key`` without expiry."""
        self._upsert(key, data, None)

    def store_ttl(self, key: str, data: bytes, ttl_seconds: int) -> None:
        """Upsert ``key`` expiring ``ttl_seconds`` from now."""
        self._upsert(key, data, self._now() + ttl_seconds)

    def _upsert(self, key: str, data: bytes, expires_at: float | None) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO kv (key, value, expires_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    expires_at = excluded.expires_at
                """,
                (key, sqlite3.Binary(data), expires_at),
            )

    def delete(self, key: str) -> None:
        """Remove ``key`` if present."""
        with self._connect() as conn:
            conn.execute("DELETE FROM kv WHERE key = ?", (key,))

    def pop(self, key: str) -> bytes:
        """Take the live value for ``key``; a concurrent pop of the same row gets NotFoundError."""
        with self._connect() as conn:
            row = conn.execute("SELECT value, expires_at FROM kv WHERE key = ?", (key,)).fetchone()
            if row is None:
                raise NotFoundError(key)
            value, expires_at = row
            removed = conn.execute("DELETE FROM kv WHERE key = ? AND value = ?", (key, value)).rowcount
            if removed != 1 or (expires_at is not None and expires_at <= self._now()):
                raise NotFoundError(key)
        return bytes(value)

    def list_keys(self, page: int, per_page: int) -> list[str]:
        """Return live keys ordered by key, purging expired rows first."""
        with self._connect() as conn:
            conn.execute("DELETE FROM kv WHERE expires_at IS NOT NULL AND expires_at <= ?", (self._now(),))
            rows = conn.execute(
                "SELECT key FROM kv ORDER BY key LIMIT ? OFFSET ?",
                (per_page, page * per_page),
            ).fetchall()
        return [str(row[0]) for row in rows]


def _init_db(conn: sqlite3.Connection) -> None:
    """Create the key/value table when missing."""
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS kv (
            key TEXT PRIMARY KEY,
            value BLOB NOT NULL,
            expires_at REAL
        );
        """
    )


# ---------------------------------------------------------------------------
# Key strategies
# ---------------------------------------------------------------------------


def encode_key(prefix: str, key: str) -> str:
    """Reversible namespaced key; the empty key maps to ``prefix``."""
    if not key:
        return prefix
    return prefix + base64.b64encode(key.encode("utf-8")).decode("ascii")


def decode_key(prefix: str, stored: str) -> str:
    """Reverse :func:`encode_key`; raises ValueError for foreign keys."""
    if not stored.startswith(prefix):
        msg = f"key {stored!r} does not start with {prefix!r}"
        raise ValueError(msg)
    encoded = stored[len(prefix) :]
    if not encoded:
        return ""
    return base64.b64decode(encoded.encode("ascii"), validate=True).decode("utf-8")


def hash_key(prefix: str, key: str) -> str:
    """One-way namespaced key of fixed width; the empty key maps to ``prefix``."""
    if not key:
        return prefix
    digest = hashlib.sha512(key.encode("utf-8")).hexdigest()
    return (prefix + digest)[:HASHED_KEY_LENGTH]


class _KeyedStore(KVStore):
    """Shared delegation for the key-transforming stores."""

    def __init__(self, store: KVStore, prefix: str) -> None:
        self._store = store
        self.prefix = prefix

    @abstractmethod
    def transform(self, key: str) -> str:
        """Map a caller key to the raw key."""
        raise NotImplementedError

    def load(self, key: str) -> bytes:
        return self._store.load(self.transform(key))

    def store(self, key: str, data: bytes) -> None:
        self._store.store(self.transform(key), data)

    def store_ttl(self, key: str, data: bytes, ttl_seconds: int) -> None:
        self._store.store_ttl(self.transform(key), data, ttl_seconds)

    def delete(self, key: str) -> None:
        self._store.delete(self.transform(key))

    def pop(self, key: str) -> bytes:
        return self._store.pop(self.transform(key))


class EncodedKeyStore(_KeyedStore):
    """Namespaced store with base64-encoded, reversible keys."""

    def transform(self, key: str) -> str:
        """Return ``prefix + base64(key)``."""
        return encode_key(self.prefix, key)

    def list_keys(self, page: int, per_page: int) -> list[str]:
        """Decoded caller keys found in one raw page."""
        keys = []
        for raw in self._store.list_keys(page, per_page):
            if not raw.startswith(self.prefix):
                continue
            try:
                keys.append(decode_key(self.prefix, raw))
            except ValueError:
                logger.warning("Skipping undecodable key %s", raw)
        return keys


class HashedKeyStore(_KeyedStore):
    """Namespaced store whose keys cannot be recovered from storage."""

    def transform(self, key: str) -> str:
        """Return the truncated sha512 key."""
        return hash_key(self.prefix, key)

    def list_keys(self, page: int, per_page: int) -> list[str]:
        """Raw hashed keys in this namespace found in one raw page."""
        return [raw for raw in self._store.list_keys(page, per_page) if raw.startswith(self.prefix)]


def load_json(store: KVStore, key: str, model: type[ModelT]) -> ModelT:
    """Load and validate a JSON record."""
    data = store.load(key)
    try:
        return model.model_validate_json(data)
    except ValidationError as exc:
        msg = f"stored record {key!r} is not a valid {model.__name__}"
        raise ValueError(msg) from exc


def store_json(store: KVStore, key: str, record: BaseModel) -> None:
    """Serialize and store a record."""
    store.store(key, record.model_dump_json().encode("utf-8"))


# ---------------------------------------------------------------------------
# Domain stores
# ---------------------------------------------------------------------------


class SessionRecord(BaseModel):
    """Durable link between a Discord user and a ServiceNow user."""

    local_id: str
    remote_id: str
    encrypted_token: str
    email: str = ""
    user_name: str = ""


class UserStore:
    """Session records, retrievable by Discord id and by ServiceNow sys_id."""

    def __init__(self, raw: KVStore, per_page: int = DEFAULT_PER_PAGE) -> None:
        self._raw = raw
        self._kv = EncodedKeyStore(raw, USER_KEY_PREFIX)
        self._per_page = per_page

    def load_user(self, local_id: str) -> SessionRecord:
        """Return the record for a Discord user; NotFoundError if unlinked."""
        return load_json(self._kv, local_id, SessionRecord)

    def load_user_by_remote_id(self, remote_id: str) -> SessionRecord:
        """Return the record for a ServiceNow sys_id."""
        return load_json(self._kv, remote_id, SessionRecord)

    def store_user(self, record: SessionRecord) -> None:
        """Write the record under both ids.

        The two writes are not transactional. When the second one fails the
        first is left in place and the failure is logged and re-raised.
        """
        store_json(self._kv, record.local_id, record)
        try:
            store_json(self._kv, record.remote_id, record)
        except Exception as exc:
            inconsistent = InconsistentWriteError(
                f"user {record.local_id} stored by local id but not by remote id {record.remote_id}"
            )
            logger.error("%s: %s", inconsistent, exc)  # noqa: TRY400
            raise inconsistent from exc

    def delete_user(self, local_id: str) -> SessionRecord:
        """Remove both keys of a linked user and return the removed record."""
        record = self.load_user(local_id)
        self._kv.delete(record.local_id)
        self._kv.delete(record.remote_id)
        return record

    def purge_users(self) -> int:
        """Delete every stored session record; returns how many keys were removed.

        Deleting shifts later keys onto the current page, so the page only
        advances when nothing on it was deleted.
        """
        page = 0
        removed = 0
        while True:
            keys = self._raw.list_keys(page, self._per_page)
            deleted_on_page = False
            for key in keys:
                if not key.startswith(USER_KEY_PREFIX):
                    continue
                self._raw.delete(key)
                deleted_on_page = True
                removed += 1
            if len(keys) < self._per_page:
                break
            if not deleted_on_page:
                page += 1
        logger.info("Purged %s user keys", removed)
        return removed


class OAuth2StateStore:
    """Single-use OAuth2 state values under hashed keys."""

    def __init__(self, raw: KVStore, ttl_seconds: int = OAUTH2_STATE_TTL_SECONDS) -> None:
        self._kv = HashedKeyStore(raw, OAUTH2_KEY_PREFIX)
        self._ttl_seconds = ttl_seconds

    def store_state(self, state: str) -> None:
        """Remember ``state`` until it is verified or expires."""
        self._kv.store_ttl(state, state.encode("utf-8"), self._ttl_seconds)

    def verify_state(self, state: str) -> None:
        """Consume ``state``; raises OAuthStateError when it is unknown or altered."""
        try:
            data = self._kv.pop(state)
        except NotFoundError as exc:
            msg = "authentication attempt expired, please try again"
            raise OAuthStateError(msg) from exc
        if data.decode("utf-8", errors="replace") != state:
            msg = "invalid oauth state, please try again"
            raise OAuthStateError(msg)


class PostIDs(BaseModel):
    """Interactive posts last sent to a user.

    ``carousel_values`` maps a carousel button position to its full option
    value; ``select_values`` maps a cut select option value to the full one.
    """

    channel_id: str = ""
    message_ids: list[str] = []
    carousel_values: dict[str, str] = {}
    select_values: dict[str, str] = {}


class PostIDStore:
    """Interactive post ids and their full option values per Discord user."""

    def __init__(self, raw: KVStore) -> None:
        self._kv = EncodedKeyStore(raw, POST_IDS_KEY_PREFIX)

    def load(self, local_id: str) -> PostIDs:
        """Return the stored ids, empty when none are recorded."""
        try:
            return load_json(self._kv, local_id, PostIDs)
        except NotFoundError:
            return PostIDs()

    def save(self, local_id: str, post_ids: PostIDs) -> None:
        """Replace the stored ids."""
        store_json(self._kv, local_id, post_ids)

    def clear(self, local_id: str) -> None:
        """Forget the stored ids."""
        self._kv.delete(local_id)


class PendingStore:
    """Short-lived per-user markers (link pending, disconnect confirming)."""

    def __init__(self, raw: KVStore) -> None:
        self._kv = EncodedKeyStore(raw, PENDING_KEY_PREFIX)

    def mark(self, local_id: str, marker: str, ttl_seconds: int) -> None:
        """Record ``marker`` for ``local_id``."""
        self._kv.store_ttl(local_id, marker.encode("utf-8"), ttl_seconds)

    def get(self, local_id: str) -> str | None:
        """Return the live marker, if any."""
        try:
            return self._kv.load(local_id).decode("utf-8")
        except NotFoundError:
            return None

    def clear(self, local_id: str) -> None:
        """Remove the marker."""
        self._kv.delete(local_id)
