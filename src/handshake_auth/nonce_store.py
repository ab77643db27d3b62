"""
Nonce stores for handshake replay prevention.

A nonce record exists from the moment a challenge is issued until it is
consumed by a successful handshake or swept after expiry. Consumption is
deletion: a token present in the store and unexpired has never been used.
"""

import asyncio
import sqlite3
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Union

import structlog

from .exceptions import StorageUnavailableError


logger = structlog.get_logger("handshake_auth.nonce_store")

NONCE_TABLE_NAME = "nonce"


@dataclass(frozen=True)
class NonceRecord:
    """A single issued challenge token awaiting consumption."""
    token: str
    expires_at: datetime

    def is_live(self, now: datetime) -> bool:
        """A record is usable only while strictly before its expiry."""
        return self.expires_at > now


def _to_epoch_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(round(value.timestamp() * 1000))


def _from_epoch_ms(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


class NonceStore(ABC):
    """Durable record store keyed by nonce token."""

    async def setup(self) -> None:
        """Provision backing schema. Safe to call repeatedly."""

    async def close(self) -> None:
        """Release resources held by the store."""

    @abstractmethod
    async def create(self, token: str, expires_at: datetime) -> NonceRecord:
        """Persist a new nonce record."""

    @abstractmethod
    async def find_unexpired(self, token: str, now: datetime) -> Optional[NonceRecord]:
        """Return the record for ``token`` if it expires strictly after ``now``."""

    @abstractmethod
    async def consume(self, token: str, now: datetime) -> bool:
        """
        Atomically find an unexpired record and delete it.

        Exactly one of several concurrent callers presenting the same token
        observes True.
        """

    @abstractmethod
    async def delete_if_present(self, token: str) -> bool:
        """Delete a record regardless of expiry."""

    @abstractmethod
    async def delete_all_expired(self, now: datetime) -> int:
        """Delete every record with ``expires_at < now`` and return the count."""

    @abstractmethod
    async def list_records(self) -> List[NonceRecord]:
        """Return every stored record, live or not yet swept."""


class MemoryNonceStore(NonceStore):
    """Thread-safe in-process nonce store."""

    def __init__(self) -> None:
        self._records: Dict[str, datetime] = {}
        self._lock = threading.RLock()

    async def create(self, token: str, expires_at: datetime) -> NonceRecord:
        with self._lock:
            self._records[token] = expires_at
        return NonceRecord(token, expires_at)

    async def find_unexpired(self, token: str, now: datetime) -> Optional[NonceRecord]:
        with self._lock:
            expires_at = self._records.get(token)
        if expires_at is None or not expires_at > now:
            return None
        return NonceRecord(token, expires_at)

    async def consume(self, token: str, now: datetime) -> bool:
        with self._lock:
            expires_at = self._records.get(token)
            if expires_at is None or not expires_at > now:
                return False
            del self._records[token]
            return True

    async def delete_if_present(self, token: str) -> bool:
        with self._lock:
            return self._records.pop(token, None) is not None

    async def delete_all_expired(self, now: datetime) -> int:
        with self._lock:
            expired = [token for token, expires_at in self._records.items() if expires_at < now]
            for token in expired:
                del self._records[token]
        return len(expired)

    async def list_records(self) -> List[NonceRecord]:
        with self._lock:
            return [NonceRecord(token, expires_at) for token, expires_at in self._records.items()]

    def size(self) -> int:
        with self._lock:
            return len(self._records)


class SQLiteNonceStore(NonceStore):
    """
    SQLite-backed nonce store.

    Blocking database calls run in worker threads; each call opens its own
    connection so concurrent handshakes never share a cursor. Consumption is
    a single conditional DELETE whose affected-row count decides the winner.
    """

    def __init__(self, path: Union[str, Path], timeout_seconds: float = 5.0) -> None:
        self.path = str(path)
        self.timeout_seconds = timeout_seconds

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.path, timeout=self.timeout_seconds, isolation_level=None)

    async def _run(self, operation, *args):
        try:
            return await asyncio.to_thread(operation, *args)
        except sqlite3.Error as e:
            logger.error("nonce_store_error", backend="sqlite", error=str(e))
            raise StorageUnavailableError(f"Nonce store unavailable: {e}") from e

    async def setup(self) -> None:
        logger.info("nonce_table_setup", table=NONCE_TABLE_NAME, path=self.path)
        await self._run(self._setup)
        logger.info("nonce_table_ready", table=NONCE_TABLE_NAME)

    def _setup(self) -> None:
        conn = self._connect()
        try:
            conn.execute(
                f"CREATE TABLE IF NOT EXISTS {NONCE_TABLE_NAME} ("
                "token TEXT PRIMARY KEY, "
                "expires_at INTEGER NOT NULL)"
            )
            conn.execute(
                f"CREATE INDEX IF NOT EXISTS {NONCE_TABLE_NAME}_expires_at "
                f"ON {NONCE_TABLE_NAME} (expires_at)"
            )
        finally:
            conn.close()

    async def create(self, token: str, expires_at: datetime) -> NonceRecord:
        await self._run(self._execute,
                        f"INSERT INTO {NONCE_TABLE_NAME} (token, expires_at) VALUES (?, ?)",
                        (token, _to_epoch_ms(expires_at)))
        return NonceRecord(token, expires_at)

    async def find_unexpired(self, token: str, now: datetime) -> Optional[NonceRecord]:
        row = await self._run(self._fetchone,
                              f"SELECT token, expires_at FROM {NONCE_TABLE_NAME} "
                              "WHERE token = ? AND expires_at > ?",
                              (token, _to_epoch_ms(now)))
        if row is None:
            return None
        return NonceRecord(row[0], _from_epoch_ms(row[1]))

    async def consume(self, token: str, now: datetime) -> bool:
        deleted = await self._run(self._execute,
                                  f"DELETE FROM {NONCE_TABLE_NAME} "
                                  "WHERE token = ? AND expires_at > ?",
                                  (token, _to_epoch_ms(now)))
        return deleted == 1

    async def delete_if_present(self, token: str) -> bool:
        deleted = await self._run(self._execute,
                                  f"DELETE FROM {NONCE_TABLE_NAME} WHERE token = ?",
                                  (token,))
        return deleted > 0

    async def delete_all_expired(self, now: datetime) -> int:
        return await self._run(self._execute,
                               f"DELETE FROM {NONCE_TABLE_NAME} WHERE expires_at < ?",
                               (_to_epoch_ms(now),))

    async def list_records(self) -> List[NonceRecord]:
        rows = await self._run(self._fetchall,
                               f"SELECT token, expires_at FROM {NONCE_TABLE_NAME} ORDER BY expires_at")
        return [NonceRecord(token, _from_epoch_ms(expires_at)) for token, expires_at in rows]

    def _execute(self, sql: str, params: tuple) -> int:
        conn = self._connect()
        try:
            return conn.execute(sql, params).rowcount
        finally:
            conn.close()

    def _fetchone(self, sql: str, params: tuple):
        conn = self._connect()
        try:
            return conn.execute(sql, params).fetchone()
        finally:
            conn.close()

    def _fetchall(self, sql: str, params: tuple = ()):
        conn = self._connect()
        try:
            return conn.execute(sql, params).fetchall()
        finally:
            conn.close()


def create_nonce_store(backend: str, path: Optional[Union[str, Path]] = None) -> NonceStore:
    """Build a nonce store from configuration values."""
    if backend == "memory":
        return MemoryNonceStore()
    if backend == "sqlite":
        if not path:
            raise ValueError("sqlite nonce store requires a path")
        return SQLiteNonceStore(path)
    raise ValueError(f"Unknown nonce store backend: {backend}")
