"""
Durable key/value state used for schedule progress, run locks and cached
day-status signals. Two backends share one interface: JSON files on local
disk and the kv_state table of the draws database.
"""

import json
import os
import re
import sqlite3
import tempfile
import time
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from loguru import logger

from drawcapture import database
from drawcapture.date_utils import Clock
from drawcapture.errors import LockContention, StateStoreError


def _dump(value: Any) -> str:
    return json.dumps(value, sort_keys=True, ensure_ascii=False)


def _load(text: str, key: str) -> Dict[str, Any]:
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        logger.error(f"Corrupt state value for {key}: {e}")
        raise StateStoreError(f"Corrupt state value for {key}: {e}", code="STATE_CORRUPT", key=key) from e


class StateStore(ABC):
    """get / set / compare-and-swap over JSON-serializable values."""

    @abstractmethod
    def get(self, key: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def set(self, key: str, value: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    def compare_and_swap(self, key: str, expected: Optional[Dict[str, Any]],
                         new: Optional[Dict[str, Any]]) -> bool:
        """
        Writes new only if the stored value equals expected.

        expected None means "key absent"; new None deletes the key.

        Returns:
            True when the swap happened
        """
        ...


class FileStateStore(StateStore):
    """One JSON file per key, written atomically (temp file + rename)."""

    MUTEX_STALE_SECONDS = 30
    MUTEX_WAIT_SECONDS = 5

    def __init__(self, directory: str):
        self.directory = directory
        os.makedirs(directory, exist_ok=True)

    def path_for(self, key: str) -> str:
        name = re.sub(r'[^A-Za-z0-9_.-]+', '-', key).strip('-')
        return os.path.join(self.directory, f"{name}.json")

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        path = self.path_for(key)
        try:
            with open(path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except json.JSONDecodeError as e:
            logger.error(f"Corrupt state file {path}: {e}")
            raise StateStoreError(f"Corrupt state file {path}: {e}", code="STATE_CORRUPT", key=key, path=path) from e

    def set(self, key: str, value: Dict[str, Any]) -> None:
        path = self.path_for(key)
        fd, tmp_path = tempfile.mkstemp(dir=self.directory, prefix='.tmp-', suffix='.json')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(value, f, ensure_ascii=False, indent=2, sort_keys=True)
            os.replace(tmp_path, path)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def _delete(self, key: str) -> None:
        try:
            os.unlink(self.path_for(key))
        except FileNotFoundError:
            pass

    def _acquire_mutex(self, key: str) -> str:
        mutex = self.path_for(key) + '.cas'
        deadline = time.monotonic() + self.MUTEX_WAIT_SECONDS
        while True:
            try:
                fd = os.open(mutex, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.close(fd)
                return mutex
            except FileExistsError:
                try:
                    if time.time() - os.path.getmtime(mutex) > self.MUTEX_STALE_SECONDS:
                        os.unlink(mutex)
                        continue
                except FileNotFoundError:
                    continue
                if time.monotonic() > deadline:
                    raise StateStoreError(f"Timed out waiting for state mutex {mutex}", code="STATE_BUSY",
                                          key=key, mutex=mutex)
                time.sleep(0.01)

    def compare_and_swap(self, key, expected, new) -> bool:
        mutex = self._acquire_mutex(key)
        try:
            current = self.get(key)
            if current != expected:
                return False
            if new is None:
                self._delete(key)
            else:
                self.set(key, new)
            return True
        finally:
            os.unlink(mutex)


class SqliteStateStore(StateStore):
    """kv_state table inside the draws database."""

    def __init__(self):
        database.initialize_database()

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        conn = database.get_db_connection()
        try:
            row = conn.execute("SELECT value FROM kv_state WHERE key = ?", (key,)).fetchone()
            return _load(row[0], key) if row else None
        finally:
            conn.close()

    def set(self, key: str, value: Dict[str, Any]) -> None:
        conn = database.get_db_connection()
        try:
            conn.execute(
                """
                INSERT INTO kv_state (key, value, updated_at) VALUES (?, ?, datetime('now'))
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                """,
                (key, _dump(value)),
            )
            conn.commit()
        finally:
            conn.close()

    def compare_and_swap(self, key, expected, new) -> bool:
        conn = database.get_db_connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute("SELECT value FROM kv_state WHERE key = ?", (key,)).fetchone()
            current = _load(row[0], key) if row else None
            if current != expected:
                conn.rollback()
                return False
            if new is None:
                conn.execute("DELETE FROM kv_state WHERE key = ?", (key,))
            else:
                conn.execute(
                    """
                    INSERT INTO kv_state (key, value, updated_at) VALUES (?, ?, datetime('now'))
                    ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                    """,
                    (key, _dump(new)),
                )
            conn.commit()
            return True
        except (sqlite3.Error, StateStoreError):
            conn.rollback()
            raise
        finally:
            conn.close()


def create_state_store(settings) -> StateStore:
    """Builds the configured backend ("file" or "sqlite")."""
    if settings.state_backend == 'sqlite':
        return SqliteStateStore()
    return FileStateStore(settings.resolve(settings.state_dir))


class AdvisoryLock:
    """
    Cross-run mutual exclusion with a time-to-live.

    A lock older than its TTL is considered abandoned and is reclaimed.
    """

    def __init__(self, store: StateStore, key: str, ttl_seconds: int, clock: Optional[Clock] = None,
                 owner: Optional[str] = None):
        self.store = store
        self.key = key
        self.ttl_seconds = ttl_seconds
        self.clock = clock or Clock()
        self.owner = owner or f"{os.getpid()}-{uuid.uuid4().hex[:8]}"
        self._held: Optional[Dict[str, Any]] = None

    @property
    def held(self) -> bool:
        return self._held is not None

    def acquire(self) -> bool:
        now = self.clock.now()
        current = self.store.get(self.key)
        if current and float(current.get('expires_ts', 0)) > now.timestamp():
            logger.info(f"🔒 Lock {self.key} held by {current.get('owner')} until {current.get('expires_at')}")
            return False
        if current:
            logger.warning(f"🔓 Reclaiming stale lock {self.key} (owner {current.get('owner')}, acquired {current.get('acquired_at')})")

        mine = {
            'owner': self.owner,
            'acquired_at': now.isoformat(timespec='seconds'),
            'expires_at': now.fromtimestamp(now.timestamp() + self.ttl_seconds, now.tzinfo).isoformat(timespec='seconds'),
            'expires_ts': now.timestamp() + self.ttl_seconds,
        }
        if not self.store.compare_and_swap(self.key, current, mine):
            logger.info(f"🔒 Lost race for lock {self.key}")
            return False
        self._held = mine
        return True

    def release(self) -> None:
        if self._held is None:
            return
        if not self.store.compare_and_swap(self.key, self._held, None):
            logger.warning(f"Lock {self.key} was taken over before release")
        self._held = None

    def __enter__(self):
        if not self.acquire():
            raise LockContention(f"Lock {self.key} is held by another run", key=self.key)
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False
