"""
Persisted local sync state.

Device identity, the hash cache, the last sync time, and the remote
location all live behind a small key/value interface. The passphrase
goes to a separate store so it can be kept in a private file.

Storage layout:
    ~/.sessionsync/
    ├── state.json      # device id, hash cache, last sync, remote location
    └── secrets.json    # passphrase (mode 0600)
"""

from __future__ import annotations

import json
import logging
import os
import secrets
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from ..models import HashCacheEntry, RemoteAccount
from .hash_cache import HashCache

logger = logging.getLogger("sessionsync.sync.state")


class KeyValueStore(ABC):
    """Minimal persistent key/value store."""

    @abstractmethod
    def get(self, key: str, default: Any = None) -> Any:
        """Value for key, or default."""

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        """Store a JSON-serializable value."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove a key if present."""

    @abstractmethod
    def clear(self) -> None:
        """Remove every key."""


class MemoryStore(KeyValueStore):
    """In-process store. Nothing survives a restart."""

    def __init__(self, data: Optional[dict[str, Any]] = None):
        self._data: dict[str, Any] = dict(data or {})

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def clear(self) -> None:
        self._data.clear()


class JsonFileStore(KeyValueStore):
    """A JSON document on disk, rewritten atomically on every change.

    Args:
        path: File to load from and save to.
        private: Restrict the file to the owner (0600).
    """

    def __init__(self, path: Path, private: bool = False):
        self.path = Path(path).expanduser()
        self.private = private
        self._lock = threading.Lock()
        self._data = self._load()

    def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Failed to load state from %s: %s", self.path, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(json.dumps(self._data, indent=2), encoding="utf-8")
        if self.private:
            os.chmod(tmp, 0o600)
        os.replace(tmp, self.path)

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = value
            self._save()

    def delete(self, key: str) -> None:
        with self._lock:
            if key in self._data:
                del self._data[key]
                self._save()

    def clear(self) -> None:
        with self._lock:
            self._data = {}
            self._save()


def new_device_id() -> str:
    return "device-" + secrets.token_hex(8)


class SyncState:
    """Everything one installation remembers between sync cycles.

    Owned by the sync engine and injected at construction. Nothing here
    is an ambient global.
    """

    DEVICE_ID = "device_id"
    HASH_CACHE = "hash_cache"
    LAST_SYNC = "last_sync_timestamp"
    REPO_OWNER = "repo_owner"
    REPO_NAME = "repo_name"
    PASSPHRASE = "passphrase"

    def __init__(self, store: KeyValueStore, secret_store: Optional[KeyValueStore] = None):
        self.store = store
        self.secret_store = secret_store if secret_store is not None else MemoryStore()

    @classmethod
    def from_home(cls, home: Path) -> SyncState:
        home = Path(home).expanduser()
        return cls(
            JsonFileStore(home / "state.json"),
            JsonFileStore(home / "secrets.json", private=True),
        )

    # -- device identity --------------------------------------------------

    @property
    def device_id(self) -> str:
        """This installation's id, created on first use."""
        device_id = self.store.get(self.DEVICE_ID)
        if not device_id:
            device_id = new_device_id()
            self.store.set(self.DEVICE_ID, device_id)
            logger.info("Created device id %s", device_id)
        return device_id

    # -- hash cache -------------------------------------------------------

    def load_hash_cache(self) -> HashCache:
        raw = self.store.get(self.HASH_CACHE) or {}
        entries: dict[str, HashCacheEntry] = {}
        for session_id, value in raw.items():
            try:
                entries[session_id] = HashCacheEntry(**value)
            except (TypeError, ValidationError):
                logger.debug("Dropping unreadable hash cache entry for %s", session_id)
        return HashCache(entries)

    def save_hash_cache(self, cache: HashCache) -> None:
        self.store.set(
            self.HASH_CACHE,
            {sid: entry.model_dump() for sid, entry in cache.entries().items()},
        )

    # -- sync bookkeeping ---------------------------------------------------

    @property
    def last_sync_timestamp(self) -> Optional[int]:
        return self.store.get(self.LAST_SYNC)

    @last_sync_timestamp.setter
    def last_sync_timestamp(self, value: int) -> None:
        self.store.set(self.LAST_SYNC, value)

    @property
    def remote_location(self) -> Optional[RemoteAccount]:
        owner = self.store.get(self.REPO_OWNER)
        repo = self.store.get(self.REPO_NAME)
        if owner and repo:
            return RemoteAccount(owner=owner, repo=repo)
        return None

    def set_remote_location(self, account: RemoteAccount) -> None:
        self.store.set(self.REPO_OWNER, account.owner)
        self.store.set(self.REPO_NAME, account.repo)

    # -- passphrase ---------------------------------------------------------

    @property
    def passphrase(self) -> Optional[str]:
        return self.secret_store.get(self.PASSPHRASE)

    def set_passphrase(self, passphrase: str) -> None:
        self.secret_store.set(self.PASSPHRASE, passphrase)

    def clear_passphrase(self) -> None:
        self.secret_store.delete(self.PASSPHRASE)

    # -- reset --------------------------------------------------------------

    def reset(self) -> None:
        """Forget everything local. Remote data is untouched."""
        self.store.clear()
        self.secret_store.clear()

    def snapshot(self) -> dict[str, Any]:
        """Serializable view for status output. Never includes secrets."""
        remote = self.remote_location
        return {
            "device_id": self.store.get(self.DEVICE_ID),
            "last_sync_timestamp": self.last_sync_timestamp,
            "remote": f"{remote.owner}/{remote.repo}" if remote else None,
            "cached_hashes": len(self.store.get(self.HASH_CACHE) or {}),
            "passphrase_set": bool(self.passphrase),
        }
