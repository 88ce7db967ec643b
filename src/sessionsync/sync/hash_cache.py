"""
Hash cache -- skip re-reading sessions whose size and mtime are unchanged.

A cached hash is trusted only while the fingerprint (size, mtime) it was
computed from still matches the session's current metadata. Any
mismatch forces a full read and a fresh hash.

Writes are serialized per session id, so parallel scans racing on the
same session cannot lose an update.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Iterable, Optional

from ..models import HashCacheEntry, SessionMetadata
from .crypto import hash_content
from .scanner import ContentSource

logger = logging.getLogger("sessionsync.sync.hash_cache")


class HashCache:
    """Session id -> last computed hash and its fingerprint."""

    def __init__(self, entries: Optional[dict[str, HashCacheEntry]] = None):
        self._entries: dict[str, HashCacheEntry] = dict(entries or {})
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._entries

    def _lock_for(self, session_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(session_id)
            if lock is None:
                lock = self._locks[session_id] = threading.Lock()
            return lock

    def get(self, session_id: str) -> Optional[HashCacheEntry]:
        return self._entries.get(session_id)

    def entries(self) -> dict[str, HashCacheEntry]:
        """Snapshot of all entries, for persistence."""
        with self._guard:
            return dict(self._entries)

    def clear(self) -> None:
        with self._guard:
            self._entries.clear()
            self._locks.clear()

    def get_or_compute(self, meta: SessionMetadata, source: ContentSource) -> tuple[Optional[str], bool]:
        """Return the content hash for a session, reading it only if needed.

        Args:
            meta: Current metadata of the session.
            source: Where to read the content from on a cache miss.

        Returns:
            (hash, was_read). hash is None when the content is gone.
        """
        with self._lock_for(meta.id):
            cached = self._entries.get(meta.id)
            if cached is not None and cached.matches(meta):
                return cached.hash, False

            content = source.read_content(meta.workspace_id, meta.id)
            if content is None:
                return None, False

            digest = hash_content(content)
            self._entries[meta.id] = HashCacheEntry(
                hash=digest,
                mtime_ms=meta.mtime_ms,
                size_bytes=meta.size_bytes,
            )
            return digest, True

    def compute_all(
        self,
        metadata: Iterable[SessionMetadata],
        source: ContentSource,
        workers: int = 1,
    ) -> dict[str, str]:
        """Hash every session, in parallel when ``workers > 1``.

        Sessions whose content cannot be read are left out of the result.
        """
        items = list(metadata)

        def _one(meta: SessionMetadata) -> tuple[str, Optional[str], bool]:
            try:
                digest, was_read = self.get_or_compute(meta, source)
            except OSError as exc:
                logger.error("Failed to hash session %s: %s", meta.id, exc)
                return meta.id, None, False
            return meta.id, digest, was_read

        if workers > 1 and len(items) > 1:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="hash") as pool:
                results = list(pool.map(_one, items))
        else:
            results = [_one(m) for m in items]

        hashes = {sid: digest for sid, digest, _ in results if digest}
        reads = sum(1 for _, _, was_read in results if was_read)
        logger.debug("Hashed %d sessions (%d read from disk)", len(hashes), reads)
        return hashes
