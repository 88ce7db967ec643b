"""
Metadata scanner -- find local sessions without reading their bodies.

The content source is the boundary to the editor's session store. The
sync core only ever asks it for metadata, raw bytes, a write, and an
index registration after a pull.

On-disk layout handled by :class:`FileSystemContentSource`::

    <user_data>/User/workspaceStorage/<workspace_id>/
    ├── workspace.json          # {"folder": "file:///path/to/project"}
    ├── state.vscdb             # SQLite key/value store with the session index
    └── chatSessions/
        ├── <session_id>.json   # legacy single-document format
        └── <session_id>.jsonl  # append-only log, first line is a header record
"""

from __future__ import annotations

import base64
import json
import logging
import os
import platform
import sqlite3
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional
from urllib.parse import unquote

from ..models import (
    DEFAULT_EXTENSION,
    DEFAULT_TITLE,
    ChatSession,
    ManifestEntry,
    SessionMetadata,
)

logger = logging.getLogger("sessionsync.sync.scanner")

SESSION_EXTENSIONS = (".jsonl", ".json")
HEADER_PEEK_BYTES = 8192
DAY_MS = 24 * 60 * 60 * 1000

INDEX_KEY = "chat.ChatSessionStore.index"
MODEL_CACHE_KEY = "agentSessions.model.cache"
STATE_CACHE_KEY = "agentSessions.state.cache"


# ---------------------------------------------------------------------------
# Content source interface
# ---------------------------------------------------------------------------

class ContentSource(ABC):
    """Where local sessions come from and where pulled ones go."""

    @abstractmethod
    def list_items(self, excluded_workspaces: Optional[list[str]] = None) -> list[SessionMetadata]:
        """List metadata for every local session."""

    @abstractmethod
    def read_content(self, workspace_id: str, session_id: str) -> Optional[bytes]:
        """Raw bytes of a session, or None if it is gone."""

    @abstractmethod
    def write_content(self, session: ChatSession) -> None:
        """Write a pulled session to local storage verbatim."""

    def register_item(self, workspace_id: str, session: ChatSession) -> None:
        """Make a freshly written session visible to the editor."""

    def resolve_context(self, entry: ManifestEntry) -> Optional[str]:
        """Local workspace a remote session belongs in, if one matches."""
        return None


# ---------------------------------------------------------------------------
# Display-field extraction
# ---------------------------------------------------------------------------

def _display_fields(raw: Any) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    if not isinstance(raw, dict):
        return fields
    title = raw.get("customTitle")
    if isinstance(title, str) and title:
        fields["custom_title"] = title
    for key, attr in (("creationDate", "creation_date"), ("lastMessageDate", "last_message_date")):
        value = raw.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            fields[attr] = int(value)
    return fields


class MetadataExtractor(ABC):
    """Best-effort peek at a session file for its title and dates."""

    @abstractmethod
    def extract(self, path: Path) -> dict[str, Any]:
        """Return any of custom_title, creation_date, last_message_date."""


class JsonlHeaderExtractor(MetadataExtractor):
    """Reads only the first record of an append-only ``.jsonl`` log."""

    def extract(self, path: Path) -> dict[str, Any]:
        with open(path, "rb") as f:
            chunk = f.read(HEADER_PEEK_BYTES)
        first_line = chunk.split(b"\n", 1)[0].decode("utf-8", errors="replace").strip()
        if not first_line:
            return {}
        record = json.loads(first_line)
        if isinstance(record, dict) and record.get("kind") == 0:
            return _display_fields(record.get("value"))
        return {}


class JsonDocumentExtractor(MetadataExtractor):
    """Parses a legacy single-document ``.json`` session."""

    def extract(self, path: Path) -> dict[str, Any]:
        return _display_fields(json.loads(path.read_text(encoding="utf-8")))


EXTRACTORS: dict[str, MetadataExtractor] = {
    ".jsonl": JsonlHeaderExtractor(),
    ".json": JsonDocumentExtractor(),
}


def extract_display_fields(path: Path, ext: str) -> dict[str, Any]:
    """Title and dates for a session file; defaults on any failure."""
    defaults: dict[str, Any] = {
        "custom_title": DEFAULT_TITLE,
        "creation_date": 0,
        "last_message_date": 0,
    }
    extractor = EXTRACTORS.get(ext)
    if extractor is None:
        return defaults
    try:
        return {**defaults, **extractor.extract(path)}
    except (OSError, ValueError) as exc:
        logger.debug("Metadata extraction failed for %s: %s", path.name, exc)
        return defaults


# ---------------------------------------------------------------------------
# Scanning
# ---------------------------------------------------------------------------

def is_recent(meta: SessionMetadata, max_age_days: Optional[int], now_ms: Optional[int] = None) -> bool:
    """Whether a session was touched within the age window.

    Sessions with neither an activity nor a creation time are always
    kept: missing metadata must never silently drop content.
    """
    if not max_age_days or max_age_days <= 0:
        return True
    activity = meta.activity_date
    if not activity:
        return True
    now = now_ms if now_ms is not None else int(time.time() * 1000)
    return activity >= now - max_age_days * DAY_MS


def scan_metadata(
    source: ContentSource,
    max_age_days: Optional[int] = None,
    excluded_workspaces: Optional[list[str]] = None,
    now_ms: Optional[int] = None,
) -> list[SessionMetadata]:
    """List local session metadata, keeping only recently active sessions.

    Args:
        source: The content source to enumerate.
        max_age_days: Drop sessions idle for longer than this. None keeps all.
        excluded_workspaces: Workspace path prefixes to skip.
        now_ms: Reference time, for tests.

    Returns:
        list[SessionMetadata]: Metadata for sessions inside the window.
    """
    recent, _ = partition_recent(source.list_items(excluded_workspaces or []), max_age_days, now_ms)
    return recent


def partition_recent(
    items: list[SessionMetadata],
    max_age_days: Optional[int] = None,
    now_ms: Optional[int] = None,
) -> tuple[list[SessionMetadata], set[str]]:
    """Split metadata into sessions inside the age window and ids outside it."""
    recent = [m for m in items if is_recent(m, max_age_days, now_ms)]
    kept = {m.id for m in recent}
    stale = {m.id for m in items if m.id not in kept}
    logger.debug("Scanned %d sessions, %d recent", len(items), len(recent))
    return recent, stale


# ---------------------------------------------------------------------------
# Filesystem content source
# ---------------------------------------------------------------------------

def detect_user_data_dir() -> Path:
    """Locate the editor's user data directory for this platform.

    Prefers an Insiders install when both exist.
    """
    home = Path.home()
    system = platform.system()
    if system == "Linux":
        base = home / ".config"
    elif system == "Darwin":
        base = home / "Library" / "Application Support"
    elif system == "Windows":
        base = Path(os.environ.get("APPDATA", home / "AppData" / "Roaming"))
    else:
        raise RuntimeError(f"Unsupported platform: {system}")

    for variant in ("Code - Insiders", "Code"):
        candidate = base / variant
        if candidate.exists():
            return candidate
    return base / "Code"


def _resource_uri(session_id: str) -> str:
    encoded = base64.b64encode(session_id.encode("utf-8")).decode("ascii")
    return f"vscode-chat-session://local/{encoded}"


class FileSystemContentSource(ContentSource):
    """Sessions stored in the editor's per-workspace storage folders."""

    def __init__(self, user_data_dir: Optional[Path] = None):
        self.user_data_dir = Path(user_data_dir).expanduser() if user_data_dir else detect_user_data_dir()

    @property
    def storage_dir(self) -> Path:
        return self.user_data_dir / "User" / "workspaceStorage"

    def _chat_dir(self, workspace_id: str) -> Path:
        return self.storage_dir / workspace_id / "chatSessions"

    # -- workspace discovery ------------------------------------------------

    def list_workspace_ids(self) -> list[str]:
        if not self.storage_dir.exists():
            return []
        return sorted(
            d.name for d in self.storage_dir.iterdir()
            if d.is_dir() and (d / "chatSessions").exists()
        )

    def workspace_path(self, workspace_id: str) -> str:
        ws_json = self.storage_dir / workspace_id / "workspace.json"
        fallback = f"unknown-workspace-{workspace_id}"
        try:
            data = json.loads(ws_json.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return fallback
        if not isinstance(data, dict):
            return fallback
        uri = data.get("folder") or data.get("workspace") or ""
        if not isinstance(uri, str):
            return fallback
        if uri.startswith("file://"):
            return unquote(uri[len("file://"):])
        return uri or fallback

    def workspace_path_map(self) -> dict[str, str]:
        """Map of workspace path -> workspace id for known workspaces."""
        if not self.storage_dir.exists():
            return {}
        mapping: dict[str, str] = {}
        for d in sorted(self.storage_dir.iterdir()):
            if not d.is_dir():
                continue
            ws_path = self.workspace_path(d.name)
            if not ws_path.startswith("unknown-workspace-"):
                mapping[ws_path] = d.name
        return mapping

    def find_local_workspace_id(self, workspace_path: str) -> Optional[str]:
        """Exact path match first, then a match on the folder name."""
        if not workspace_path:
            return None
        mapping = self.workspace_path_map()
        if workspace_path in mapping:
            return mapping[workspace_path]
        target = Path(workspace_path).name
        for ws_path, ws_id in mapping.items():
            if Path(ws_path).name == target:
                return ws_id
        return None

    def resolve_context(self, entry: ManifestEntry) -> Optional[str]:
        return self.find_local_workspace_id(entry.workspace_path)

    # -- session ids ----------------------------------------------------------

    def _read_item(self, db: sqlite3.Connection, key: str) -> Optional[str]:
        row = db.execute("SELECT value FROM ItemTable WHERE key = ?", (key,)).fetchone()
        if not row or row[0] is None:
            return None
        value = row[0]
        return value.decode("utf-8") if isinstance(value, bytes) else value

    def _index_ids(self, workspace_id: str) -> list[str]:
        db_path = self.storage_dir / workspace_id / "state.vscdb"
        if not db_path.exists():
            return []
        try:
            db = sqlite3.connect(f"file:{db_path}?mode=ro", uri=True)
            try:
                raw = self._read_item(db, INDEX_KEY)
            finally:
                db.close()
        except sqlite3.Error as exc:
            logger.warning("Could not read session index for %s: %s", workspace_id, exc)
            return []
        if not raw:
            return []
        try:
            index = json.loads(raw)
        except ValueError:
            return []
        entries = index.get("entries") if isinstance(index, dict) else None
        if isinstance(entries, dict):
            return list(entries)
        if isinstance(entries, list):
            return [e["sessionId"] for e in entries if isinstance(e, dict) and e.get("sessionId")]
        return []

    def _scan_ids(self, workspace_id: str) -> list[str]:
        chat_dir = self._chat_dir(workspace_id)
        if not chat_dir.exists():
            return []
        ids = []
        for f in sorted(chat_dir.iterdir()):
            if f.suffix in SESSION_EXTENSIONS and f.stem not in ids:
                ids.append(f.stem)
        return ids

    def session_ids(self, workspace_id: str) -> list[str]:
        """Indexed ids first, then any session file the index does not list."""
        ids = self._index_ids(workspace_id)
        known = set(ids)
        ids.extend(sid for sid in self._scan_ids(workspace_id) if sid not in known)
        return ids

    def _resolve_file(self, workspace_id: str, session_id: str) -> Optional[Path]:
        for ext in SESSION_EXTENSIONS:
            candidate = self._chat_dir(workspace_id) / f"{session_id}{ext}"
            if candidate.exists():
                return candidate
        return None

    # -- ContentSource --------------------------------------------------------

    def read_metadata(self, workspace_id: str, session_id: str) -> Optional[SessionMetadata]:
        path = self._resolve_file(workspace_id, session_id)
        if path is None:
            return None
        try:
            stat = path.stat()
        except OSError as exc:
            logger.warning("Failed to stat session %s: %s", session_id, exc)
            return None
        return SessionMetadata(
            id=session_id,
            workspace_id=workspace_id,
            workspace_path=self.workspace_path(workspace_id),
            file_extension=path.suffix,
            mtime_ms=stat.st_mtime_ns / 1_000_000,
            size_bytes=stat.st_size,
            file_path=str(path),
            **extract_display_fields(path, path.suffix),
        )

    def list_items(self, excluded_workspaces: Optional[list[str]] = None) -> list[SessionMetadata]:
        excluded = excluded_workspaces or []
        found: list[SessionMetadata] = []
        for ws_id in self.list_workspace_ids():
            ws_path = self.workspace_path(ws_id)
            if any(ws_path.startswith(prefix) for prefix in excluded):
                continue
            for session_id in self.session_ids(ws_id):
                meta = self.read_metadata(ws_id, session_id)
                if meta is not None:
                    found.append(meta)
        return found

    def read_content(self, workspace_id: str, session_id: str) -> Optional[bytes]:
        path = self._resolve_file(workspace_id, session_id)
        if path is None:
            return None
        try:
            return path.read_bytes()
        except OSError:
            return None

    def write_content(self, session: ChatSession) -> None:
        chat_dir = self._chat_dir(session.workspace_id)
        chat_dir.mkdir(parents=True, exist_ok=True)
        target = chat_dir / f"{session.id}{session.file_extension or DEFAULT_EXTENSION}"
        tmp = target.with_name(target.name + ".tmp")
        tmp.write_bytes(session.raw_content)
        os.replace(tmp, target)

    def register_item(self, workspace_id: str, session: ChatSession) -> None:
        """Add the session to the three index keys the chat panel reads."""
        db_path = self.storage_dir / workspace_id / "state.vscdb"
        try:
            db_path.parent.mkdir(parents=True, exist_ok=True)
            db = sqlite3.connect(str(db_path))
            try:
                with db:
                    db.execute(
                        "CREATE TABLE IF NOT EXISTS ItemTable "
                        "(key TEXT UNIQUE ON CONFLICT REPLACE, value BLOB)"
                    )
                    self._register_in_index(db, session)
                    self._register_in_model_cache(db, session)
                    self._register_in_state_cache(db, session)
            finally:
                db.close()
        except sqlite3.Error as exc:
            logger.warning("Failed to update session index for %s: %s", workspace_id, exc)

    def _load_json(self, db: sqlite3.Connection, key: str, default: Any) -> Any:
        raw = self._read_item(db, key)
        if not raw:
            return default
        try:
            value = json.loads(raw)
        except ValueError:
            return default
        return value if isinstance(value, type(default)) else default

    def _store_json(self, db: sqlite3.Connection, key: str, value: Any) -> None:
        db.execute(
            "INSERT OR REPLACE INTO ItemTable (key, value) VALUES (?, ?)",
            (key, json.dumps(value)),
        )

    def _timing(self, session: ChatSession) -> dict[str, int]:
        return {
            "created": session.creation_date,
            "lastRequestStarted": session.last_message_date,
            "lastRequestEnded": session.last_message_date,
        }

    def _register_in_index(self, db: sqlite3.Connection, session: ChatSession) -> None:
        index = self._load_json(db, INDEX_KEY, {})
        entries = index.get("entries")
        if not isinstance(entries, dict):
            entries = {}
        if session.id in entries:
            return
        entries[session.id] = {
            "sessionId": session.id,
            "title": session.custom_title,
            "lastMessageDate": session.last_message_date,
            "timing": self._timing(session),
            "initialLocation": "panel",
            "hasPendingEdits": False,
            "isEmpty": False,
            "isExternal": False,
            "lastResponseState": 1,
        }
        self._store_json(db, INDEX_KEY, {"version": index.get("version", 1), "entries": entries})

    def _register_in_model_cache(self, db: sqlite3.Connection, session: ChatSession) -> None:
        resource = _resource_uri(session.id)
        cache = self._load_json(db, MODEL_CACHE_KEY, [])
        if any(isinstance(e, dict) and e.get("resource") == resource for e in cache):
            return
        cache.append({
            "providerType": "local",
            "providerLabel": "Local",
            "resource": resource,
            "icon": "vm",
            "label": session.custom_title,
            "status": 1,
            "timing": self._timing(session),
        })
        self._store_json(db, MODEL_CACHE_KEY, cache)

    def _register_in_state_cache(self, db: sqlite3.Connection, session: ChatSession) -> None:
        resource = _resource_uri(session.id)
        cache = self._load_json(db, STATE_CACHE_KEY, [])
        if any(isinstance(e, dict) and e.get("resource") == resource for e in cache):
            return
        cache.append({"resource": resource, "archived": False, "read": int(time.time() * 1000)})
        self._store_json(db, STATE_CACHE_KEY, cache)
