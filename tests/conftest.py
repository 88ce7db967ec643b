"""Shared test fixtures for sessionsync."""

from __future__ import annotations

import itertools
import json
from pathlib import Path
from typing import Optional

import pytest

from sessionsync.config import BackendType, SyncConfig
from sessionsync.models import ChatSession, SessionMetadata
from sessionsync.sync.backends import LocalStore
from sessionsync.sync.engine import SyncEngine
from sessionsync.sync.scanner import ContentSource
from sessionsync.sync.state import MemoryStore, SyncState

PASSPHRASE = "correct horse battery"
CLOCK_START = 1_750_000_000_000


class MemorySource(ContentSource):
    """Content source backed by a dict, for engine tests."""

    def __init__(self):
        self.items: dict[str, tuple[SessionMetadata, bytes]] = {}
        self.registered: list[tuple[str, str]] = []
        self._mtime = itertools.count(1)

    def add(
        self,
        session_id: str,
        content: bytes,
        workspace_id: str = "ws-1",
        last_message_date: int = CLOCK_START - 1000,
        **fields,
    ) -> SessionMetadata:
        meta = SessionMetadata(
            id=session_id,
            workspace_id=workspace_id,
            workspace_path=fields.pop("workspace_path", f"/projects/{workspace_id}"),
            mtime_ms=float(next(self._mtime)),
            size_bytes=len(content),
            last_message_date=last_message_date,
            creation_date=fields.pop("creation_date", last_message_date - 500),
            **fields,
        )
        self.items[session_id] = (meta, content)
        return meta

    def list_items(self, excluded_workspaces=None):
        excluded = excluded_workspaces or []
        return [
            meta for meta, _ in self.items.values()
            if not any(meta.workspace_path.startswith(p) for p in excluded)
        ]

    def read_content(self, workspace_id: str, session_id: str) -> Optional[bytes]:
        item = self.items.get(session_id)
        if item is None or item[0].workspace_id != workspace_id:
            return None
        return item[1]

    def write_content(self, session: ChatSession) -> None:
        meta = SessionMetadata(
            id=session.id,
            workspace_id=session.workspace_id,
            workspace_path=session.workspace_path,
            file_extension=session.file_extension,
            mtime_ms=float(next(self._mtime)),
            size_bytes=len(session.raw_content),
            custom_title=session.custom_title,
            creation_date=session.creation_date,
            last_message_date=session.last_message_date,
        )
        self.items[session.id] = (meta, session.raw_content)

    def register_item(self, workspace_id: str, session: ChatSession) -> None:
        self.registered.append((workspace_id, session.id))


@pytest.fixture
def sessionsync_home(tmp_path: Path) -> Path:
    """Temporary sessionsync home directory."""
    home = tmp_path / ".sessionsync"
    home.mkdir()
    return home


@pytest.fixture
def remote_root(tmp_path: Path) -> Path:
    """Directory acting as the shared remote."""
    return tmp_path / "remote"


@pytest.fixture
def make_engine(remote_root: Path):
    """Factory for engines that share one local-directory remote.

    Each call is a separate device with its own state and clock.
    """

    def _make(
        source: Optional[MemorySource] = None,
        passphrase: Optional[str] = PASSPHRASE,
        **config_overrides,
    ) -> SyncEngine:
        store = LocalStore(remote_root)
        store.ensure_repo()
        options = {
            "backend": BackendType.LOCAL,
            "local_path": remote_root,
            "max_age_days": 0,
            "hash_workers": 1,
            **config_overrides,
        }
        state = SyncState(MemoryStore(), MemoryStore())
        if passphrase:
            state.set_passphrase(passphrase)
        clock = itertools.count(CLOCK_START, 10)
        return SyncEngine(
            config=SyncConfig(**options),
            source=source if source is not None else MemorySource(),
            store=store,
            state=state,
            clock=lambda: next(clock),
        )

    return _make


@pytest.fixture
def user_data_dir(tmp_path: Path) -> Path:
    """Editor user-data dir with one workspace holding two sessions."""
    root = tmp_path / "Code"
    ws = root / "User" / "workspaceStorage" / "abc123"
    chat = ws / "chatSessions"
    chat.mkdir(parents=True)
    (ws / "workspace.json").write_text(
        json.dumps({"folder": "file:///home/dev/my%20project"}), encoding="utf-8"
    )
    header = {
        "kind": 0,
        "value": {
            "customTitle": "Refactor parser",
            "creationDate": CLOCK_START - 5000,
            "lastMessageDate": CLOCK_START - 1000,
        },
    }
    (chat / "s-jsonl.jsonl").write_text(
        json.dumps(header) + "\n" + json.dumps({"kind": 1, "v": "hello"}) + "\n",
        encoding="utf-8",
    )
    (chat / "s-json.json").write_text(
        json.dumps({"customTitle": "Old format", "creationDate": 100, "requests": []}),
        encoding="utf-8",
    )
    return root
