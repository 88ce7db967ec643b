"""
Pydantic models for sessions, the remote manifest, and local sync state.

Remote documents are written with camelCase keys so a manifest produced
by any client of the format can be read back here. Python code always
works with the snake_case attribute names.
"""

from __future__ import annotations

import base64
import binascii
import logging
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

logger = logging.getLogger("sessionsync.models")

MANIFEST_VERSION = 1
DEFAULT_TITLE = "Untitled Session"
DEFAULT_EXTENSION = ".jsonl"


class _WireModel(BaseModel):
    """Base for documents that travel to the remote store."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> str:
        """Serialize with camelCase keys."""
        return self.model_dump_json(by_alias=True)


class SyncStatus(str, Enum):
    """Lifecycle state of the sync engine."""

    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"
    DISABLED = "disabled"
    SETUP_REQUIRED = "setup-required"


class SyncAction(str, Enum):
    """Outcome of conflict resolution for one session."""

    PUSH = "push"
    PULL = "pull"
    SKIP = "skip"
    NEW_LOCAL = "new-local"
    NEW_REMOTE = "new-remote"


class SessionMetadata(BaseModel):
    """Everything known about a local session without reading its body."""

    id: str
    workspace_id: str
    workspace_path: str = ""
    file_extension: str = DEFAULT_EXTENSION
    mtime_ms: float = 0
    size_bytes: int = 0
    file_path: Optional[str] = None
    custom_title: str = DEFAULT_TITLE
    creation_date: int = 0
    last_message_date: int = 0

    @property
    def activity_date(self) -> int:
        """Last activity, falling back to creation time."""
        return self.last_message_date or self.creation_date


class ChatSession(BaseModel):
    """A chat session with its raw file content.

    The content is an opaque blob. It is never parsed or re-serialized,
    so append-only logs survive the round trip byte for byte.
    """

    id: str
    workspace_id: str
    workspace_path: str = ""
    file_extension: str = DEFAULT_EXTENSION
    raw_content: bytes = b""
    custom_title: str = DEFAULT_TITLE
    creation_date: int = 0
    last_message_date: int = 0

    @classmethod
    def from_metadata(cls, meta: SessionMetadata, raw_content: bytes = b"") -> ChatSession:
        return cls(
            id=meta.id,
            workspace_id=meta.workspace_id,
            workspace_path=meta.workspace_path,
            file_extension=meta.file_extension,
            raw_content=raw_content,
            custom_title=meta.custom_title,
            creation_date=meta.creation_date,
            last_message_date=meta.last_message_date,
        )


class ManifestEntry(_WireModel):
    """One session as recorded in the remote manifest."""

    session_id: str
    workspace_id: str = ""
    workspace_path: str = ""
    file_extension: str = DEFAULT_EXTENSION
    custom_title: str = DEFAULT_TITLE
    last_message_date: int = 0
    creation_date: int = 0
    sha: str = ""
    device_id: str = ""
    updated_at: int = 0


class SyncManifest(_WireModel):
    """The single remote document indexing every synced session."""

    version: int = MANIFEST_VERSION
    device_id: str = ""
    last_sync_timestamp: int = 0
    entries: dict[str, ManifestEntry] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _migrate(cls, data: Any) -> Any:
        """Normalize older manifest shapes into the keyed mapping."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if data.get("version") is None:
            data["version"] = MANIFEST_VERSION

        entries = data.get("entries")
        if entries is None:
            data["entries"] = {}
        elif isinstance(entries, list):
            migrated: dict[str, Any] = {}
            for raw in entries:
                if not isinstance(raw, dict):
                    continue
                session_id = raw.get("sessionId") or raw.get("session_id")
                if not session_id:
                    logger.warning("Dropping legacy manifest entry without a session id")
                    continue
                migrated[session_id] = raw
            logger.info("Migrated legacy manifest with %d entries", len(migrated))
            data["entries"] = migrated
        elif isinstance(entries, dict):
            normalized: dict[str, Any] = {}
            for key, raw in entries.items():
                if isinstance(raw, dict) and not (raw.get("sessionId") or raw.get("session_id")):
                    raw = {**raw, "sessionId": key}
                normalized[key] = raw
            data["entries"] = normalized
        return data


class SessionPayload(_WireModel):
    """Plaintext body of an encrypted session object.

    ``content`` holds the base64 of the raw file bytes. Older clients
    stored the file as text under ``raw_content``; both are accepted.
    """

    content: Optional[str] = None
    encoding: str = "base64"
    raw_content: Optional[str] = None
    file_extension: Optional[str] = None
    workspace_path: Optional[str] = None
    custom_title: Optional[str] = None
    creation_date: Optional[int] = None
    last_message_date: Optional[int] = None

    @classmethod
    def from_session(cls, session: ChatSession) -> SessionPayload:
        return cls(
            content=base64.b64encode(session.raw_content).decode("ascii"),
            file_extension=session.file_extension,
            workspace_path=session.workspace_path,
            custom_title=session.custom_title,
            creation_date=session.creation_date,
            last_message_date=session.last_message_date,
        )

    def decoded_content(self) -> Optional[bytes]:
        """Raw file bytes, or None when the payload carries no content."""
        if self.content is not None:
            try:
                return base64.b64decode(self.content, validate=True)
            except (binascii.Error, ValueError):
                logger.warning("Session payload has malformed base64 content")
                return None
        if self.raw_content:
            return self.raw_content.encode("utf-8")
        return None


class EncryptedPayload(BaseModel):
    """Salt, IV, and ciphertext+tag, each base64-encoded."""

    salt: str
    iv: str
    ciphertext: str
    version: int


class HashCacheEntry(BaseModel):
    """A content hash plus the fingerprint it was computed from."""

    hash: str
    mtime_ms: float
    size_bytes: int

    def matches(self, meta: SessionMetadata) -> bool:
        return self.mtime_ms == meta.mtime_ms and self.size_bytes == meta.size_bytes


class SyncStatusInfo(BaseModel):
    """Status snapshot handed to observers."""

    status: SyncStatus = SyncStatus.SETUP_REQUIRED
    last_sync_time: Optional[int] = None
    session_count: int = 0
    error_message: Optional[str] = None


class RemoteAccount(BaseModel):
    """Who we are talking to on the remote side."""

    owner: str
    repo: str


class SyncReport(BaseModel):
    """Counts from one sync cycle."""

    pulled: int = 0
    pushed: int = 0
    skipped: int = 0
    failed: int = 0
    oversized: int = 0
    backups: int = 0
    used_fallback: bool = False
    manifest_entries: int = 0
