"""
Conflict resolution -- last-write-wins on the session's activity time.

Nothing is ever merged. One side wins; when a push overwrites a remote
object, the engine first copies that object to a timestamped backup
path so a lost version can be recovered by hand.

    local only                       -> new-local   (push)
    remote only                      -> new-remote  (pull)
    both, hash equal                 -> skip
    both, local newer                -> push
    both, remote newer               -> pull
    both, same time, hash differs    -> push        (local device wins ties)
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Mapping, Optional, Union

from pydantic import BaseModel

from ..models import ChatSession, ManifestEntry, SessionMetadata, SyncAction

LocalSession = Union[ChatSession, SessionMetadata]

BACKUP_PREFIX = "sessions/backups"


class Resolution(BaseModel):
    """The chosen action plus a human-readable reason for the log."""

    action: SyncAction
    reason: str


def _iso(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat()


def resolve(
    local: Optional[LocalSession],
    remote: Optional[ManifestEntry],
    local_hash: Optional[str] = None,
) -> Resolution:
    """Decide what to do with a single session.

    Args:
        local: The local session, or None if it only exists remotely.
        remote: The manifest entry, or None if it only exists locally.
        local_hash: SHA-256 of the local content.

    Returns:
        Resolution: One of the five sync actions.
    """
    if local is not None and remote is None:
        return Resolution(
            action=SyncAction.NEW_LOCAL,
            reason=f'New local session "{local.custom_title}" -- will push to remote.',
        )

    if local is None and remote is not None:
        return Resolution(
            action=SyncAction.NEW_REMOTE,
            reason=f'New remote session "{remote.custom_title}" -- will pull to local.',
        )

    if local is not None and remote is not None:
        if local_hash and local_hash == remote.sha:
            return Resolution(
                action=SyncAction.SKIP,
                reason=f'Session "{local.custom_title}" is up to date.',
            )

        local_time = local.last_message_date
        remote_time = remote.last_message_date

        if local_time > remote_time:
            return Resolution(
                action=SyncAction.PUSH,
                reason=(
                    f'Local session "{local.custom_title}" is newer '
                    f"(local: {_iso(local_time)}, remote: {_iso(remote_time)})."
                ),
            )

        if remote_time > local_time:
            return Resolution(
                action=SyncAction.PULL,
                reason=(
                    f'Remote session "{local.custom_title}" is newer '
                    f"(remote: {_iso(remote_time)}, local: {_iso(local_time)})."
                ),
            )

        # Equal timestamps: the local device wins. Arbitrary but deterministic.
        if local_hash:
            return Resolution(
                action=SyncAction.PUSH,
                reason=(
                    f'Session "{local.custom_title}" has the same timestamp but '
                    "different content -- pushing local version."
                ),
            )

        return Resolution(
            action=SyncAction.SKIP,
            reason=f'Session "{local.custom_title}" has no local hash to compare.',
        )

    return Resolution(action=SyncAction.SKIP, reason="No session data available.")


def resolve_all(
    local_sessions: Mapping[str, LocalSession],
    remote_entries: Mapping[str, ManifestEntry],
    local_hashes: Mapping[str, str],
) -> dict[str, Resolution]:
    """Resolve every session id present on either side."""
    results: dict[str, Resolution] = {}
    for session_id in {*local_sessions, *remote_entries}:
        results[session_id] = resolve(
            local_sessions.get(session_id),
            remote_entries.get(session_id),
            local_hashes.get(session_id),
        )
    return results


def backup_path(session_id: str, timestamp_ms: Optional[int] = None) -> str:
    """Remote path for a backup of a session about to be overwritten."""
    ts = timestamp_ms if timestamp_ms is not None else int(time.time() * 1000)
    return f"{BACKUP_PREFIX}/{session_id}.backup-{ts}.enc"
