"""Tests for last-write-wins conflict resolution."""

from __future__ import annotations

import re

import pytest

from sessionsync.models import ManifestEntry, SessionMetadata, SyncAction
from sessionsync.sync.resolver import backup_path, resolve, resolve_all


def _local(lmd: int = 1000, sid: str = "s1") -> SessionMetadata:
    return SessionMetadata(id=sid, workspace_id="ws", last_message_date=lmd, custom_title="Chat")


def _remote(lmd: int = 1000, sha: str = "remote-sha", sid: str = "s1") -> ManifestEntry:
    return ManifestEntry(session_id=sid, last_message_date=lmd, sha=sha, custom_title="Chat")


class TestResolve:
    """Single-session decisions."""

    def test_local_only_is_new_local(self):
        assert resolve(_local(), None, "h").action == SyncAction.NEW_LOCAL

    def test_remote_only_is_new_remote(self):
        assert resolve(None, _remote()).action == SyncAction.NEW_REMOTE

    def test_neither_side_is_skip(self):
        assert resolve(None, None).action == SyncAction.SKIP

    def test_equal_hash_skips_regardless_of_time(self):
        """Identical content never moves, even if the timestamps disagree."""
        assert resolve(_local(lmd=9999), _remote(lmd=1, sha="same"), "same").action == SyncAction.SKIP
        assert resolve(_local(lmd=1), _remote(lmd=9999, sha="same"), "same").action == SyncAction.SKIP

    def test_local_newer_pushes(self):
        assert resolve(_local(lmd=2000), _remote(lmd=1000), "local-sha").action == SyncAction.PUSH

    def test_remote_newer_pulls(self):
        result = resolve(_local(lmd=1000), _remote(lmd=2000), "local-sha")
        assert result.action == SyncAction.PULL
        assert "newer" in result.reason

    def test_tie_with_different_content_pushes(self):
        assert resolve(_local(lmd=1000), _remote(lmd=1000), "local-sha").action == SyncAction.PUSH

    def test_tie_without_local_hash_skips(self):
        assert resolve(_local(lmd=1000), _remote(lmd=1000), None).action == SyncAction.SKIP

    def test_missing_hash_still_uses_time(self):
        assert resolve(_local(lmd=2000), _remote(lmd=1000), None).action == SyncAction.PUSH

    def test_reason_names_the_session(self):
        assert '"Chat"' in resolve(_local(), None, "h").reason


class TestResolveAll:
    """Resolution over the union of local and remote ids."""

    def test_covers_both_sides(self):
        local = {"a": _local(sid="a"), "b": _local(sid="b", lmd=5000)}
        remote = {"b": _remote(sid="b", lmd=1000), "c": _remote(sid="c")}
        actions = resolve_all(local, remote, {"a": "ha", "b": "hb"})

        assert {k: v.action for k, v in actions.items()} == {
            "a": SyncAction.NEW_LOCAL,
            "b": SyncAction.PUSH,
            "c": SyncAction.NEW_REMOTE,
        }

    def test_empty_inputs(self):
        assert resolve_all({}, {}, {}) == {}


class TestBackupPath:

    def test_explicit_timestamp(self):
        assert backup_path("s1", 1234) == "sessions/backups/s1.backup-1234.enc"

    @pytest.mark.parametrize("sid", ["abc", "0f3e-22"])
    def test_default_timestamp_is_epoch_millis(self, sid):
        assert re.fullmatch(rf"sessions/backups/{sid}\.backup-\d{{13}}\.enc", backup_path(sid))
