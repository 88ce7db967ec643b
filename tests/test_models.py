"""Tests for wire models: manifest migration and session payloads."""

from __future__ import annotations

import base64
import json

from sessionsync.models import (
    MANIFEST_VERSION,
    ChatSession,
    ManifestEntry,
    SessionMetadata,
    SessionPayload,
    SyncManifest,
)


class TestManifest:
    """Manifest serialization and legacy shapes."""

    def test_wire_keys_are_camel_case(self):
        manifest = SyncManifest(
            device_id="device-1",
            last_sync_timestamp=5,
            entries={"s1": ManifestEntry(session_id="s1", sha="abc", last_message_date=9)},
        )
        data = json.loads(manifest.to_wire())
        assert data["deviceId"] == "device-1"
        assert data["lastSyncTimestamp"] == 5
        assert data["entries"]["s1"]["sessionId"] == "s1"
        assert data["entries"]["s1"]["lastMessageDate"] == 9

    def test_reads_back_its_own_output(self):
        manifest = SyncManifest(entries={"s1": ManifestEntry(session_id="s1", sha="abc")})
        again = SyncManifest.model_validate_json(manifest.to_wire())
        assert again == manifest

    def test_list_entries_are_migrated(self):
        legacy = {
            "deviceId": "device-old",
            "entries": [
                {"sessionId": "a", "sha": "1"},
                {"sessionId": "b", "sha": "2"},
                {"sha": "orphan"},
            ],
        }
        manifest = SyncManifest.model_validate(legacy)
        assert set(manifest.entries) == {"a", "b"}
        assert manifest.version == MANIFEST_VERSION

    def test_missing_session_id_taken_from_key(self):
        manifest = SyncManifest.model_validate({"entries": {"k1": {"sha": "x"}}})
        assert manifest.entries["k1"].session_id == "k1"

    def test_missing_entries_and_version(self):
        manifest = SyncManifest.model_validate({"version": None})
        assert manifest.entries == {}
        assert manifest.version == MANIFEST_VERSION


class TestSessionPayload:
    """Plaintext payload inside each session object."""

    def _session(self, content: bytes = b"\x00raw\xffbytes") -> ChatSession:
        meta = SessionMetadata(id="s1", workspace_id="ws", custom_title="T", creation_date=1, last_message_date=2)
        return ChatSession.from_metadata(meta, content)

    def test_content_is_base64_of_raw_bytes(self):
        payload = SessionPayload.from_session(self._session())
        assert base64.b64decode(payload.content) == b"\x00raw\xffbytes"
        assert payload.encoding == "base64"

    def test_decoded_content_is_byte_exact(self):
        wire = SessionPayload.from_session(self._session()).to_wire()
        assert SessionPayload.model_validate_json(wire).decoded_content() == b"\x00raw\xffbytes"

    def test_legacy_raw_content(self):
        payload = SessionPayload.model_validate({"rawContent": "line1\nline2"})
        assert payload.decoded_content() == b"line1\nline2"

    def test_no_content_at_all(self):
        assert SessionPayload.model_validate({"customTitle": "x"}).decoded_content() is None

    def test_malformed_base64_yields_none(self):
        assert SessionPayload(content="@@@").decoded_content() is None


def test_activity_date_falls_back_to_creation():
    assert SessionMetadata(id="a", workspace_id="w", creation_date=7).activity_date == 7
    assert SessionMetadata(id="a", workspace_id="w", creation_date=7, last_message_date=9).activity_date == 9
