"""
Sync Engine -- pull, then push, then commit.

This is the command center. One cycle:

    authenticate -> fetch + decrypt manifest
                 -> scan local metadata -> refresh hashes -> resolve
                 -> pull newer remote sessions (decrypt, write, register)
                 -> push newer local sessions (read, encrypt, back up, stage)
                 -> batch commit sessions + manifest, or put them one by one

Only one cycle runs at a time. A request that arrives while a cycle is
in flight is dropped, not queued; the next trigger is the retry.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from pathlib import Path
from typing import Callable, Optional

from ..config import SyncConfig, load_config
from ..models import (
    DEFAULT_EXTENSION,
    ChatSession,
    ManifestEntry,
    SessionMetadata,
    SessionPayload,
    SyncAction,
    SyncManifest,
    SyncReport,
    SyncStatus,
    SyncStatusInfo,
)
from .backends import (
    AuthenticationFailure,
    RemoteStore,
    RemoteStoreError,
    StagedFile,
    create_store,
)
from .crypto import (
    DecryptionFailed,
    cached_encryptor,
    create_verification_token,
    decrypt_from_string,
    hash_content,
    verify_passphrase,
)
from .hash_cache import HashCache
from .resolver import backup_path, resolve_all
from .scanner import ContentSource, FileSystemContentSource, partition_recent, scan_metadata
from .state import SyncState

logger = logging.getLogger("sessionsync.sync.engine")

MANIFEST_PATH = "manifest.json"
VERIFICATION_PATH = "verification.token"
SESSIONS_DIR = "sessions"

MAX_PASSPHRASE_ATTEMPTS = 3
MIN_PASSPHRASE_LENGTH = 8
PULLED_TITLE = "Synced Session"

_SAFE_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")

StatusCallback = Callable[[SyncStatusInfo], None]
# (is_new_setup, attempt) -> passphrase, or None when the user cancels
PassphrasePrompt = Callable[[bool, int], Optional[str]]


class OversizedItem(Exception):
    """A session is larger than the configured push ceiling."""


def item_path(session_id: str) -> str:
    """Remote path of a session object."""
    return f"{SESSIONS_DIR}/{session_id}.enc"


def _now_ms() -> int:
    return int(time.time() * 1000)


class SyncEngine:
    """Orchestrates encrypted session sync against one remote store.

    Args:
        config: Sync configuration.
        source: Local session store.
        store: Remote object store.
        state: Persisted local state (device id, hash cache, passphrase).
        clock: Millisecond clock, for tests.
    """

    def __init__(
        self,
        config: SyncConfig,
        source: ContentSource,
        store: RemoteStore,
        state: SyncState,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.config = config
        self.source = source
        self.store = store
        self.state = state
        self._clock = clock or _now_ms
        self._lock = threading.Lock()
        self._status = SyncStatusInfo(
            status=SyncStatus.SETUP_REQUIRED,
            last_sync_time=state.last_sync_timestamp,
        )
        self._subscribers: list[StatusCallback] = []
        self._timer: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    @classmethod
    def from_home(cls, home: Path, token: Optional[str] = None) -> SyncEngine:
        """Build an engine from ``<home>/config.yaml`` and persisted state."""
        home = Path(home).expanduser()
        home.mkdir(parents=True, exist_ok=True)
        config = load_config(home)
        return cls(
            config=config,
            source=FileSystemContentSource(config.user_data_dir),
            store=create_store(config, token=token),
            state=SyncState.from_home(home),
        )

    # -- status -------------------------------------------------------------

    @property
    def status(self) -> SyncStatusInfo:
        with self._lock:
            return self._status.model_copy()

    def subscribe(self, callback: StatusCallback) -> Callable[[], None]:
        """Register a status observer. Returns a function that unsubscribes."""
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def _set_status_locked(
        self,
        status: SyncStatus,
        error_message: Optional[str] = None,
        last_sync_time: Optional[int] = None,
    ) -> SyncStatusInfo:
        self._status.status = status
        if status in (SyncStatus.IDLE, SyncStatus.SYNCING):
            self._status.error_message = None
        if error_message:
            self._status.error_message = error_message
        if last_sync_time is not None:
            self._status.last_sync_time = last_sync_time
        return self._status.model_copy()

    def _notify(self, info: SyncStatusInfo) -> None:
        for callback in list(self._subscribers):
            try:
                callback(info)
            except Exception as exc:
                logger.warning("Status observer failed: %s", exc)

    def _update_status(self, status: SyncStatus, error_message: Optional[str] = None, **kwargs) -> None:
        with self._lock:
            info = self._set_status_locked(status, error_message, **kwargs)
        self._notify(info)

    def enable(self) -> None:
        """Turn sync back on."""
        self.config.enabled = True
        self._update_status(SyncStatus.IDLE if self.state.passphrase else SyncStatus.SETUP_REQUIRED)

    def disable(self) -> None:
        """Turn sync off and stop the timer."""
        self.config.enabled = False
        self.stop_periodic_sync()
        self._update_status(SyncStatus.DISABLED)

    # -- setup and passphrase -------------------------------------------------

    def initialize(self, prompt: PassphrasePrompt) -> bool:
        """Authenticate, make sure the remote exists, and settle the passphrase.

        A stored passphrase is re-checked against the remote verification
        token. Without one, an existing token means another device set
        sync up already and the user gets three tries to enter the same
        passphrase; no token means first-time setup.

        Returns:
            True once the engine is idle and ready to sync.
        """
        try:
            account = self.store.authenticate()
            logger.info("Authenticated as %s", account.owner)
            self.store.ensure_repo()
            self.state.set_remote_location(account)
            logger.info("Sync repo ready: %s/%s", account.owner, account.repo)

            token = self.store.get_object(VERIFICATION_PATH)
            stored = self.state.passphrase

            if stored:
                if token is None:
                    self._write_verification_token(stored)
                elif not verify_passphrase(stored, token):
                    logger.warning("Stored passphrase no longer matches the remote verification token")
                    self.state.clear_passphrase()
                    if not self._prompt_and_verify(prompt, token):
                        self._update_status(SyncStatus.SETUP_REQUIRED)
                        return False
            elif token is not None:
                logger.info("Existing sync setup found, asking for passphrase")
                if not self._prompt_and_verify(prompt, token):
                    self._update_status(SyncStatus.SETUP_REQUIRED)
                    return False
            else:
                logger.info("First-time setup, asking for a new passphrase")
                passphrase = prompt(True, 1)
                if not passphrase:
                    self._update_status(SyncStatus.SETUP_REQUIRED)
                    return False
                if len(passphrase) < MIN_PASSPHRASE_LENGTH:
                    logger.error("Passphrase must be at least %d characters", MIN_PASSPHRASE_LENGTH)
                    self._update_status(SyncStatus.SETUP_REQUIRED)
                    return False
                self.state.set_passphrase(passphrase)
                self._write_verification_token(passphrase)
        except (RemoteStoreError, OSError) as exc:
            logger.error("Initialization failed: %s", exc)
            self._update_status(SyncStatus.ERROR, str(exc))
            return False

        self._update_status(SyncStatus.IDLE)
        logger.info("Sync engine initialized")
        return True

    def _write_verification_token(self, passphrase: str) -> None:
        token = create_verification_token(passphrase)
        self.store.put_object(
            VERIFICATION_PATH,
            token.encode("ascii"),
            "chore: Add passphrase verification token",
        )
        logger.info("Verification token stored in remote")

    def _prompt_and_verify(self, prompt: PassphrasePrompt, token: bytes) -> bool:
        for attempt in range(1, MAX_PASSPHRASE_ATTEMPTS + 1):
            passphrase = prompt(False, attempt)
            if not passphrase:
                return False
            if verify_passphrase(passphrase, token):
                self.state.set_passphrase(passphrase)
                logger.info("Passphrase verified")
                return True
            logger.warning("Incorrect passphrase (attempt %d/%d)", attempt, MAX_PASSPHRASE_ATTEMPTS)
        logger.error("Incorrect passphrase, maximum attempts reached")
        return False

    def set_passphrase(self, passphrase: str, verify: bool = True) -> bool:
        """Store a passphrase, checking it against the remote token first.

        Returns:
            False if the remote token exists and does not match.
        """
        if verify:
            token = self.store.get_object(VERIFICATION_PATH)
            if token is not None and not verify_passphrase(passphrase, token):
                return False
        self.state.set_passphrase(passphrase)
        return True

    # -- sync cycle -------------------------------------------------------------

    def sync(self) -> Optional[SyncReport]:
        """Run one full sync cycle.

        Returns:
            SyncReport on success, None if the cycle did not run or failed.
        """
        if not self.config.enabled:
            self._update_status(SyncStatus.DISABLED)
            return None

        passphrase = self.state.passphrase
        if not passphrase:
            self._update_status(SyncStatus.SETUP_REQUIRED)
            return None

        with self._lock:
            if self._status.status == SyncStatus.SYNCING:
                logger.info("Sync already in progress, skipping")
                return None
            info = self._set_status_locked(SyncStatus.SYNCING)
        self._notify(info)
        logger.info("Starting sync...")

        report = SyncReport()
        try:
            self.store.authenticate()
            cache = self.state.load_hash_cache()

            manifest: Optional[SyncManifest] = None
            manifest_unreadable = False
            try:
                manifest = self.fetch_manifest(passphrase)
            except AuthenticationFailure:
                raise
            except (DecryptionFailed, RemoteStoreError, ValueError) as exc:
                logger.error("Failed to read remote manifest, skipping pull: %s", exc)
                manifest_unreadable = True

            if manifest is not None:
                self._pull(manifest, passphrase, cache, report)
            elif not manifest_unreadable:
                logger.info("No remote manifest found -- nothing to pull")

            self._push(manifest, manifest_unreadable, passphrase, cache, report)
            self.state.save_hash_cache(cache)
        except Exception as exc:
            logger.error("Sync failed: %s", exc)
            self._update_status(SyncStatus.ERROR, str(exc))
            return None

        now = self._clock()
        self.state.last_sync_timestamp = now
        with self._lock:
            if report.manifest_entries:
                self._status.session_count = report.manifest_entries
            info = self._set_status_locked(SyncStatus.IDLE, last_sync_time=now)
        self._notify(info)
        logger.info(
            "Sync completed: %d pulled, %d pushed, %d failed",
            report.pulled, report.pushed, report.failed,
        )
        return report

    def fetch_manifest(self, passphrase: Optional[str] = None) -> Optional[SyncManifest]:
        """Fetch and decrypt the remote manifest.

        Returns:
            The manifest, or None if the remote has none yet.

        Raises:
            DecryptionFailed: Wrong passphrase or corrupted manifest.
        """
        passphrase = passphrase or self.state.passphrase
        if not passphrase:
            return None
        content = self.store.get_object(MANIFEST_PATH)
        if content is None:
            return None
        return SyncManifest.model_validate_json(decrypt_from_string(content, passphrase))

    def _local_view(
        self, metadata: list[SessionMetadata], cache: HashCache,
    ) -> tuple[dict[str, SessionMetadata], dict[str, str]]:
        hashes = cache.compute_all(metadata, self.source, workers=self.config.hash_workers)
        local = {m.id: m for m in metadata if m.id in hashes}
        return local, hashes

    # -- pull -------------------------------------------------------------------

    def _pull(self, manifest: SyncManifest, passphrase: str, cache: HashCache, report: SyncReport) -> None:
        logger.info("Pulling from remote...")
        metadata, stale = partition_recent(
            self.source.list_items(self.config.excluded_workspaces),
            self.config.max_age_days,
            now_ms=self._clock(),
        )
        local, hashes = self._local_view(metadata, cache)
        self.state.save_hash_cache(cache)

        actions = resolve_all(local, manifest.entries, hashes)
        for session_id, resolution in sorted(actions.items()):
            if resolution.action not in (SyncAction.PULL, SyncAction.NEW_REMOTE):
                continue
            if session_id in stale:
                logger.debug("Session %s exists locally outside the age window, not pulling", session_id)
                continue
            entry = manifest.entries[session_id]
            local_meta = local.get(session_id)
            try:
                if self._pull_session(session_id, entry, local_meta, passphrase):
                    report.pulled += 1
                    logger.info("Pulled session: %s", resolution.reason)
            except AuthenticationFailure:
                raise
            except (DecryptionFailed, RemoteStoreError, OSError, ValueError) as exc:
                report.failed += 1
                logger.error("Failed to pull session %s: %s", session_id, exc)

        logger.info("Pull complete: %d session(s) pulled", report.pulled)

    def _target_workspace(self, entry: ManifestEntry, local_meta: Optional[SessionMetadata]) -> str:
        if local_meta is not None:
            return local_meta.workspace_id
        if self.config.pull_workspace_id:
            return self.config.pull_workspace_id
        return self.source.resolve_context(entry) or entry.workspace_id

    def _pull_session(
        self,
        session_id: str,
        entry: ManifestEntry,
        local_meta: Optional[SessionMetadata],
        passphrase: str,
    ) -> bool:
        if not _SAFE_ID.match(session_id):
            raise ValueError(f"Refusing unsafe session id {session_id!r}")

        encrypted = self.store.get_object(item_path(session_id))
        if encrypted is None:
            logger.warning("Session object not found in remote: %s", item_path(session_id))
            return False

        payload = SessionPayload.model_validate_json(decrypt_from_string(encrypted, passphrase))
        content = payload.decoded_content()
        if content is None:
            logger.info("Skipping session %s: old payload format without content", session_id)
            return False

        workspace_id = self._target_workspace(entry, local_meta)
        session = ChatSession(
            id=session_id,
            workspace_id=workspace_id,
            workspace_path=payload.workspace_path or entry.workspace_path,
            file_extension=payload.file_extension or entry.file_extension or DEFAULT_EXTENSION,
            raw_content=content,
            custom_title=payload.custom_title or entry.custom_title or PULLED_TITLE,
            creation_date=payload.creation_date if payload.creation_date is not None else entry.creation_date,
            last_message_date=(
                payload.last_message_date if payload.last_message_date is not None
                else entry.last_message_date
            ),
        )
        logger.info('Writing session "%s" to workspace %s', session.custom_title, workspace_id)
        self.source.write_content(session)
        self.source.register_item(workspace_id, session)
        return True

    # -- push -------------------------------------------------------------------

    def _check_size(self, meta: SessionMetadata) -> None:
        if meta.size_bytes > self.config.max_size_bytes:
            raise OversizedItem(
                f"{meta.id} ({meta.size_bytes / 1024 / 1024:.1f} MB > {self.config.max_size_mb} MB limit)"
            )

    def _push(
        self,
        manifest: Optional[SyncManifest],
        manifest_unreadable: bool,
        passphrase: str,
        cache: HashCache,
        report: SyncReport,
    ) -> None:
        logger.info("Pushing to remote...")
        scanned = scan_metadata(
            self.source, self.config.max_age_days, self.config.excluded_workspaces,
            now_ms=self._clock(),
        )
        metadata: list[SessionMetadata] = []
        for meta in scanned:
            try:
                self._check_size(meta)
            except OversizedItem as exc:
                report.oversized += 1
                logger.info("Skipping oversized session %s", exc)
                continue
            metadata.append(meta)

        if manifest is not None:
            report.manifest_entries = len(manifest.entries)
        if not metadata:
            logger.info("No local sessions to push")
            return

        device_id = self.state.device_id
        if manifest is None:
            manifest = SyncManifest(device_id=device_id, last_sync_timestamp=self._clock())

        local, hashes = self._local_view(metadata, cache)
        self.state.save_hash_cache(cache)

        actions = resolve_all(local, manifest.entries, hashes)
        to_push = [
            (session_id, resolution)
            for session_id, resolution in sorted(actions.items())
            if resolution.action in (SyncAction.PUSH, SyncAction.NEW_LOCAL) and session_id in local
        ]
        report.skipped = sum(1 for r in actions.values() if r.action == SyncAction.SKIP)
        if not to_push:
            logger.info("No changes to push")
            return

        logger.info("%d session(s) need pushing, encrypting...", len(to_push))
        encryptor = cached_encryptor(passphrase)

        sessions: list[StagedFile] = []
        backups: list[StagedFile] = []
        for session_id, resolution in to_push:
            meta = local[session_id]
            try:
                content = self.source.read_content(meta.workspace_id, session_id)
                if content is None:
                    raise OSError("session file not found")

                session = ChatSession.from_metadata(meta, content)
                encrypted = encryptor.encrypt_to_string(SessionPayload.from_session(session).to_wire())

                overwriting = resolution.action == SyncAction.PUSH and session_id in manifest.entries
                if overwriting or manifest_unreadable:
                    existing = self.store.get_object(item_path(session_id))
                    if existing is not None:
                        backups.append(StagedFile(path=backup_path(session_id, self._clock()), content=existing))
            except AuthenticationFailure:
                raise
            except (RemoteStoreError, OSError) as exc:
                report.failed += 1
                logger.error("Could not prepare session %s for push: %s", session_id, exc)
                continue

            sessions.append(StagedFile(path=item_path(session_id), content=encrypted.encode("ascii")))
            manifest.entries[session_id] = ManifestEntry(
                session_id=session_id,
                workspace_id=meta.workspace_id,
                workspace_path=meta.workspace_path,
                file_extension=meta.file_extension,
                custom_title=meta.custom_title,
                last_message_date=meta.last_message_date,
                creation_date=meta.creation_date,
                sha=hash_content(content),
                device_id=device_id,
                updated_at=self._clock(),
            )
            logger.debug("Staged session: %s", resolution.reason)

        if not sessions:
            logger.info("No files to push after loading content")
            return

        manifest.last_sync_timestamp = self._clock()
        manifest.device_id = device_id
        manifest_file = StagedFile(
            path=MANIFEST_PATH,
            content=encryptor.encrypt_to_string(manifest.to_wire()).encode("ascii"),
        )

        # Backups land before the objects they preserve; the manifest goes last.
        files = backups + sessions + [manifest_file]
        count = len(sessions)
        try:
            self.store.batch_commit(files, [], f"sync: Push {count} session(s) from {device_id}")
            logger.info("Push complete: %d session(s) pushed", count)
        except AuthenticationFailure:
            raise
        except RemoteStoreError as exc:
            logger.warning("Batch commit failed, falling back to individual puts: %s", exc)
            report.used_fallback = True
            for f in files:
                self.store.put_object(f.path, f.content, f"sync: Update {f.path}")
            logger.info("Push complete (individual): %d session(s) pushed", count)

        report.pushed = count
        report.backups = len(backups)
        report.manifest_entries = len(manifest.entries)

    # -- periodic sync ------------------------------------------------------------

    def start_periodic_sync(self, interval_minutes: Optional[float] = None) -> None:
        """Sync on a background timer until stopped."""
        self.stop_periodic_sync()
        minutes = interval_minutes or self.config.sync_interval_minutes
        stop = threading.Event()
        self._stop_event = stop
        self._timer = threading.Thread(
            target=self._periodic_loop,
            args=(minutes * 60, stop),
            name="sessionsync-periodic",
            daemon=True,
        )
        self._timer.start()
        logger.info("Starting periodic sync every %s minute(s)", minutes)

    def stop_periodic_sync(self) -> None:
        self._stop_event.set()
        timer, self._timer = self._timer, None
        if timer is not None and timer is not threading.current_thread():
            timer.join(timeout=5)

    def _periodic_loop(self, interval: float, stop: threading.Event) -> None:
        while not stop.wait(timeout=interval):
            try:
                self.sync()
            except Exception as exc:
                logger.error("Periodic sync failed: %s", exc)

    # -- maintenance ----------------------------------------------------------------

    def reindex(self) -> int:
        """Register every local session with the editor's index again."""
        count = 0
        for meta in self.source.list_items(self.config.excluded_workspaces):
            content = self.source.read_content(meta.workspace_id, meta.id)
            if content is None:
                continue
            self.source.register_item(meta.workspace_id, ChatSession.from_metadata(meta, content))
            count += 1
        logger.info("Reindexed %d session(s)", count)
        return count

    def reset(self) -> None:
        """Forget all local sync state. Remote data is not touched."""
        self.stop_periodic_sync()
        self.state.reset()
        with self._lock:
            self._status.last_sync_time = None
            self._status.session_count = 0
            info = self._set_status_locked(SyncStatus.SETUP_REQUIRED)
        self._notify(info)
        logger.info("Sync state reset")
