"""
Remote store backends -- where the encrypted sessions live.

Every backend stores opaque objects at paths and can commit a batch of
them in one step. The engine never sees anything but encrypted bytes.

GitHub: a private repository driven through the REST API. Single
    objects go through the contents API; batches go through the git
    data API (ref -> commit -> tree -> new tree -> commit -> ref).
Local: a plain directory (USB drive, NAS, mounted share) that emulates
    the same revision protocol with a HEAD file and commit records.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import os
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

import requests
from pydantic import BaseModel

from ..config import BackendType, SyncConfig
from ..models import RemoteAccount

logger = logging.getLogger("sessionsync.sync.backends")

INLINE_CONTENT_LIMIT = 500_000


class RemoteStoreError(Exception):
    """A remote store request failed."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class AuthenticationFailure(RemoteStoreError):
    """The remote credential is missing, expired, or rejected."""


class RemoteConflict(RemoteStoreError):
    """Someone else changed the object or history first."""


class BatchCommitConflict(RemoteStoreError):
    """A batch commit could not be applied atomically.

    Raised when the store has no history yet or the head moved while
    the commit was being built. Callers fall back to single puts.
    """


class StagedFile(BaseModel):
    """One object waiting to be committed."""

    path: str
    content: bytes


class RemoteStore(ABC):
    """Abstract remote object store."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable backend name."""

    @abstractmethod
    def available(self) -> bool:
        """Check if this backend is currently usable."""

    @abstractmethod
    def authenticate(self) -> RemoteAccount:
        """Establish credentials and report the account in use.

        Raises:
            AuthenticationFailure: If no usable credential exists.
        """

    @abstractmethod
    def ensure_repo(self) -> None:
        """Create the remote container if it does not exist yet."""

    @abstractmethod
    def get_object(self, path: str) -> Optional[bytes]:
        """Object content, or None if there is no object at path."""

    @abstractmethod
    def put_object(self, path: str, content: bytes, message: str) -> str:
        """Create or replace one object.

        Returns:
            The new revision id of the object.

        Raises:
            RemoteConflict: If the object changed between read and write.
        """

    @abstractmethod
    def delete_object(self, path: str, message: str) -> None:
        """Remove an object. Missing objects are ignored."""

    @abstractmethod
    def batch_commit(self, files: list[StagedFile], deletions: list[str], message: str) -> str:
        """Apply all files and deletions as a single revision.

        Returns:
            The new commit id, or "" when there was nothing to commit.

        Raises:
            BatchCommitConflict: If the batch could not be applied.
        """

    @abstractmethod
    def list_objects(self, directory: str) -> list[str]:
        """Paths of the objects directly inside directory."""


# ---------------------------------------------------------------------------
# GitHub
# ---------------------------------------------------------------------------

class GitHubStore(RemoteStore):
    """Private GitHub repository accessed through the REST API.

    Args:
        repo_name: Repository under the authenticated user's account.
        token: Bearer token. Falls back to the ``token_env_var`` variable.
        token_env_var: Environment variable holding the token.
        api_base: API root, for GitHub Enterprise.
        timeout: Per-request timeout in seconds.
        session: Preconfigured requests session (tests inject a mock).
    """

    USER_AGENT = "sessionsync"

    def __init__(
        self,
        repo_name: str = "copilot-session-sync",
        token: Optional[str] = None,
        token_env_var: str = "GITHUB_TOKEN",
        api_base: str = "https://api.github.com",
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        self.repo_name = repo_name
        self.token_env_var = token_env_var
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self.owner = ""
        self.default_branch = "main"
        self._token = token
        self._session = session or requests.Session()

    @property
    def name(self) -> str:
        return "github"

    @property
    def token(self) -> str:
        return self._token or os.environ.get(self.token_env_var, "")

    def available(self) -> bool:
        return bool(self.token)

    @property
    def _repo(self) -> str:
        return f"/repos/{self.owner}/{self.repo_name}"

    def _request(
        self,
        method: str,
        endpoint: str,
        body: Optional[dict[str, Any]] = None,
        allow_404: bool = True,
    ) -> tuple[Any, int]:
        """Make an authenticated GitHub API call.

        Returns:
            (parsed body, status). A 404 yields (None, 404) when allowed.

        Raises:
            AuthenticationFailure: On a missing token or a 401/403.
            RemoteConflict: On a 409 or 422.
            RemoteStoreError: On any other failure.
        """
        token = self.token
        if not token:
            raise AuthenticationFailure(
                f"No GitHub token. Set {self.token_env_var} or configure a token."
            )

        url = endpoint if endpoint.startswith("http") else f"{self.api_base}{endpoint}"
        headers = {
            "Authorization": f"Bearer {token}",
            "User-Agent": self.USER_AGENT,
            "Accept": "application/vnd.github+json",
        }

        try:
            response = self._session.request(
                method, url, headers=headers, json=body, timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise RemoteStoreError(f"GitHub request failed: {exc} ({method} {endpoint})") from exc

        status = response.status_code
        content_type = response.headers.get("content-type", "")
        if "application/json" in content_type:
            try:
                data = response.json()
            except ValueError:
                data = response.text
        else:
            data = response.text

        if status == 404 and allow_404:
            return None, status
        if 200 <= status < 300:
            return data, status

        message = data.get("message") if isinstance(data, dict) else None
        detail = f"GitHub API error: {message or f'HTTP {status}'} ({method} {endpoint})"
        if status == 401:
            raise AuthenticationFailure(detail, status)
        if status == 403:
            if response.headers.get("x-ratelimit-remaining") == "0":
                raise RemoteStoreError(f"GitHub rate limit exceeded ({method} {endpoint})", status)
            raise AuthenticationFailure(detail, status)
        if status in (409, 422):
            raise RemoteConflict(detail, status)
        raise RemoteStoreError(detail, status)

    # -- account and repository ---------------------------------------------

    def authenticate(self) -> RemoteAccount:
        data, status = self._request("GET", "/user")
        if status == 404 or not isinstance(data, dict) or not data.get("login"):
            raise AuthenticationFailure("GitHub did not return an account for this token.")
        self.owner = data["login"]
        return RemoteAccount(owner=self.owner, repo=self.repo_name)

    def repo_exists(self) -> bool:
        data, status = self._request("GET", self._repo)
        if status == 200 and isinstance(data, dict):
            self.default_branch = data.get("default_branch") or "main"
        return status == 200

    def create_repo(self) -> dict[str, Any]:
        data, _ = self._request("POST", "/user/repos", {
            "name": self.repo_name,
            "private": True,
            "description": (
                "Encrypted chat session sync -- managed by sessionsync. Do not edit manually."
            ),
            "auto_init": True,
        }, allow_404=False)
        self.default_branch = data.get("default_branch") or "main"
        logger.info("Created private sync repo %s/%s", self.owner, self.repo_name)
        return data

    def ensure_repo(self) -> None:
        if not self.owner:
            self.authenticate()
        if not self.repo_exists():
            self.create_repo()

    # -- single objects -------------------------------------------------------

    def get_file(self, path: str) -> Optional[dict[str, Any]]:
        """Contents API record for a file, or None if missing."""
        data, status = self._request("GET", f"{self._repo}/contents/{path}")
        if status == 404 or not isinstance(data, dict):
            return None
        return data

    def get_object(self, path: str) -> Optional[bytes]:
        record = self.get_file(path)
        if record is None:
            return None
        content = record.get("content") or ""
        if record.get("encoding") != "base64" or (not content and record.get("size")):
            # Files over 1 MB come back without inline content.
            blob, _ = self._request("GET", f"{self._repo}/git/blobs/{record['sha']}", allow_404=False)
            content = blob.get("content", "")
        return base64.b64decode(content)

    def put_object(self, path: str, content: bytes, message: str) -> str:
        existing = self.get_file(path)
        body: dict[str, Any] = {
            "message": message,
            "content": base64.b64encode(content).decode("ascii"),
            "branch": self.default_branch,
        }
        if existing and existing.get("sha"):
            body["sha"] = existing["sha"]
        data, _ = self._request("PUT", f"{self._repo}/contents/{path}", body, allow_404=False)
        return data["content"]["sha"]

    def delete_object(self, path: str, message: str) -> None:
        existing = self.get_file(path)
        if existing is None:
            return
        self._request("DELETE", f"{self._repo}/contents/{path}", {
            "message": message,
            "sha": existing["sha"],
            "branch": self.default_branch,
        }, allow_404=False)

    def list_objects(self, directory: str) -> list[str]:
        data, status = self._request("GET", f"{self._repo}/contents/{directory}")
        if status == 404 or not isinstance(data, list):
            return []
        return [item["path"] for item in data if item.get("type") == "file"]

    # -- batch commit -----------------------------------------------------------

    def _tree_entry(self, staged: StagedFile) -> dict[str, Any]:
        entry: dict[str, Any] = {"path": staged.path, "mode": "100644", "type": "blob"}
        if len(staged.content) < INLINE_CONTENT_LIMIT:
            try:
                entry["content"] = staged.content.decode("utf-8")
                return entry
            except UnicodeDecodeError:
                pass
        blob, _ = self._request("POST", f"{self._repo}/git/blobs", {
            "content": base64.b64encode(staged.content).decode("ascii"),
            "encoding": "base64",
        }, allow_404=False)
        entry["sha"] = blob["sha"]
        return entry

    def batch_commit(self, files: list[StagedFile], deletions: list[str], message: str) -> str:
        if not files and not deletions:
            return ""
        branch = self.default_branch
        try:
            ref, _ = self._request("GET", f"{self._repo}/git/ref/heads/{branch}", allow_404=False)
            head_sha = ref["object"]["sha"]

            commit, _ = self._request("GET", f"{self._repo}/git/commits/{head_sha}", allow_404=False)
            base_tree = commit["tree"]["sha"]

            tree = [self._tree_entry(f) for f in files]
            tree.extend(
                {"path": p, "mode": "100644", "type": "blob", "sha": None} for p in deletions
            )

            new_tree, _ = self._request("POST", f"{self._repo}/git/trees", {
                "base_tree": base_tree,
                "tree": tree,
            }, allow_404=False)

            new_commit, _ = self._request("POST", f"{self._repo}/git/commits", {
                "message": message,
                "tree": new_tree["sha"],
                "parents": [head_sha],
            }, allow_404=False)

            self._request("PATCH", f"{self._repo}/git/refs/heads/{branch}", {
                "sha": new_commit["sha"],
            }, allow_404=False)
        except AuthenticationFailure:
            raise
        except (RemoteStoreError, KeyError, TypeError) as exc:
            raise BatchCommitConflict(f"Batch commit failed: {exc}") from exc

        logger.info("Committed %d file(s) as %s", len(files) + len(deletions), new_commit["sha"][:12])
        return new_commit["sha"]


# ---------------------------------------------------------------------------
# Local directory
# ---------------------------------------------------------------------------

def _sha(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class LocalStore(RemoteStore):
    """A directory used as the remote store.

    Storage layout:
        <root>/
        ├── manifest.json, verification.token, sessions/...   # objects
        └── .sessionsync/
            ├── HEAD                  # current commit id
            ├── lock                  # held by the writer, if any
            └── commits/<id>.json     # parent, message, paths

    Several processes (or devices on a shared mount) may point at the
    same directory. Writers take the lock file, and each instance
    remembers what it read since its last ``authenticate()``: a put over
    an object that changed since it was read raises ``RemoteConflict``,
    and a batch commit on a head that moved raises ``BatchCommitConflict``.
    """

    def __init__(self, root: Path, lock_timeout: float = 10.0):
        self.root = Path(root).expanduser()
        self.lock_timeout = lock_timeout
        self._meta = self.root / ".sessionsync"
        self._lock = threading.Lock()
        self._seen: dict[str, Optional[str]] = {}
        self._base_head: Optional[str] = None
        self._reading = False

    @property
    def name(self) -> str:
        return "local"

    def available(self) -> bool:
        return self.root.exists() or self.root.parent.exists()

    def authenticate(self) -> RemoteAccount:
        """Check the directory and start a fresh read session."""
        if not self.available():
            raise AuthenticationFailure(f"Local store not reachable: {self.root}")
        with self._lock:
            self._seen.clear()
            self._base_head = None
            self._reading = False
        return RemoteAccount(owner="local", repo=self.root.name)

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        """Hold both the in-process lock and the store's lock file."""
        with self._lock:
            self._meta.mkdir(parents=True, exist_ok=True)
            lock_file = self._meta / "lock"
            deadline = time.monotonic() + self.lock_timeout
            while True:
                try:
                    fd = os.open(lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                    break
                except FileExistsError:
                    if time.monotonic() >= deadline:
                        raise RemoteStoreError(
                            f"Local store is locked by another writer (remove {lock_file} if stale)"
                        )
                    time.sleep(0.05)
            try:
                os.write(fd, str(os.getpid()).encode("ascii"))
                os.close(fd)
                yield
            finally:
                lock_file.unlink(missing_ok=True)

    def ensure_repo(self) -> None:
        with self._exclusive():
            if self._head() is None:
                self._record_commit(None, "Initial commit", [], [])
                logger.info("Initialized local sync store at %s", self.root)

    def _object_path(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if self.root.resolve() not in target.parents:
            raise RemoteStoreError(f"Object path escapes the store: {path}")
        return target

    def _head(self) -> Optional[str]:
        head_file = self._meta / "HEAD"
        if not head_file.exists():
            return None
        return head_file.read_text(encoding="utf-8").strip() or None

    def _record_commit(
        self, parent: Optional[str], message: str, paths: list[str], deletions: list[str],
    ) -> str:
        record = {
            "parent": parent,
            "message": message,
            "paths": paths,
            "deletions": deletions,
            "timestamp": int(time.time() * 1000),
        }
        commit_id = _sha(json.dumps(record, sort_keys=True).encode("utf-8"))[:40]
        commits = self._meta / "commits"
        commits.mkdir(parents=True, exist_ok=True)
        (commits / f"{commit_id}.json").write_text(json.dumps(record, indent=2), encoding="utf-8")
        (self._meta / "HEAD").write_text(commit_id, encoding="utf-8")
        # Our own commits do not count as the head moving under us.
        if self._base_head == parent:
            self._base_head = commit_id
        return commit_id

    def get_object(self, path: str) -> Optional[bytes]:
        target = self._object_path(path)
        with self._lock:
            if not self._reading:
                self._base_head = self._head()
                self._reading = True
            content = target.read_bytes() if target.is_file() else None
            self._seen[path] = _sha(content) if content is not None else None
        return content

    def _revision(self, target: Path) -> Optional[str]:
        return _sha(target.read_bytes()) if target.is_file() else None

    def put_object(self, path: str, content: bytes, message: str) -> str:
        with self._exclusive():
            target = self._object_path(path)
            if path in self._seen and self._revision(target) != self._seen[path]:
                raise RemoteConflict(f"Object changed since it was read: {path}")
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp = target.with_name(target.name + ".tmp")
            tmp.write_bytes(content)
            os.replace(tmp, target)
            self._record_commit(self._head(), message, [path], [])
            revision = _sha(content)
            self._seen[path] = revision
            return revision

    def delete_object(self, path: str, message: str) -> None:
        with self._exclusive():
            target = self._object_path(path)
            if not target.is_file():
                return
            if path in self._seen and self._revision(target) != self._seen[path]:
                raise RemoteConflict(f"Object changed since it was read: {path}")
            target.unlink()
            self._record_commit(self._head(), message, [], [path])
            self._seen[path] = None

    def list_objects(self, directory: str) -> list[str]:
        base = self._object_path(directory)
        if not base.is_dir():
            return []
        return sorted(
            f"{directory.rstrip('/')}/{f.name}" for f in base.iterdir()
            if f.is_file() and not f.name.endswith(".tmp")
        )

    def batch_commit(self, files: list[StagedFile], deletions: list[str], message: str) -> str:
        if not files and not deletions:
            return ""
        with self._exclusive():
            head = self._head()
            if head is None:
                raise BatchCommitConflict(f"Local store has no history: {self.root}")
            if self._reading and head != self._base_head:
                raise BatchCommitConflict("Local store head moved since it was read")

            staged: list[tuple[Path, Path]] = []
            try:
                for f in files:
                    target = self._object_path(f.path)
                    target.parent.mkdir(parents=True, exist_ok=True)
                    tmp = target.with_name(target.name + ".tmp")
                    tmp.write_bytes(f.content)
                    staged.append((tmp, target))
            except (OSError, RemoteStoreError) as exc:
                for tmp, _ in staged:
                    tmp.unlink(missing_ok=True)
                raise BatchCommitConflict(f"Batch commit failed: {exc}") from exc

            for tmp, target in staged:
                os.replace(tmp, target)
            for path in deletions:
                self._object_path(path).unlink(missing_ok=True)

            commit_id = self._record_commit(head, message, [f.path for f in files], list(deletions))
            for f in files:
                self._seen[f.path] = _sha(f.content)
            for path in deletions:
                self._seen[path] = None
            logger.info("Committed %d file(s) as %s", len(files) + len(deletions), commit_id[:12])
            return commit_id


def create_store(config: SyncConfig, token: Optional[str] = None) -> RemoteStore:
    """Factory function to create the configured backend.

    Args:
        config: Sync configuration.
        token: Explicit GitHub token, overriding the environment.

    Returns:
        Instantiated RemoteStore.

    Raises:
        ValueError: If the backend is not supported or not configured.
    """
    if config.backend == BackendType.GITHUB:
        return GitHubStore(
            repo_name=config.repo_name,
            token=token,
            token_env_var=config.token_env_var,
            api_base=config.api_base,
            timeout=config.request_timeout,
        )
    if config.backend == BackendType.LOCAL:
        if not config.local_path:
            raise ValueError("The local backend needs local_path in config.yaml")
        return LocalStore(config.local_path)
    raise ValueError(f"Unsupported backend: {config.backend}")
