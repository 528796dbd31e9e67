"""State store: one JSON document guarded by one advisory lock file.

All writes are atomic (temp file + os.replace) so a reader never observes a
partially written document. ``update`` is the only read-modify-write path:
it holds an exclusive ``flock`` on a sibling lock file for the whole
load → mutate → save cycle, which gives every caller across processes a
total order over the document.
"""

from __future__ import annotations

import errno
import fcntl
import json
import logging
import os
import re
import tempfile
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TypeVar

from .errors import RepoPathNotFoundError, StateCorruptError
from .models import RepoInfo, State

logger = logging.getLogger(__name__)

T = TypeVar("T")

STATE_FILENAME = "state.json"
LOCK_FILENAME = "state.lock"

MAX_STATE_FILE_SIZE = 64 * 1024 * 1024  # 64 MB

_NON_SLUG_RE = re.compile(r"[^a-z0-9-]")
_DASH_RUN_RE = re.compile(r"-+")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _serialize(state: State) -> bytes:
    """Deterministic encoding: sorted keys, 2-space indent, trailing newline."""
    text = json.dumps(state.to_dict(), indent=2, sort_keys=True, ensure_ascii=False)
    return (text + "\n").encode("utf-8")


def _atomic_write(path: Path, payload: bytes) -> None:
    """Write bytes atomically via temp file + rename in the same directory."""
    tmp_fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f"{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(tmp_fd, "wb") as f:
            f.write(payload)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def _read_bytes(path: Path) -> bytes | None:
    """Read a file with symlink rejection and a size limit. None if missing."""
    try:
        fd = os.open(path, os.O_RDONLY | os.O_NOFOLLOW)
    except FileNotFoundError:
        return None
    except OSError as e:
        if e.errno in (errno.ELOOP, errno.EMLINK):
            raise StateCorruptError(f"Refusing to read symlink: {path}") from e
        raise
    with os.fdopen(fd, "rb") as f:
        size = os.fstat(f.fileno()).st_size
        if size > MAX_STATE_FILE_SIZE:
            raise StateCorruptError(
                f"State file too large: {path} ({size} bytes, max {MAX_STATE_FILE_SIZE})"
            )
        return f.read()


def sanitize_repo_name(path: str) -> str:
    """Convert a filesystem path into a key-safe slug."""
    if path.startswith("~/"):
        path = os.path.join(os.path.expanduser("~"), path[2:])
    path = path.removeprefix("/").lower()
    path = path.replace("/", "-").replace(" ", "-")
    path = _NON_SLUG_RE.sub("", path)
    path = _DASH_RUN_RE.sub("-", path)
    return path.strip("-")


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class StateStore:
    """Lock-guarded persistence for the pool's state document."""

    def __init__(self, state_dir: str | os.PathLike[str]) -> None:
        self.state_dir = Path(state_dir)

    @property
    def state_path(self) -> Path:
        return self.state_dir / STATE_FILENAME

    @property
    def lock_path(self) -> Path:
        return self.state_dir / LOCK_FILENAME

    def load(self) -> State:
        """Read the document. A missing file yields an empty document."""
        data = _read_bytes(self.state_path)
        if data is None:
            return State()
        try:
            raw = json.loads(data)
        except json.JSONDecodeError as e:
            raise StateCorruptError(f"unmarshal state {self.state_path}: {e}") from e
        if not isinstance(raw, dict):
            raise StateCorruptError(f"unmarshal state {self.state_path}: not an object")
        try:
            return State.from_dict(raw)
        except (TypeError, ValueError) as e:
            raise StateCorruptError(f"decode state {self.state_path}: {e}") from e

    def save(self, state: State) -> bool:
        """Persist the document. Returns False when the bytes were unchanged."""
        self.state_dir.mkdir(parents=True, exist_ok=True)
        payload = _serialize(state)
        if _read_bytes(self.state_path) == payload:
            return False
        _atomic_write(self.state_path, payload)
        return True

    @contextmanager
    def _lock(self) -> Iterator[None]:
        """Hold the exclusive advisory lock for the enclosed block."""
        self.state_dir.mkdir(parents=True, exist_ok=True)
        lock_fd = open(self.lock_path, "a")
        try:
            fcntl.flock(lock_fd, fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_fd, fcntl.LOCK_UN)
        finally:
            lock_fd.close()

    def update(self, mutator: Callable[[State], T]) -> T:
        """Run ``mutator`` on a freshly loaded document and save the result.

        If the mutator raises, nothing is written and the exception
        propagates. The mutator's return value is passed through.
        """
        with self._lock():
            state = self.load()
            result = mutator(state)
            self.save(state)
            return result

    # -----------------------------------------------------------------------
    # Repo naming
    # -----------------------------------------------------------------------

    def get_or_create_repo_name(self, source_path: str) -> str:
        """Return the slug for ``source_path``, registering it if new."""

        def mutate(state: State) -> str:
            for name in sorted(state.repos):
                if state.repos[name].source_path == source_path:
                    return name

            base = sanitize_repo_name(source_path)
            name = base
            suffix = 2
            while name in state.repos:
                name = f"{base}-{suffix}"
                suffix += 1

            state.repos[name] = RepoInfo(source_path=source_path)
            logger.debug("registered repo %s as %s", source_path, name)
            return name

        return self.update(mutate)

    def find_repo_name(self, source_path: str) -> str | None:
        """Read-only slug lookup; None when the path was never registered."""
        state = self.load()
        for name in sorted(state.repos):
            if state.repos[name].source_path == source_path:
                return name
        return None

    def repo_path_for_workspace(self, ws_path: str) -> tuple[str | None, bool]:
        """Map a workspace path back to its source repo.

        Returns ``(source_path, True)`` for a known workspace and
        ``(None, False)`` otherwise. Raises RepoPathNotFoundError when the
        workspace is known but its repo record is missing.
        """
        state = self.load()
        ws_path = os.path.normpath(ws_path)
        for ws in state.workspaces.values():
            if os.path.normpath(ws.path) != ws_path:
                continue
            repo = state.repos.get(ws.repo)
            if repo is None or not repo.source_path:
                raise RepoPathNotFoundError(f"repo source path not found for workspace {ws.name}")
            return repo.source_path, True
        return None, False
