"""Exception taxonomy for the pool and its trackers.

Validation errors subclass ``ValueError`` and not-found errors subclass
``LookupError`` so callers can catch either the specific class or the
builtin family.
"""

from __future__ import annotations


class WspoolError(Exception):
    """Base for every error raised by this package."""


# ---------------------------------------------------------------------------
# I/O
# ---------------------------------------------------------------------------


class StateCorruptError(WspoolError):
    """The state file exists but cannot be parsed. Never auto-repaired."""


class ConfigError(WspoolError):
    """A config file exists but cannot be read or parsed."""


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationError(WspoolError, ValueError):
    """Input rejected before any state was touched."""


class AmbiguousIDPrefixError(ValidationError):
    """An ID prefix matches more than one record."""


# ---------------------------------------------------------------------------
# Not found
# ---------------------------------------------------------------------------


class NotFoundError(WspoolError, LookupError):
    pass


class WorkspaceNotFoundError(NotFoundError):
    pass


class WorkspaceRootNotFoundError(NotFoundError):
    """The path is not inside a jj workspace."""


class RepoPathNotFoundError(NotFoundError):
    """A workspace is tracked but its owning repo record is missing."""


class OrphanedWorkspaceError(NotFoundError):
    """A directory inside the managed workspace tree that no record owns."""


class SessionNotFoundError(NotFoundError):
    pass


class OpencodeSessionNotFoundError(NotFoundError):
    pass


class OpencodeDaemonNotFoundError(NotFoundError):
    pass


class JobNotFoundError(NotFoundError):
    pass


# ---------------------------------------------------------------------------
# Invariant violations
# ---------------------------------------------------------------------------


class InvariantError(WspoolError):
    """A transition the current record state does not allow."""


class WorkspaceNotAcquiredError(InvariantError):
    pass


class SessionAlreadyActiveError(InvariantError):
    pass


class SessionNotActiveError(InvariantError):
    pass


class OpencodeSessionAlreadyActiveError(InvariantError):
    pass


class OpencodeSessionNotActiveError(InvariantError):
    pass


class OpencodeDaemonAlreadyRunningError(InvariantError):
    pass


class OpencodeDaemonNotRunningError(InvariantError):
    pass


class JobAlreadyActiveError(InvariantError):
    pass


class JobNotActiveError(InvariantError):
    pass


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


class HookError(WspoolError):
    """The repository's on-create script failed."""

    def __init__(self, message: str, returncode: int | None = None) -> None:
        self.returncode = returncode
        super().__init__(message)


class DestroyError(WspoolError):
    """Best-effort cleanup finished with one or more failures."""

    def __init__(self, errors: list[Exception]) -> None:
        self.errors = list(errors)
        details = "; ".join(str(e) for e in self.errors)
        super().__init__(f"{len(self.errors)} cleanup step(s) failed: {details}")
