"""Thin synchronous wrapper around the ``jj`` CLI.

Only the commands the pool needs are exposed. Every failure raises
``JJError``; a refusal to edit an immutable commit raises the narrower
``ImmutableRevisionError`` so callers can branch on the type rather than on
message text.
"""

from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence

from .errors import WspoolError

logger = logging.getLogger(__name__)

ROOT_REV = "root()"
WORKING_COPY_REV = "@"


class JJError(WspoolError):
    """A jj subprocess exited non-zero or could not be started."""

    def __init__(self, *, command: Sequence[str], returncode: int, output: str) -> None:
        self.command = tuple(command)
        self.returncode = returncode
        self.output = output
        message = f"{' '.join(command)} failed ({returncode})"
        if output.strip():
            message = f"{message}: {output.strip()}"
        super().__init__(message)


class ImmutableRevisionError(JJError):
    """The target revision is immutable and cannot be edited in place."""


def _is_immutable_output(output: str) -> bool:
    return "immutable" in output.lower()


class JJClient:
    """Runs jj commands. Each call blocks until the command exits."""

    def __init__(self, binary: str = "jj") -> None:
        self.binary = binary

    def _run(self, args: Sequence[str], cwd: str, stdin: str | None = None) -> str:
        command = [self.binary, *args]
        logger.debug("running %s in %s", " ".join(command), cwd)
        try:
            result = subprocess.run(
                command,
                cwd=cwd,
                input=stdin,
                capture_output=True,
                text=True,
            )
        except (FileNotFoundError, NotADirectoryError) as e:
            raise JJError(command=command, returncode=-1, output=str(e)) from e

        if result.returncode != 0:
            output = (result.stderr or "") + (result.stdout or "")
            error_cls = ImmutableRevisionError if _is_immutable_output(output) else JJError
            raise error_cls(command=command, returncode=result.returncode, output=output)
        return result.stdout.strip()

    def _log_field(self, workspace_path: str, rev: str, template: str) -> str:
        return self._run(["log", "-r", rev, "-T", template, "--no-graph"], cwd=workspace_path)

    def workspace_root(self, path: str) -> str:
        return self._run(["workspace", "root"], cwd=path)

    def workspace_add(self, repo_path: str, name: str, workspace_path: str) -> None:
        self._run(["workspace", "add", "--name", name, workspace_path], cwd=repo_path)

    def workspace_forget(self, repo_path: str, name: str) -> None:
        self._run(["workspace", "forget", name], cwd=repo_path)

    def edit(self, workspace_path: str, rev: str) -> None:
        self._run(["edit", rev], cwd=workspace_path)

    def describe(self, workspace_path: str, message: str) -> None:
        self._run(["describe", "--stdin"], cwd=workspace_path, stdin=message)

    def new_change(self, workspace_path: str, parent_rev: str) -> str:
        """Create a change on top of ``parent_rev``; returns its change id."""
        self._run(["new", parent_rev], cwd=workspace_path)
        return self.current_change_id(workspace_path)

    def new_change_with_message(self, workspace_path: str, parent_rev: str, message: str) -> str:
        change_id = self.new_change(workspace_path, parent_rev)
        if message.strip():
            self.describe(workspace_path, message)
        return change_id

    def current_change_id(self, workspace_path: str) -> str:
        return self._log_field(workspace_path, WORKING_COPY_REV, "change_id")

    def change_id_at(self, workspace_path: str, rev: str) -> str:
        return self._log_field(workspace_path, rev, "change_id")
