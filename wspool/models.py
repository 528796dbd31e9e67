"""Pool data models: the state document and the records it holds.

Every record is a plain dataclass; timestamps are ISO 8601 strings in UTC.
The document is the only shared mutable resource and is only ever mutated
inside ``StateStore.update``.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import UTC, datetime, timedelta
from enum import StrEnum


class WorkspaceStatus(StrEnum):
    AVAILABLE = "available"
    ACQUIRED = "acquired"


class SessionStatus(StrEnum):
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class OpencodeSessionStatus(StrEnum):
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    KILLED = "killed"


class OpencodeDaemonStatus(StrEnum):
    RUNNING = "running"
    STOPPED = "stopped"


class JobStage(StrEnum):
    IMPLEMENTING = "implementing"
    TESTING = "testing"
    REVIEWING = "reviewing"
    COMMITTING = "committing"


class JobStatus(StrEnum):
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    ABANDONED = "abandoned"


def now_iso() -> str:
    return datetime.now(UTC).isoformat()


def to_iso(value: datetime | None) -> str:
    """Normalise a datetime to an aware UTC ISO string (now if None)."""
    if value is None:
        return now_iso()
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def parse_iso(value: str) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def age(started_at: str, now: datetime) -> timedelta | None:
    """Time since ``started_at``, floored at zero; None when never started."""
    started = parse_iso(started_at)
    if started is None:
        return None
    return max(now - started, timedelta(0))


def duration(record, now: datetime) -> timedelta | None:
    """How long a session or job ran, or has been running while active.

    A recorded ``duration_seconds`` wins over the timestamps; None when
    there is no timing data.
    """
    if record.status == "active":
        return age(record.started_at, now)
    seconds = getattr(record, "duration_seconds", None)
    if seconds:
        return timedelta(seconds=seconds)
    started = parse_iso(record.started_at)
    completed = parse_iso(record.completed_at or "")
    if started is None or completed is None:
        return None
    return max(completed - started, timedelta(0))


def _known_fields(cls, data: dict) -> dict:
    """Drop keys the dataclass does not declare (forward compatibility)."""
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


@dataclass
class RepoInfo:
    """A tracked source repository, keyed by slug."""

    source_path: str

    @classmethod
    def from_dict(cls, data: dict) -> RepoInfo:
        return cls(**_known_fields(cls, data))


@dataclass
class WorkspaceInfo:
    """One leasable workspace checkout: keyed by ``<slug>/<name>``."""

    name: str
    repo: str
    path: str
    status: WorkspaceStatus = WorkspaceStatus.AVAILABLE
    purpose: str = ""
    rev: str = ""
    acquired_by_pid: int = 0
    acquired_at: str = ""
    ttl_seconds: int = 0
    provisioned: bool = False
    # Set when an expired lease was swept; the working copy still holds
    # the previous holder's change until the next acquire resets it.
    needs_reset: bool = False
    created_at: str = ""
    updated_at: str = ""

    @property
    def key(self) -> str:
        return workspace_key(self.repo, self.name)

    @classmethod
    def from_dict(cls, data: dict) -> WorkspaceInfo:
        ws = cls(**_known_fields(cls, data))
        ws.status = WorkspaceStatus(ws.status)
        return ws


@dataclass
class Session:
    """A todo work session: at most one active per (repo, todo)."""

    id: str
    repo: str
    todo_id: str
    status: SessionStatus
    workspace_name: str = ""
    topic: str = ""
    started_at: str = ""
    updated_at: str = ""
    completed_at: str | None = None
    exit_code: int | None = None
    duration_seconds: int | None = None

    @classmethod
    def from_dict(cls, data: dict) -> Session:
        session = cls(**_known_fields(cls, data))
        session.status = SessionStatus(session.status)
        return session


@dataclass
class OpencodeSession:
    """An agent session started from a prompt."""

    id: str
    repo: str
    status: OpencodeSessionStatus
    prompt: str
    started_at: str = ""
    updated_at: str = ""
    completed_at: str | None = None
    exit_code: int | None = None
    duration_seconds: int | None = None
    log_path: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> OpencodeSession:
        session = cls(**_known_fields(cls, data))
        session.status = OpencodeSessionStatus(session.status)
        return session


@dataclass
class OpencodeDaemon:
    """The agent server for a repo. Liveness is re-checked on read."""

    repo: str
    status: OpencodeDaemonStatus
    pid: int = 0
    host: str = ""
    port: int = 0
    log_path: str = ""
    started_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> OpencodeDaemon:
        daemon = cls(**_known_fields(cls, data))
        daemon.status = OpencodeDaemonStatus(daemon.status)
        return daemon


@dataclass
class JobOpencodeSession:
    purpose: str
    id: str


@dataclass
class Job:
    """A multi-stage unit of work for one todo."""

    id: str
    repo: str
    todo_id: str
    stage: JobStage
    status: JobStatus
    session_id: str = ""
    feedback: str = ""
    opencode_sessions: list[JobOpencodeSession] = field(default_factory=list)
    started_at: str = ""
    updated_at: str = ""
    completed_at: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> Job:
        job = cls(**_known_fields(cls, data))
        job.stage = JobStage(job.stage)
        job.status = JobStatus(job.status)
        job.opencode_sessions = [
            s if isinstance(s, JobOpencodeSession) else JobOpencodeSession(**s)
            for s in job.opencode_sessions
        ]
        return job


@dataclass
class State:
    """The whole persisted document. Maps are never None."""

    repos: dict[str, RepoInfo] = field(default_factory=dict)
    workspaces: dict[str, WorkspaceInfo] = field(default_factory=dict)
    sessions: dict[str, Session] = field(default_factory=dict)
    opencode_sessions: dict[str, OpencodeSession] = field(default_factory=dict)
    opencode_daemons: dict[str, OpencodeDaemon] = field(default_factory=dict)
    jobs: dict[str, Job] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> State:
        return cls(
            repos={k: RepoInfo.from_dict(v) for k, v in (data.get("repos") or {}).items()},
            workspaces={
                k: WorkspaceInfo.from_dict(v)
                for k, v in (data.get("workspaces") or {}).items()
            },
            sessions={k: Session.from_dict(v) for k, v in (data.get("sessions") or {}).items()},
            opencode_sessions={
                k: OpencodeSession.from_dict(v)
                for k, v in (data.get("opencode_sessions") or {}).items()
            },
            opencode_daemons={
                k: OpencodeDaemon.from_dict(v)
                for k, v in (data.get("opencode_daemons") or {}).items()
            },
            jobs={k: Job.from_dict(v) for k, v in (data.get("jobs") or {}).items()},
        )


def workspace_key(repo: str, name: str) -> str:
    return f"{repo}/{name}"


def scoped_key(repo: str, record_id: str) -> str:
    return f"{repo}/{record_id}"
