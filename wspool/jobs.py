"""Jobs: multi-stage units of work for one todo, scoped to a repo."""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from . import ids
from .errors import JobAlreadyActiveError, JobNotActiveError, JobNotFoundError, ValidationError
from .models import Job, JobOpencodeSession, JobStage, JobStatus, State, scoped_key, to_iso
from .opencode import match_id_prefix
from .sessions import sort_by_start, terminal_status
from .store import StateStore
from .validation import MAX_FEEDBACK, MAX_TOPIC, validate_choice, validate_single_line

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.ABANDONED)


class JobManager:
    """Job state for the repo at ``repo_path``."""

    def __init__(self, store: StateStore, repo_path: str) -> None:
        self.store = store
        self.repo_path = repo_path

    def _slug(self) -> str:
        return self.store.get_or_create_repo_name(self.repo_path)

    def _locate(self, state: State, repo_name: str, job_id: str) -> Job:
        jobs = {j.id: j for j in state.jobs.values() if j.repo == repo_name}
        job = match_id_prefix(jobs, job_id, "job")
        if job is None:
            raise JobNotFoundError(f"job not found: {job_id}")
        return job

    def create(self, todo_id: str, session_id: str, started_at: datetime | None = None) -> Job:
        todo_id = validate_single_line(todo_id, "todo_id", MAX_TOPIC)
        session_id = validate_single_line(session_id, "session_id", MAX_TOPIC)
        started = started_at or datetime.now(UTC)
        repo_name = self._slug()

        def mutate(state: State) -> Job:
            for job in state.jobs.values():
                if job.repo == repo_name and job.todo_id == todo_id and job.status == JobStatus.ACTIVE:
                    raise JobAlreadyActiveError(f"job already active for todo {todo_id}: {job.id}")
            job = Job(
                id=ids.generate_with_timestamp(todo_id, started),
                repo=repo_name,
                todo_id=todo_id,
                stage=JobStage.IMPLEMENTING,
                status=JobStatus.ACTIVE,
                session_id=session_id,
                started_at=to_iso(started),
                updated_at=to_iso(started),
            )
            state.jobs[scoped_key(repo_name, job.id)] = job
            logger.debug("job %s started for todo %s", job.id, todo_id)
            return job

        return self.store.update(mutate)

    def update(
        self,
        job_id: str,
        *,
        stage: JobStage | str | None = None,
        feedback: str | None = None,
        append_opencode_session: JobOpencodeSession | None = None,
        updated_at: datetime | None = None,
    ) -> Job:
        """Change fields of an active job. ``None`` leaves a field as is."""
        if stage is not None:
            stage = validate_choice(stage, JobStage, "stage")
        if feedback is not None and len(feedback) > MAX_FEEDBACK:
            raise ValidationError(f"feedback too long ({len(feedback)} chars, max {MAX_FEEDBACK})")
        repo_name = self._slug()
        stamp = to_iso(updated_at)

        def mutate(state: State) -> Job:
            job = self._locate(state, repo_name, job_id)
            if job.status != JobStatus.ACTIVE:
                raise JobNotActiveError(f"job {job.id} is not active ({job.status})")
            if stage is not None:
                job.stage = stage
            if feedback is not None:
                job.feedback = feedback
            if append_opencode_session is not None:
                job.opencode_sessions.append(append_opencode_session)
            job.updated_at = stamp
            return job

        return self.store.update(mutate)

    def complete(self, job_id: str, status: JobStatus | str, completed_at: datetime | None = None) -> Job:
        status = terminal_status(status, TERMINAL_STATUSES, "status")
        repo_name = self._slug()
        finished = to_iso(completed_at)

        def mutate(state: State) -> Job:
            job = self._locate(state, repo_name, job_id)
            if job.status != JobStatus.ACTIVE:
                raise JobNotActiveError(f"job {job.id} is not active ({job.status})")
            job.status = status
            job.completed_at = finished
            job.updated_at = finished
            return job

        return self.store.update(mutate)

    def find(self, job_id: str) -> Job:
        """Look up by full ID or unique ID prefix."""
        repo_name = self.store.find_repo_name(self.repo_path)
        if repo_name is None:
            raise JobNotFoundError(f"job not found: {job_id}")
        return self._locate(self.store.load(), repo_name, job_id)

    def list(self, status: JobStatus | str | None = None, include_all: bool = False) -> list[Job]:
        """Active jobs by default; ``status`` filters exactly, ``include_all`` returns every job."""
        if status is not None:
            status = validate_choice(status, JobStatus, "status")
        repo_name = self.store.find_repo_name(self.repo_path)
        if repo_name is None:
            return []
        return self.list_for_slug(self.store.load(), repo_name, status, include_all)

    @staticmethod
    def list_for_slug(
        state: State, repo_name: str, status: JobStatus | None = None, include_all: bool = False
    ) -> list[Job]:
        items = []
        for job in state.jobs.values():
            if job.repo != repo_name:
                continue
            if status is not None:
                if job.status != status:
                    continue
            elif not include_all and job.status != JobStatus.ACTIVE:
                continue
            items.append(job)
        return sort_by_start(items)
