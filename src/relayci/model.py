# model.py
from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional

if TYPE_CHECKING:
    from .artifacts import ArtifactStore


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self not in (JobStatus.PENDING, JobStatus.RUNNING)


# pending -> running | skipped | cancelled | failure ; running -> success | failure | cancelled
_ALLOWED = {
    JobStatus.PENDING: {JobStatus.RUNNING, JobStatus.SKIPPED, JobStatus.CANCELLED, JobStatus.FAILURE},
    JobStatus.RUNNING: {JobStatus.SUCCESS, JobStatus.FAILURE, JobStatus.CANCELLED},
}


# ---------------------------------------------------------------------
# Definitions (immutable once loaded)
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Step:
    """
    A single step inside a job: either a shell command (`run`) or a
    reusable action (`uses` + `with_` options).
    """
    name: str
    run: Optional[str] = None
    uses: Optional[str] = None
    with_: Dict[str, Any] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)
    condition: Optional[str] = None
    continue_on_error: bool = False
    ignore_failure: bool = False
    timeout: Optional[float] = None
    cwd: Optional[str] = None

    def __post_init__(self) -> None:
        if (self.run is None) == (self.uses is None):
            raise ValueError(f"Step '{self.name}' must set exactly one of run/uses")

    @property
    def is_action(self) -> bool:
        return self.uses is not None

    def describe(self) -> str:
        return self.run if self.run is not None else f"uses: {self.uses}"


@dataclass(frozen=True)
class Job:
    """
    A CI job: ordered steps + dependencies + run condition + runner label.

    `optional` jobs may fail without failing the run or blocking dependents.
    """
    name: str
    steps: List[Step]
    needs: List[str] = field(default_factory=list)
    condition: Optional[str] = None
    runs_on: str = "local"
    env: Dict[str, str] = field(default_factory=dict)
    secrets: List[str] = field(default_factory=list)
    optional: bool = False
    timeout: Optional[float] = None


@dataclass(frozen=True)
class PushRule:
    branches: List[str] = field(default_factory=list)
    branches_ignore: List[str] = field(default_factory=list)
    paths: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class PullRequestRule:
    branches: List[str] = field(default_factory=list)
    paths: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class Triggers:
    push: Optional[PushRule] = None
    pull_request: Optional[PullRequestRule] = None
    workflow_dispatch: bool = False
    schedule: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class Pipeline:
    name: str
    jobs: List[Job]
    triggers: Triggers = field(default_factory=Triggers)
    env: Dict[str, str] = field(default_factory=dict)

    def job(self, name: str) -> Job:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(name)


@dataclass(frozen=True)
class Event:
    """An incoming trigger event (push, pull_request, workflow_dispatch, schedule)."""
    kind: str
    ref: str = ""
    sha: str = ""
    base_ref: str = ""
    changed_files: List[str] = field(default_factory=list)
    tick: Optional[datetime] = None
    inputs: Dict[str, str] = field(default_factory=dict)

    @property
    def branch(self) -> str:
        return _short_ref(self.ref)

    @property
    def base_branch(self) -> str:
        return _short_ref(self.base_ref)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "ref": self.ref,
            "branch": self.branch,
            "sha": self.sha,
            "base_ref": self.base_ref,
            "base_branch": self.base_branch,
            "tick": self.tick.isoformat() if self.tick else None,
            "inputs": dict(self.inputs),
        }


def _short_ref(ref: str) -> str:
    for prefix in ("refs/heads/", "refs/tags/"):
        if ref.startswith(prefix):
            return ref[len(prefix):]
    return ref


# ---------------------------------------------------------------------
# Runtime state
# ---------------------------------------------------------------------

@dataclass
class StepResult:
    name: str
    status: JobStatus
    exit_code: Optional[int] = None
    reason: Optional[str] = None
    duration: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "exit_code": self.exit_code,
            "reason": self.reason,
            "duration": round(self.duration, 3),
        }


@dataclass
class JobRun:
    """One instantiation of a Job for one PipelineRun."""
    job: Job
    status: JobStatus = JobStatus.PENDING
    reason: Optional[str] = None
    steps: List[StepResult] = field(default_factory=list)
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    _log: List[str] = field(default_factory=list, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def name(self) -> str:
        return self.job.name

    def append_log(self, line: str) -> None:
        with self._lock:
            self._log.append(line)

    @property
    def log(self) -> List[str]:
        with self._lock:
            return list(self._log)

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "reason": self.reason,
            "optional": self.job.optional,
            "duration": self.duration,
            "steps": [s.to_dict() for s in self.steps],
        }


class PipelineRun:
    """
    One execution of a Pipeline.

    Job status transitions and the aggregate status are written under a
    single lock; readers get copies through `status_of()` / `summary()`.
    """

    def __init__(
        self,
        pipeline: Pipeline,
        event: Optional[Event] = None,
        *,
        run_id: Optional[str] = None,
        commit: Optional[str] = None,
    ):
        self.pipeline = pipeline
        self.event = event or Event(kind="workflow_dispatch")
        self.run_id = run_id or uuid.uuid4().hex[:12]
        self.commit = commit or self.event.sha or None
        self.status = RunStatus.PENDING
        self.created_at = time.time()
        self.finished_at: Optional[float] = None
        self.jobs: Dict[str, JobRun] = {j.name: JobRun(job=j) for j in pipeline.jobs}
        self.error: Optional[str] = None
        self.artifacts: Optional["ArtifactStore"] = None
        self._lock = threading.RLock()
        self._cancel = threading.Event()

    # ---- cancellation ----

    def cancel(self) -> None:
        self._cancel.set()

    @property
    def cancel_event(self) -> threading.Event:
        return self._cancel

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    # ---- status transitions ----

    def start(self) -> None:
        with self._lock:
            if self.status is RunStatus.PENDING:
                self.status = RunStatus.RUNNING

    def transition(self, name: str, status: JobStatus, reason: Optional[str] = None) -> bool:
        """
        Move job `name` to `status`. Returns False (and changes nothing) when
        the transition is not allowed, e.g. the job is already terminal.
        """
        with self._lock:
            jr = self.jobs[name]
            if status not in _ALLOWED.get(jr.status, set()):
                return False
            jr.status = status
            if reason is not None:
                jr.reason = reason
            now = time.time()
            if status is JobStatus.RUNNING:
                jr.started_at = now
            elif status.terminal:
                jr.finished_at = now
            return True

    def status_of(self, name: str) -> JobStatus:
        with self._lock:
            return self.jobs[name].status

    def statuses(self) -> Dict[str, JobStatus]:
        with self._lock:
            return {n: jr.status for n, jr in self.jobs.items()}

    def fail(self, error: str) -> None:
        """Abort before any job started (e.g. the graph is invalid)."""
        with self._lock:
            self.error = error
            self.status = RunStatus.FAILURE
            self.finished_at = time.time()

    def finish(self) -> RunStatus:
        with self._lock:
            self.status = self.aggregate()
            self.finished_at = time.time()
            return self.status

    def aggregate(self) -> RunStatus:
        with self._lock:
            runs = list(self.jobs.values())
            if any(jr.status is JobStatus.FAILURE and not jr.job.optional for jr in runs):
                return RunStatus.FAILURE
            if self.cancelled or any(jr.status is JobStatus.CANCELLED for jr in runs):
                return RunStatus.CANCELLED
            if all(jr.status.terminal for jr in runs):
                return RunStatus.SUCCESS
            return RunStatus.RUNNING if self.status is not RunStatus.PENDING else RunStatus.PENDING

    @property
    def terminal(self) -> bool:
        return self.status in (RunStatus.SUCCESS, RunStatus.FAILURE, RunStatus.CANCELLED)

    def summary(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "run_id": self.run_id,
                "pipeline": self.pipeline.name,
                "status": self.status.value,
                "commit": self.commit,
                "error": self.error,
                "event": self.event.to_dict(),
                "jobs": [jr.to_dict() for jr in self.jobs.values()],
            }
