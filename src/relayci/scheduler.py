# scheduler.py
from __future__ import annotations

import logging
import os
import shutil
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Callable, Dict, Iterable, Optional, Set, Tuple

from .artifacts import DEFAULT_ARTIFACT_DIR, DEFAULT_RETENTION_DAYS, ArtifactStore, LocalDiskBackend, StorageBackend
from .conditions import ConditionContext, evaluate
from .dag import JobGraph
from .errors import ConditionError, PipelineError
from .executor import JobContext, JobOutcome, StepExecutor
from .model import Event, JobRun, JobStatus, Pipeline, PipelineRun, RunStatus
from .notify import NotificationSink, notify_all
from .secrets import Masker, SecretProvider, resolve
from .workers import Worker, worker_for

log = logging.getLogger(__name__)

POLL_INTERVAL = 0.1
STATE_DIR = ".relayci"
DEFAULT_WORK_DIR = f"{STATE_DIR}/work"

JobListener = Callable[[JobRun], None]


class Scheduler:
    """
    Walks the job DAG of a PipelineRun:

    - a job becomes ready once all its dependencies are terminal
    - its `if:` condition is evaluated right before dispatch, against the
      run state at that moment
    - ready jobs go to a thread pool, at most `max_workers` at a time
      (None: no limit)
    - every completion re-evaluates the ready set

    The scheduling thread is the only writer of job statuses.
    """

    def __init__(
        self,
        *,
        max_workers: Optional[int] = None,
        fail_fast: bool = False,
        grace_period: float = 10.0,
        workspace: str | Path = ".",
        isolate_workspaces: bool = False,
        copy_workspace: bool = False,
        work_dir: str | Path | None = None,
        artifact_backend: Optional[StorageBackend] = None,
        retention_days: float = DEFAULT_RETENTION_DAYS,
        secrets: Optional[SecretProvider] = None,
        sinks: Iterable[NotificationSink] = (),
        worker_factory: Callable[..., Worker] = worker_for,
        executor: Optional[StepExecutor] = None,
        base_env: Optional[Dict[str, str]] = None,
        on_job_start: Optional[JobListener] = None,
        on_job_finish: Optional[JobListener] = None,
    ):
        if max_workers is not None and max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.max_workers = max_workers
        self.fail_fast = fail_fast
        self.grace_period = grace_period
        self.workspace = Path(workspace).resolve()
        self.isolate_workspaces = isolate_workspaces
        self.copy_workspace = copy_workspace
        self.work_dir = Path(work_dir) if work_dir is not None else self.workspace / DEFAULT_WORK_DIR
        self._artifact_backend = artifact_backend
        self.retention_days = retention_days
        self.secrets = secrets
        self.sinks = list(sinks)
        self.worker_factory = worker_factory
        self.executor = executor or StepExecutor()
        self.base_env = base_env
        self.on_job_start = on_job_start
        self.on_job_finish = on_job_finish

    @property
    def artifact_backend(self) -> StorageBackend:
        if self._artifact_backend is None:
            self._artifact_backend = LocalDiskBackend(self.workspace / DEFAULT_ARTIFACT_DIR)
        return self._artifact_backend

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(self, run: PipelineRun) -> RunStatus:
        """
        Execute `run` to a terminal state and return its status.

        Raises the graph-build error (CycleError, UnknownDependencyError,
        DuplicateJobError) after marking the run failed; no job starts.
        """
        try:
            graph = JobGraph.build(run.pipeline.jobs)
        except PipelineError as e:
            run.fail(str(e))
            log.error("run %s aborted: %s", run.run_id, e)
            notify_all(self.sinks, run.summary())
            raise

        run.start()
        run.artifacts = ArtifactStore(self.artifact_backend, run.run_id, retention_days=self.retention_days)
        log.info("run %s started (%d jobs)", run.run_id, len(graph))

        limit = self.max_workers or max(1, len(graph))
        finished: Set[str] = set()
        started: Set[str] = set()
        in_flight: Dict[Future, str] = {}
        failed = False

        with ThreadPoolExecutor(max_workers=limit, thread_name_prefix=f"relayci-{run.run_id}") as pool:
            while True:
                # dispatch / resolve everything that is ready right now
                progressed = True
                while progressed:
                    progressed = False
                    for name in graph.ready(finished, started):
                        if run.cancelled or (self.fail_fast and failed):
                            why = "run cancelled" if run.cancelled else "fail-fast"
                            self._finish(run, name, JobStatus.CANCELLED, why)
                            finished.add(name)
                            progressed = True
                            continue

                        if len(in_flight) >= limit:
                            break

                        go, reason = self._gate(run, graph, name)
                        if go is None:
                            self._finish(run, name, JobStatus.FAILURE, reason)
                            finished.add(name)
                            failed = failed or not run.jobs[name].job.optional
                            progressed = True
                            continue
                        if not go:
                            self._finish(run, name, JobStatus.SKIPPED, reason)
                            finished.add(name)
                            progressed = True
                            continue

                        run.transition(name, JobStatus.RUNNING)
                        started.add(name)
                        if self.on_job_start:
                            self.on_job_start(run.jobs[name])
                        in_flight[pool.submit(self._run_job, run, run.jobs[name])] = name

                if not in_flight:
                    break

                # wait for one completion, then loop to schedule newly-ready jobs
                done, _ = wait(list(in_flight), timeout=POLL_INTERVAL, return_when=FIRST_COMPLETED)
                for fut in done:
                    name = in_flight.pop(fut)
                    outcome = fut.result()
                    self._finish(run, name, outcome.status, outcome.reason)
                    finished.add(name)
                    if outcome.status is JobStatus.FAILURE and not run.jobs[name].job.optional:
                        failed = True

        status = run.finish()
        log.info("run %s finished: %s", run.run_id, status.value)
        notify_all(self.sinks, run.summary())
        return status

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _finish(self, run: PipelineRun, name: str, status: JobStatus, reason: Optional[str]) -> None:
        if run.transition(name, status, reason):
            jr = run.jobs[name]
            if status is not JobStatus.SUCCESS and reason:
                jr.append_log(f"job {status.value}: {reason}")
            log.debug("job %s -> %s (%s)", name, status.value, reason)
            if self.on_job_finish:
                self.on_job_finish(jr)

    def _condition_data(self, run: PipelineRun, graph: JobGraph, name: str) -> Dict:
        job = run.jobs[name].job
        statuses = run.statuses()
        return {
            "event": run.event.to_dict(),
            "inputs": dict(run.event.inputs),
            "env": {**run.pipeline.env, **job.env},
            "run": {"id": run.run_id, "commit": run.commit},
            "needs": {d: {"result": statuses[d].value} for d in graph.dependencies(name)},
            "jobs": {n: {"result": s.value} for n, s in statuses.items()},
        }

    def _gate(self, run: PipelineRun, graph: JobGraph, name: str) -> Tuple[Optional[bool], Optional[str]]:
        """
        Decide, right before dispatch, whether job `name` runs.
        Returns (True, None) to run, (False, reason) to skip,
        (None, reason) when the condition itself is broken.
        """
        job = run.jobs[name].job
        deps = graph.dependencies(name)
        statuses = {d: run.status_of(d) for d in deps}
        ctx = ConditionContext(
            statuses=statuses,
            upstream={a: run.status_of(a) for a in graph.ancestors(name)},
            optional={d for d in deps if run.jobs[d].job.optional},
            cancelled=run.cancelled,
            data=self._condition_data(run, graph, name),
        )
        try:
            go = evaluate(job.condition, ctx)
        except ConditionError as e:
            run.jobs[name].append_log(f"ERROR: {e}")
            return None, "ConditionError"
        if go:
            return True, None

        if not ctx.success():
            blocked = sorted(d for d, s in statuses.items() if s is not JobStatus.SUCCESS and d not in ctx.optional)
            if blocked:
                return False, "dependency " + ", ".join(f"{d} {statuses[d].value}" for d in blocked)
        return False, "condition false"

    def _workspace_for(self, run: PipelineRun, job_name: str) -> Path:
        if not self.isolate_workspaces:
            return self.workspace
        ws = (self.work_dir / run.run_id / job_name).resolve()
        if self.copy_workspace:
            self._copy_checkout(ws)
        ws.mkdir(parents=True, exist_ok=True)
        return ws

    def _copy_checkout(self, dest: Path) -> None:
        """Give an isolated job its own copy of the workspace, without relayci state."""
        skip = {self.work_dir.resolve(), (self.workspace / STATE_DIR).resolve()}

        def ignore(directory: str, names) -> list:
            return [n for n in names if (Path(directory) / n).resolve() in skip]

        shutil.copytree(self.workspace, dest, ignore=ignore, symlinks=True, dirs_exist_ok=True)

    def _job_env(self, run: PipelineRun, job_run: JobRun, workspace: Path, secrets: Dict[str, str]) -> Dict[str, str]:
        job = job_run.job
        env = dict(self.base_env if self.base_env is not None else os.environ)
        env.update(run.pipeline.env)
        env.update(job.env)
        env.update(secrets)
        env.update({
            "CI": "true",
            "RELAYCI": "true",
            "RELAYCI_RUN_ID": run.run_id,
            "RELAYCI_PIPELINE": run.pipeline.name,
            "RELAYCI_JOB": job.name,
            "RELAYCI_EVENT": run.event.kind,
            "RELAYCI_REF": run.event.ref,
            "RELAYCI_BRANCH": run.event.branch,
            "RELAYCI_SHA": run.commit or "",
            "RELAYCI_WORKSPACE": str(workspace),
        })
        return env

    def _run_job(self, run: PipelineRun, job_run: JobRun) -> JobOutcome:
        """Runs on a pool thread. A crash fails the job with its message masked."""
        masker = Masker()
        try:
            # Secrets are fetched at job start and live only in this job's env.
            secret_values = resolve(self.secrets, job_run.job.secrets)
            masker = Masker(secret_values.values())
            return self._execute_job(run, job_run, secret_values, masker)
        except Exception as e:  # noqa: BLE001
            message = masker(f"{type(e).__name__}: {e}")
            log.error("job %s crashed: %s", job_run.name, message)
            job_run.append_log(f"ERROR: {message}")
            return JobOutcome(JobStatus.FAILURE, type(e).__name__)

    def _execute_job(
        self, run: PipelineRun, job_run: JobRun, secret_values: Dict[str, str], masker: Masker,
    ) -> JobOutcome:
        """Everything built here is private to this job."""
        job = job_run.job
        workspace = self._workspace_for(run, job.name)

        missing = sorted(set(job.secrets) - set(secret_values))
        if missing:
            job_run.append_log(f"warning: secrets not available: {missing}")

        ctx = JobContext(
            run_id=run.run_id,
            workspace=workspace,
            env=self._job_env(run, job_run, workspace, secret_values),
            worker=self.worker_factory(job.runs_on, grace_period=self.grace_period),
            event=run.event,
            artifacts=run.artifacts,
            cancel=run.cancel_event,
            deadline=time.monotonic() + job.timeout if job.timeout is not None else None,
            masker=masker,
            data={
                "event": run.event.to_dict(),
                "inputs": dict(run.event.inputs),
                "run": {"id": run.run_id, "commit": run.commit},
            },
        )
        log.debug("job %s dispatched (runs_on=%s, workspace=%s)", job.name, job.runs_on, workspace)
        return self.executor.execute(job_run, ctx)


def run_pipeline(
    pipeline: Pipeline,
    event: Optional[Event] = None,
    **scheduler_options,
) -> PipelineRun:
    """Convenience: build a PipelineRun, execute it, return it."""
    run = PipelineRun(pipeline, event)
    Scheduler(**scheduler_options).run(run)
    return run
