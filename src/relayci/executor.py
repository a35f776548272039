# executor.py
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from .actions import ActionContext, ActionResult, get_action
from .artifacts import ArtifactStore
from .conditions import ConditionContext, evaluate
from .errors import CancelledError, ConditionError, PipelineError, StepFailure, Timeout
from .model import Event, JobRun, JobStatus, Step, StepResult
from .secrets import Masker
from .workers import StepOutcome, Worker

log = logging.getLogger(__name__)

TIMEOUT = "Timeout"
CANCELLED = "cancelled"


@dataclass
class JobContext:
    """
    Everything one JobRun executes with. Built by the scheduler at job start;
    nothing here is shared with other jobs.
    """
    run_id: str
    workspace: Path
    env: Dict[str, str]
    worker: Worker
    event: Event = field(default_factory=lambda: Event(kind="workflow_dispatch"))
    artifacts: Optional[ArtifactStore] = None
    cancel: threading.Event = field(default_factory=threading.Event)
    deadline: Optional[float] = None  # time.monotonic() based
    masker: Masker = field(default_factory=Masker)
    data: Dict[str, Any] = field(default_factory=dict)

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())


@dataclass
class JobOutcome:
    status: JobStatus
    reason: Optional[str] = None


def _step_timeout(step: Step, ctx: JobContext) -> Optional[float]:
    remaining = ctx.remaining()
    if step.timeout is None:
        return remaining
    if remaining is None:
        return step.timeout
    return min(step.timeout, remaining)


class StepExecutor:
    """
    Runs a job's steps strictly in order on the calling thread.

    - the environment accumulates: variables a step exports are visible to
      later steps of the same job only
    - a failing step stops the job, unless continue_on_error (job still
      fails) or ignore_failure (job unaffected); steps whose `if:` uses a
      status function (failure(), always()) still get evaluated afterwards
    - every output line goes to the job log, secrets masked
    """

    def execute(self, job_run: JobRun, ctx: JobContext) -> JobOutcome:
        job = job_run.job
        env = dict(ctx.env)
        statuses: Dict[str, JobStatus] = {}
        tolerated: set[str] = set()
        steps_data: Dict[str, Dict[str, Any]] = {}
        failed = False
        reason: Optional[str] = None

        def emit(line: str) -> None:
            job_run.append_log(ctx.masker(line))

        for idx, step in enumerate(job.steps):
            key = f"{idx}:{step.name}"

            if ctx.cancel.is_set():
                emit(str(CancelledError(job.name, step.name)))
                job_run.steps.append(StepResult(step.name, JobStatus.CANCELLED, reason=CANCELLED))
                return JobOutcome(JobStatus.CANCELLED, CANCELLED)

            if ctx.deadline is not None and ctx.remaining() <= 0:
                emit(str(Timeout(job.name, None, job.timeout or 0)))
                return JobOutcome(JobStatus.FAILURE, TIMEOUT)

            cond_ctx = ConditionContext(
                statuses=dict(statuses),
                optional=set(tolerated),
                cancelled=ctx.cancel.is_set(),
                data={**ctx.data, "env": dict(env), "steps": dict(steps_data)},
            )
            try:
                should_run = evaluate(step.condition, cond_ctx)
            except ConditionError as e:
                emit(f"ERROR: {e}")
                should_run = None

            if should_run is False:
                emit(f"SKIP {step.name}")
                statuses[key] = JobStatus.SKIPPED
                steps_data[step.name] = {"outcome": JobStatus.SKIPPED.value}
                job_run.steps.append(StepResult(step.name, JobStatus.SKIPPED, reason="condition"))
                continue

            emit(f"▶ {step.name}")
            started = time.monotonic()
            if should_run is None:
                outcome = StepOutcome(exit_code=1)
                step_reason: Optional[str] = "ConditionError"
            else:
                outcome, step_reason = self._run_step(job_run, step, env, ctx, emit)
            duration = time.monotonic() - started

            env.update(outcome.env_mutations)

            if outcome.cancelled:
                emit(str(CancelledError(job.name, step.name)))
                job_run.steps.append(StepResult(step.name, JobStatus.CANCELLED, outcome.exit_code, CANCELLED, duration))
                return JobOutcome(JobStatus.CANCELLED, CANCELLED)

            if outcome.timed_out:
                limit = step.timeout if step.timeout is not None else (job.timeout or 0)
                emit(str(Timeout(job.name, step.name, limit)))
                step_reason = TIMEOUT

            if outcome.exit_code == 0 and not outcome.timed_out:
                statuses[key] = JobStatus.SUCCESS
                steps_data[step.name] = {"outcome": JobStatus.SUCCESS.value}
                job_run.steps.append(StepResult(step.name, JobStatus.SUCCESS, 0, None, duration))
                continue

            statuses[key] = JobStatus.FAILURE
            steps_data[step.name] = {"outcome": JobStatus.FAILURE.value}
            job_run.steps.append(
                StepResult(step.name, JobStatus.FAILURE, outcome.exit_code, step_reason or "StepFailure", duration)
            )

            # job-level deadline hit while this step was running
            if outcome.timed_out and ctx.deadline is not None and ctx.remaining() <= 0:
                return JobOutcome(JobStatus.FAILURE, TIMEOUT)

            if step.ignore_failure:
                emit(f"step '{step.name}' failed, failure ignored")
                tolerated.add(key)
                continue

            failed = True
            reason = reason or step_reason or "StepFailure"
            if step.continue_on_error:
                emit(f"step '{step.name}' failed, continuing")
                tolerated.add(key)

        if failed:
            return JobOutcome(JobStatus.FAILURE, reason)
        return JobOutcome(JobStatus.SUCCESS)

    # ------------------------------------------------------------------

    def _run_step(self, job_run: JobRun, step: Step, env: Dict[str, str], ctx: JobContext, emit):
        """Returns (StepOutcome, failure reason or None)."""
        job = job_run.job
        step_env = {**env, **step.env}
        cwd = (ctx.workspace / (step.cwd or ".")).resolve()
        timeout = _step_timeout(step, ctx)

        try:
            if step.is_action:
                action = get_action(step.uses)
                actx = ActionContext(
                    job=job.name,
                    run_id=ctx.run_id,
                    workspace=cwd,
                    env=step_env,
                    worker=ctx.worker,
                    artifacts=ctx.artifacts,
                    event=ctx.event,
                    deadline=time.monotonic() + timeout if timeout is not None else None,
                    cancel=ctx.cancel,
                )
                result: ActionResult = action.execute(dict(step.with_), actx)
                for line in result.output:
                    emit(line)
                outcome = StepOutcome(
                    result.exit_code,
                    list(result.output),
                    dict(result.env_mutations),
                    timed_out=result.timed_out,
                    cancelled=result.cancelled,
                )
            else:
                outcome = ctx.worker.run(
                    step.run,
                    env=step_env,
                    cwd=cwd,
                    timeout=timeout,
                    cancel=ctx.cancel,
                    on_output=emit,
                )
        except PipelineError as e:
            emit(f"ERROR: {e}")
            log.debug("[%s] step %s raised %s", job.name, step.name, type(e).__name__)
            return StepOutcome(exit_code=1), type(e).__name__
        except (KeyError, ValueError, RuntimeError, OSError) as e:
            emit(f"ERROR: {e}")
            log.debug("[%s] step %s raised", job.name, step.name, exc_info=True)
            return StepOutcome(exit_code=1), type(e).__name__

        if outcome.exit_code != 0 and not (outcome.timed_out or outcome.cancelled):
            emit(str(StepFailure(job.name, step.name, step.describe(), outcome.exit_code)))
            return outcome, "StepFailure"
        return outcome, None
