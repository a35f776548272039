# dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Optional

from .model import Job, Pipeline, PullRequestRule, PushRule, Step, Triggers


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(name: str, cmd: str, *, cwd: str | None = None, env: Optional[Dict[str, str]] = None, **options: Any) -> Step:
    """Create a shell step."""
    return Step(name=name, run=cmd, cwd=cwd, env=env or {}, **options)


def uses(name: str, action: str, with_: Optional[Dict[str, Any]] = None, **options: Any) -> Step:
    """Create a step that runs a reusable action, e.g. uses("Upload", "upload-artifact", {...})."""
    return Step(name=name, uses=action, with_=dict(with_ or {}), **options)


def upload(name: str, *paths: str, if_no_files_found: str = "error") -> Step:
    return uses(f"Upload {name}", "upload-artifact", {
        "name": name,
        "path": list(paths),
        "if-no-files-found": if_no_files_found,
    })


def download(name: str, path: str = ".") -> Step:
    return uses(f"Download {name}", "download-artifact", {"name": name, "path": path})


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    needs: Optional[List[str]] = None,
    condition: Optional[str] = None,
    runs_on: str = "local",
    env: Optional[Dict[str, str]] = None,
    secrets: Optional[List[str]] = None,
    optional: bool = False,
    timeout: Optional[float] = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(steps_list)
    steps_final.extend(steps)

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return Job(
        name=name,
        steps=steps_final,
        needs=list(needs or []),
        condition=condition,
        runs_on=runs_on,
        env={k: str(v) for k, v in (env or {}).items()},
        secrets=list(secrets or []),
        optional=optional,
        timeout=timeout,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._secrets: list[str] = []
        self._condition: Optional[str] = None
        self._runs_on: str = "local"
        self._optional: bool = False
        self._timeout: Optional[float] = None

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, **options: Any):
        self._steps.append(Step(name=name, run=run, cwd=cwd, **options))
        return self

    def use_action(self, name: str, action: str, **config: Any):
        self._steps.append(Step(name=name, uses=action, with_=dict(config)))
        return self

    def with_env(self, **env):
        # force values to str for env compatibility
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_secrets(self, *names: str):
        self._secrets.extend(names)
        return self

    def when(self, condition: str):
        self._condition = condition
        return self

    def on_runner(self, label: str):
        self._runs_on = label
        return self

    def allow_failure(self, optional: bool = True):
        self._optional = optional
        return self

    def timeout_after(self, seconds: float):
        self._timeout = seconds
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")
        return Job(
            name=self.name,
            steps=list(self._steps),
            needs=list(self._needs),
            condition=self._condition,
            runs_on=self._runs_on,
            env=dict(self._env),
            secrets=list(self._secrets),
            optional=self._optional,
            timeout=self._timeout,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Minimal matrix expander.

    Example:
        matrix("py", ["3.11", "3.12"]).jobs(
            lambda v: job(f"test-py{v}", sh(...))
        )
    """
    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = list(values)

    def jobs(self, builder: Callable[[Any], Job]) -> List[Job]:
        return [builder(v) for v in self.values]


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)


# ---------------------------------------------------------------------
# Pipeline helpers
# ---------------------------------------------------------------------

def triggers(
    *,
    push: Optional[List[str]] = None,
    pull_request: Optional[List[str]] = None,
    dispatch: bool = False,
    schedule: Optional[List[str]] = None,
) -> Triggers:
    """
    triggers(push=["main"], pull_request=["main"], dispatch=True, schedule=["0 3 * * *"])
    An empty list means "any branch"; None disables that trigger.
    """
    return Triggers(
        push=PushRule(branches=list(push)) if push is not None else None,
        pull_request=PullRequestRule(branches=list(pull_request)) if pull_request is not None else None,
        workflow_dispatch=dispatch,
        schedule=list(schedule or []),
    )


def pipeline(
    name: str,
    *jobs: Job | List[Job],
    on: Optional[Triggers] = None,
    env: Optional[Dict[str, str]] = None,
) -> Pipeline:
    """
    Pipeline definition helper. Matrix output (a list of jobs) may be
    passed alongside single jobs:

        def workflow():
            return pipeline("ci", job(...), matrix(...).jobs(...), on=triggers(push=["main"]))
    """
    flat: List[Job] = []
    for j in jobs:
        if isinstance(j, list):
            flat.extend(j)
        else:
            flat.append(j)
    return Pipeline(name=name, jobs=flat, triggers=on or Triggers(workflow_dispatch=True), env=dict(env or {}))


def wf(*jobs: Job) -> List[Job]:
    """Plain list of jobs; the loader wraps it into a manually triggered pipeline."""
    return list(jobs)
