"""Pydantic schema for YAML pipeline documents.

The document layout follows the familiar hosted-CI shape::

    name: ci
    on:
      push: {branches: [main]}
      schedule:
        - cron: "0 3 * * *"
    jobs:
      build:
        steps:
          - run: make
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .model import Job, Pipeline, PullRequestRule, PushRule, Step, Triggers


def _env_str(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return "" if value is None else str(value)


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value]


class _Model(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class StepSpec(_Model):
    name: Optional[str] = None
    run: Optional[str] = None
    uses: Optional[str] = None
    with_: Dict[str, Any] = Field(default_factory=dict, alias="with")
    env: Dict[str, Any] = Field(default_factory=dict)
    if_: Optional[str] = Field(default=None, alias="if")
    continue_on_error: bool = Field(default=False, alias="continue-on-error")
    ignore_failure: bool = Field(default=False, alias="ignore-failure")
    timeout_minutes: Optional[float] = Field(default=None, alias="timeout-minutes", gt=0)
    working_directory: Optional[str] = Field(default=None, alias="working-directory")

    @model_validator(mode="after")
    def _run_xor_uses(self) -> "StepSpec":
        if (self.run is None) == (self.uses is None):
            raise ValueError("a step needs exactly one of 'run' or 'uses'")
        return self

    def to_step(self, index: int) -> Step:
        first_line = next(iter((self.run or "").strip().splitlines()), "")
        name = self.name or self.uses or first_line[:60] or f"step-{index + 1}"
        return Step(
            name=name,
            run=self.run,
            uses=self.uses,
            with_=dict(self.with_),
            env={k: _env_str(v) for k, v in self.env.items()},
            condition=self.if_,
            continue_on_error=self.continue_on_error,
            ignore_failure=self.ignore_failure,
            timeout=self.timeout_minutes * 60 if self.timeout_minutes is not None else None,
            cwd=self.working_directory,
        )


class JobSpec(_Model):
    steps: List[StepSpec] = Field(min_length=1)
    needs: Union[str, List[str]] = Field(default_factory=list)
    if_: Optional[str] = Field(default=None, alias="if")
    runs_on: str = Field(default="local", alias="runs-on")
    env: Dict[str, Any] = Field(default_factory=dict)
    secrets: List[str] = Field(default_factory=list)
    optional: bool = Field(default=False, alias="continue-on-error")
    timeout_minutes: Optional[float] = Field(default=None, alias="timeout-minutes", gt=0)

    def to_job(self, key: str) -> Job:
        return Job(
            name=key,
            steps=[s.to_step(i) for i, s in enumerate(self.steps)],
            needs=_as_list(self.needs),
            condition=self.if_,
            runs_on=self.runs_on,
            env={k: _env_str(v) for k, v in self.env.items()},
            secrets=list(self.secrets),
            optional=self.optional,
            timeout=self.timeout_minutes * 60 if self.timeout_minutes is not None else None,
        )


class PushSpec(_Model):
    branches: List[str] = Field(default_factory=list)
    branches_ignore: List[str] = Field(default_factory=list, alias="branches-ignore")
    paths: List[str] = Field(default_factory=list)


class PullRequestSpec(_Model):
    branches: List[str] = Field(default_factory=list)
    paths: List[str] = Field(default_factory=list)


class ScheduleSpec(_Model):
    cron: str


class TriggersSpec(_Model):
    push: Optional[PushSpec] = None
    pull_request: Optional[PullRequestSpec] = None
    workflow_dispatch: Optional[Dict[str, Any]] = None
    schedule: List[ScheduleSpec] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _shorthand(cls, data: Any) -> Any:
        # `on: push` / `on: [push, pull_request]` / `on: {push: null}`
        if isinstance(data, str):
            data = [data]
        if isinstance(data, list):
            data = {kind: {} for kind in data}
        if isinstance(data, dict):
            data = {k: (([] if k == "schedule" else {}) if v is None else v) for k, v in data.items()}
        return data

    def to_triggers(self) -> Triggers:
        return Triggers(
            push=PushRule(self.push.branches, self.push.branches_ignore, self.push.paths) if self.push else None,
            pull_request=(
                PullRequestRule(self.pull_request.branches, self.pull_request.paths)
                if self.pull_request else None
            ),
            workflow_dispatch=self.workflow_dispatch is not None,
            schedule=[s.cron for s in self.schedule],
        )


class PipelineSpec(_Model):
    name: Optional[str] = None
    on: TriggersSpec = Field(default_factory=TriggersSpec)
    env: Dict[str, Any] = Field(default_factory=dict)
    jobs: Dict[str, JobSpec] = Field(min_length=1)

    @field_validator("jobs")
    @classmethod
    def _job_keys(cls, jobs: Dict[str, JobSpec]) -> Dict[str, JobSpec]:
        for key in jobs:
            if not key or not str(key).strip():
                raise ValueError("job keys must be non-empty")
        return jobs

    def to_pipeline(self, default_name: str = "pipeline") -> Pipeline:
        return Pipeline(
            name=self.name or default_name,
            jobs=[spec.to_job(key) for key, spec in self.jobs.items()],
            triggers=self.on.to_triggers(),
            env={k: _env_str(v) for k, v in self.env.items()},
        )
