# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional


class PipelineError(Exception):
    """Base class for every error relayci raises on purpose."""


# ----------------------------------------------------------------------
# Definition / graph-build errors (fatal: the run never starts)
# ----------------------------------------------------------------------

class PipelineDefinitionError(PipelineError):
    """The pipeline document could not be loaded or is invalid."""


@dataclass
class DuplicateJobError(PipelineError):
    names: List[str]

    def __str__(self) -> str:
        return f"Duplicate job names found: {self.names}"


@dataclass
class UnknownDependencyError(PipelineError):
    job: str
    dependency: str
    known: List[str] = field(default_factory=list)

    def __str__(self) -> str:
        return (
            f"Job '{self.job}' needs missing job '{self.dependency}'. "
            f"Known jobs: {self.known}"
        )


@dataclass
class CycleError(PipelineError):
    cycle: List[str]

    def __str__(self) -> str:
        return "Dependency cycle detected: " + " -> ".join(self.cycle)


@dataclass
class ConditionError(PipelineError):
    expression: str
    message: str

    def __str__(self) -> str:
        return f"Invalid condition {self.expression!r}: {self.message}"


@dataclass
class CronError(PipelineError):
    expression: str
    message: str

    def __str__(self) -> str:
        return f"Invalid cron expression {self.expression!r}: {self.message}"


# ----------------------------------------------------------------------
# Runtime errors (local to a step or job)
# ----------------------------------------------------------------------

@dataclass
class StepFailure(PipelineError):
    job: str
    step: str
    cmd: str
    exit_code: int

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"


@dataclass
class Timeout(PipelineError):
    job: str
    step: Optional[str]
    seconds: float

    def __str__(self) -> str:
        where = f"step '{self.step}'" if self.step else "job"
        return f"[{self.job}] {where} exceeded its timeout of {self.seconds:g}s"


@dataclass
class CancelledError(PipelineError):
    job: str
    step: Optional[str] = None

    def __str__(self) -> str:
        if self.step:
            return f"[{self.job}] cancelled during step '{self.step}'"
        return f"[{self.job}] cancelled"


@dataclass
class ArtifactNotFoundError(PipelineError):
    name: str
    run_id: str

    def __str__(self) -> str:
        return f"Artifact '{self.name}' not found in run {self.run_id}"


@dataclass
class EmptyArtifactError(PipelineError):
    name: str
    patterns: List[str]

    def __str__(self) -> str:
        return f"Artifact '{self.name}': no files matched {self.patterns}"
