# actions/base.py
from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Protocol

from ..artifacts import ArtifactStore
from ..model import Event
from ..workers import StepOutcome, Worker


@dataclass
class ActionResult:
    exit_code: int = 0
    output: List[str] = field(default_factory=list)
    env_mutations: Dict[str, str] = field(default_factory=dict)
    timed_out: bool = False
    cancelled: bool = False

    @classmethod
    def from_outcome(cls, outcome: StepOutcome) -> "ActionResult":
        return cls(
            outcome.exit_code,
            list(outcome.output),
            dict(outcome.env_mutations),
            outcome.timed_out,
            outcome.cancelled,
        )


@dataclass
class ActionContext:
    """Everything an action may touch while running inside one job."""
    job: str
    run_id: str
    workspace: Path
    env: Mapping[str, str]
    worker: Worker
    artifacts: Optional[ArtifactStore] = None
    event: Optional[Event] = None
    deadline: Optional[float] = None  # time.monotonic() based, shared by every command of the step
    cancel: Optional[threading.Event] = None

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def run(self, command: str, worker: Optional[Worker] = None) -> StepOutcome:
        remaining = self.remaining()
        if remaining is not None and remaining <= 0:
            return StepOutcome(exit_code=1, timed_out=True)
        return (worker or self.worker).run(
            command,
            env=self.env,
            cwd=self.workspace,
            timeout=remaining,
            cancel=self.cancel,
        )


class Action(Protocol):
    """
    Capability interface for reusable steps:
      execute(config, ctx) -> (exit_code, output, env_mutations)
    """

    def execute(self, config: Mapping[str, Any], ctx: ActionContext) -> ActionResult:
        ...


def as_list(value: Any) -> List[str]:
    """Accept a YAML list or a newline/comma separated string."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if str(v).strip()]
    parts = str(value).replace(",", "\n").splitlines()
    return [p.strip() for p in parts if p.strip()]


def as_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")
