# actions/tools.py
# Typed wrappers around common third-party tools. The tools themselves
# are opaque; these only build the command line and run it on the
# job's worker.
from __future__ import annotations

import shlex
from typing import Any, List, Mapping

from ..workers import DockerWorker
from .base import ActionContext, ActionResult, as_bool, as_list


def _run_all(ctx: ActionContext, commands: List[str]) -> ActionResult:
    result = ActionResult()
    for cmd in commands:
        outcome = ctx.run(cmd)
        result.output.append(f"$ {cmd}")
        result.output.extend(outcome.output)
        result.env_mutations.update(outcome.env_mutations)
        result.exit_code = outcome.exit_code
        result.timed_out = outcome.timed_out
        result.cancelled = outcome.cancelled
        if outcome.timed_out or outcome.cancelled or outcome.exit_code != 0:
            break
    return result


class Lint:
    """
    with:
      tool: ruff
      args: check
      files: [src/, tests/]   (default: .)
    """

    def execute(self, config: Mapping[str, Any], ctx: ActionContext) -> ActionResult:
        tool = config.get("tool")
        if not tool:
            raise ValueError("lint: 'tool' is required")
        parts = [str(tool)]
        args = config.get("args")
        if args:
            parts.extend(shlex.split(str(args)))
        parts.extend(as_list(config.get("files")) or ["."])
        return _run_all(ctx, [shlex.join(parts)])


class Test:
    """
    with:
      framework: pytest | npm
      args: -q
      install: true
    """

    def execute(self, config: Mapping[str, Any], ctx: ActionContext) -> ActionResult:
        framework = config.get("framework")
        args = str(config.get("args") or "").strip()
        install = as_bool(config.get("install"), default=True)

        if framework == "pytest":
            commands = ["python -m pip install -r requirements.txt"] if install else []
            commands.append(f"pytest {args}".strip())
        elif framework == "npm":
            commands = ["npm ci"] if install else []
            commands.append(f"npm test {args}".strip())
        else:
            raise ValueError(f"Unknown framework: {framework!r}")
        return _run_all(ctx, commands)


class Docker:
    """
    Run one command inside a container, whatever the job's runner is.

    with:
      image: python:3.12-slim
      run: pytest -q
      volumes: [~/.cache/pip:/root/.cache/pip]
      user: 1000:1000
    """

    def execute(self, config: Mapping[str, Any], ctx: ActionContext) -> ActionResult:
        image = config.get("image")
        command = config.get("run")
        if not image or not command:
            raise ValueError("docker: 'image' and 'run' are required")
        worker = DockerWorker(
            str(image),
            volumes=as_list(config.get("volumes")),
            user=config.get("user"),
        )
        return ActionResult.from_outcome(ctx.run(str(command), worker=worker))
