# loader.py
from __future__ import annotations

import runpy
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import ValidationError

from .actions import get_action
from .conditions import parse_condition
from .cron import CronExpression
from .dag import JobGraph
from .errors import PipelineDefinitionError, PipelineError
from .model import Job, Pipeline, Triggers
from .schema import PipelineSpec

YAML_SUFFIXES = (".yml", ".yaml")
DEFAULT_PIPELINE_FILES = ("relayci.yml", "relayci.yaml", ".relayci.yml", "relayci_workflow.py")


def find_pipeline_file(root: str | Path = ".") -> Path:
    """First default pipeline file found in `root`."""
    base = Path(root)
    for name in DEFAULT_PIPELINE_FILES:
        candidate = base / name
        if candidate.is_file():
            return candidate
    raise PipelineDefinitionError(
        f"No pipeline file found in {base.resolve()} (looked for {', '.join(DEFAULT_PIPELINE_FILES)})"
    )


def _format_validation_error(e: ValidationError) -> str:
    lines = []
    for err in e.errors():
        where = ".".join(str(p) for p in err["loc"]) or "<root>"
        lines.append(f"  {where}: {err['msg']}")
    return "\n".join(lines)


def parse_pipeline(data: Any, default_name: str = "pipeline") -> Pipeline:
    """Validate a decoded YAML document and build the Pipeline."""
    if not isinstance(data, dict):
        raise PipelineDefinitionError("pipeline document must be a mapping")

    # YAML 1.1 reads a bare `on` key as boolean True
    if True in data:
        data = {("on" if k is True else k): v for k, v in data.items()}

    try:
        spec = PipelineSpec.model_validate(data)
    except ValidationError as e:
        raise PipelineDefinitionError("invalid pipeline:\n" + _format_validation_error(e)) from e

    pipeline = spec.to_pipeline(default_name)
    validate(pipeline)
    return pipeline


def loads_yaml(text: str, default_name: str = "pipeline") -> Pipeline:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise PipelineDefinitionError(f"invalid YAML: {e}") from e
    return parse_pipeline(data, default_name)


def validate(pipeline: Pipeline) -> None:
    """
    Load-time checks that need no execution: graph shape, `if:` syntax,
    action names and cron schedules. Raises PipelineError subclasses.
    """
    JobGraph.build(pipeline.jobs)
    for job in pipeline.jobs:
        _check_condition(job.condition, f"job '{job.name}'")
        for step in job.steps:
            _check_condition(step.condition, f"job '{job.name}' step '{step.name}'")
            if step.uses is not None:
                try:
                    get_action(step.uses)
                except KeyError as e:
                    raise PipelineDefinitionError(f"job '{job.name}' step '{step.name}': {e.args[0]}") from e
    for expr in pipeline.triggers.schedule:
        CronExpression.parse(expr)


def _check_condition(text: Optional[str], where: str) -> None:
    if not text:
        return
    try:
        parse_condition(text)
    except PipelineError as e:
        raise PipelineDefinitionError(f"{where}: {e}") from e


def _load_python(path: Path) -> Pipeline:
    """
    A python pipeline file must define one of:
      - workflow() -> Pipeline | List[Job]
      - PIPELINE = Pipeline(...)
      - JOBS = [Job, ...]
    A bare job list becomes a manually triggered pipeline named after the file.
    """
    module_name = f"relayci_pipeline_{path.stem}"
    globals_dict: Dict[str, Any] = runpy.run_path(str(path), run_name=module_name)

    result: Any = None
    if callable(globals_dict.get("workflow")):
        try:
            result = globals_dict["workflow"]()
        except TypeError as e:
            if "positional argument" in str(e):
                raise PipelineDefinitionError(
                    "workflow() must take no arguments. "
                    "Use the 'pipeline' or 'wf' helper to build its return value: "
                    "`def workflow(): return pipeline('ci', job(...), job(...))`"
                ) from e
            raise
    elif "PIPELINE" in globals_dict:
        result = globals_dict["PIPELINE"]
    elif "JOBS" in globals_dict:
        result = globals_dict["JOBS"]

    if isinstance(result, Pipeline):
        pipeline = result
    elif isinstance(result, list) and result and all(isinstance(j, Job) for j in result):
        jobs: List[Job] = result
        pipeline = Pipeline(name=path.stem, jobs=jobs, triggers=Triggers(workflow_dispatch=True))
    else:
        raise PipelineDefinitionError(
            f"{path.name} must define workflow() returning a Pipeline or List[Job], "
            "or PIPELINE = Pipeline(...), or JOBS = [Job, ...]"
        )

    validate(pipeline)
    return pipeline


def load_pipeline(path: str | Path) -> Pipeline:
    """Load a pipeline from a .yml/.yaml document or a python file."""
    file_path = Path(path).expanduser().resolve()
    if not file_path.is_file():
        raise PipelineDefinitionError(f"Pipeline file not found: {file_path}")

    if file_path.suffix in YAML_SUFFIXES:
        return loads_yaml(file_path.read_text(encoding="utf-8"), default_name=file_path.stem)
    if file_path.suffix == ".py":
        return _load_python(file_path)
    raise PipelineDefinitionError(f"Unsupported pipeline file type: {file_path.name} (expected .yml, .yaml or .py)")
