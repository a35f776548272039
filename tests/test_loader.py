from pathlib import Path
from textwrap import dedent

import pytest

from relayci.errors import PipelineDefinitionError, PipelineError
from relayci.loader import find_pipeline_file, load_pipeline, loads_yaml

PIPELINE = dedent("""
    name: ci
    on:
      push:
        branches: [main]
        branches-ignore: [wip/*]
      pull_request:
      workflow_dispatch:
      schedule:
        - cron: "0 3 * * *"
    env:
      DEBUG: true
    jobs:
      build:
        steps:
          - run: make
          - uses: actions/upload-artifact@v4
            with: {name: dist, path: dist/}
      test:
        needs: build
        runs-on: docker:python:3.12
        timeout-minutes: 5
        secrets: [TOKEN]
        steps:
          - name: Run tests
            run: pytest -q
            if: ${{ success() }}
            continue-on-error: true
            working-directory: app
""")


def test_yaml_pipeline():
    pipeline = loads_yaml(PIPELINE)
    assert pipeline.name == "ci"
    assert pipeline.env == {"DEBUG": "true"}
    assert pipeline.triggers.push.branches == ["main"]
    assert pipeline.triggers.push.branches_ignore == ["wip/*"]
    assert pipeline.triggers.pull_request is not None
    assert pipeline.triggers.workflow_dispatch is True
    assert pipeline.triggers.schedule == ["0 3 * * *"]

    build, test = pipeline.jobs
    assert build.steps[0].name == "make"
    assert build.steps[1].uses == "actions/upload-artifact@v4"
    assert build.steps[1].with_ == {"name": "dist", "path": "dist/"}

    assert test.needs == ["build"]
    assert test.runs_on == "docker:python:3.12"
    assert test.timeout == 300
    assert test.secrets == ["TOKEN"]
    step = test.steps[0]
    assert (step.name, step.condition, step.continue_on_error, step.cwd) == (
        "Run tests", "${{ success() }}", True, "app",
    )


def test_on_shorthand_forms():
    assert loads_yaml("on: push\njobs: {a: {steps: [{run: x}]}}").triggers.push is not None
    both = loads_yaml("on: [push, workflow_dispatch]\njobs: {a: {steps: [{run: x}]}}").triggers
    assert both.push is not None and both.workflow_dispatch


@pytest.mark.parametrize("doc, message", [
    ("jobs: {}", "jobs"),
    ("jobs: {a: {steps: []}}", "steps"),
    ("jobs: {a: {steps: [{run: x, uses: y}]}}", "exactly one"),
    ("jobs: {a: {steps: [{run: x}], bogus: 1}}", "bogus"),
    ("jobs: {a: {steps: [{run: x}], if: 'a =='}}", "Invalid condition"),
    ("jobs: {a: {steps: [{uses: nope}]}}", "Unknown action"),
    ("- just\n- a list", "mapping"),
    ("jobs: [", "invalid YAML"),
])
def test_definition_errors(doc, message):
    with pytest.raises(PipelineDefinitionError) as exc:
        loads_yaml(doc)
    assert message in str(exc.value)


def test_graph_errors_surface_at_load_time():
    with pytest.raises(PipelineError):
        loads_yaml("jobs: {a: {needs: b, steps: [{run: x}]}, b: {needs: a, steps: [{run: x}]}}")


def test_bad_cron_rejected():
    with pytest.raises(PipelineError):
        loads_yaml("on: {schedule: [{cron: '99 * * * *'}]}\njobs: {a: {steps: [{run: x}]}}")


def test_load_yaml_file_uses_stem_as_default_name(tmp_path: Path):
    path = tmp_path / "nightly.yml"
    path.write_text("jobs: {a: {steps: [{run: x}]}}")
    assert load_pipeline(path).name == "nightly"


def test_load_python_file(tmp_path: Path):
    path = tmp_path / "relayci_workflow.py"
    path.write_text(dedent("""
        from relayci.dsl import job, pipeline, sh, triggers

        def workflow():
            return pipeline("py", job("a", sh("one", "echo 1")), on=triggers(push=["main"]))
    """))
    pipeline = load_pipeline(path)
    assert pipeline.name == "py"
    assert pipeline.triggers.push.branches == ["main"]


def test_load_python_job_list(tmp_path: Path):
    path = tmp_path / "jobs.py"
    path.write_text(dedent("""
        from relayci.dsl import job, sh
        JOBS = [job("a", sh("one", "echo 1")), job("b", sh("two", "echo 2"), needs=["a"])]
    """))
    pipeline = load_pipeline(path)
    assert pipeline.name == "jobs"
    assert [j.name for j in pipeline.jobs] == ["a", "b"]
    assert pipeline.triggers.workflow_dispatch


def test_python_file_without_pipeline(tmp_path: Path):
    path = tmp_path / "empty.py"
    path.write_text("X = 1\n")
    with pytest.raises(PipelineDefinitionError):
        load_pipeline(path)


def test_missing_and_unsupported_files(tmp_path: Path):
    with pytest.raises(PipelineDefinitionError):
        load_pipeline(tmp_path / "nope.yml")
    other = tmp_path / "pipeline.toml"
    other.write_text("")
    with pytest.raises(PipelineDefinitionError):
        load_pipeline(other)


def test_find_pipeline_file(tmp_path: Path):
    with pytest.raises(PipelineDefinitionError):
        find_pipeline_file(tmp_path)
    (tmp_path / "relayci.yml").write_text("jobs: {a: {steps: [{run: x}]}}")
    assert find_pipeline_file(tmp_path) == tmp_path / "relayci.yml"


def test_example_pipelines_load():
    root = Path(__file__).resolve().parents[1]
    yml = load_pipeline(root / "relayci.yml")
    assert [j.name for j in yml.jobs] == ["build", "test", "scan", "push"]
    py = load_pipeline(root / "relayci_workflow.py")
    assert "test-py3.12" in [j.name for j in py.jobs]
