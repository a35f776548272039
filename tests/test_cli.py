import shutil
import subprocess
import time
from pathlib import Path

import pytest
from click.testing import CliRunner

from relayci.cli import cli

PIPELINE = """
name: demo
on:
  push:
    branches: [main]
jobs:
  build:
    steps:
      - run: echo building
  test:
    needs: build
    steps:
      - run: echo "secret is $TOKEN"
    secrets: [TOKEN]
"""


@pytest.fixture
def runner(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    for key in ("RELAYCI_PIPELINE", "RELAYCI_MAX_WORKERS", "RELAYCI_WEBHOOK_URL"):
        monkeypatch.delenv(key, raising=False)
    (tmp_path / "relayci.yml").write_text(PIPELINE)
    return CliRunner()


def test_run_success(runner):
    result = runner.invoke(cli, ["run", "--ref", "refs/heads/main", "--sha", "abc", "--secret", "TOKEN=hunter2"])
    assert result.exit_code == 0, result.output
    assert "RUN STARTED" in result.output
    assert "JOB STARTED: build" in result.output
    assert "secret is ***" in result.output
    assert "hunter2" not in result.output
    assert "RUN: SUCCESS" in result.output


def test_run_failure_exit_code(runner, tmp_path: Path):
    (tmp_path / "bad.yml").write_text("jobs: {a: {steps: [{run: 'exit 3'}]}}")
    result = runner.invoke(cli, ["run", "--pipeline", "bad.yml", "--ref", "main", "--sha", "abc"])
    assert result.exit_code == 1
    assert "JOB FAILED: a" in result.output


def test_invalid_pipeline_exit_code(runner, tmp_path: Path):
    (tmp_path / "cycle.yml").write_text("jobs: {a: {needs: a, steps: [{run: x}]}}")
    result = runner.invoke(cli, ["validate", "--pipeline", "cycle.yml"])
    assert result.exit_code == 2


def test_validate(runner):
    result = runner.invoke(cli, ["validate"])
    assert result.exit_code == 0
    assert "OK: pipeline 'demo' (2 jobs)" in result.output


def test_plan_prints_levels(runner):
    result = runner.invoke(cli, ["plan"])
    assert result.exit_code == 0
    assert "1. build" in result.output
    assert "2. test" in result.output


def test_trigger_match_and_no_match(runner):
    ok = runner.invoke(cli, ["trigger", "--event", "push", "--ref", "refs/heads/main", "--sha", "abc"])
    assert ok.exit_code == 0
    assert "MATCH" in ok.output
    no = runner.invoke(cli, ["trigger", "--event", "push", "--ref", "refs/heads/dev", "--sha", "abc"])
    assert no.exit_code == 1
    assert "NO MATCH" in no.output


def test_bad_pair_option(runner):
    result = runner.invoke(cli, ["run", "--secret", "novalue", "--ref", "main", "--sha", "abc"])
    assert result.exit_code == 2


def test_artifacts_purge_and_list(runner, tmp_path: Path):
    (tmp_path / "up.yml").write_text(
        "jobs: {a: {steps: [{run: 'echo x > f.txt'}, "
        "{uses: upload-artifact, with: {name: f, path: f.txt, retention-days: 0.00001}}]}}"
    )
    assert runner.invoke(cli, ["run", "--pipeline", "up.yml", "--ref", "main", "--sha", "abc"]).exit_code == 0
    run_dir = next((tmp_path / ".relayci" / "artifacts").iterdir())

    listed = runner.invoke(cli, ["artifacts", "list", run_dir.name])
    assert "f\t" in listed.output

    time.sleep(1)
    purged = runner.invoke(cli, ["artifacts", "purge"])
    assert purged.exit_code == 0
    assert f"purged {run_dir.name}/f" in purged.output


ISOLATION = """
jobs:
  a:
    steps:
      - run: test -f relayci.yml && echo a > scratch.txt
  b:
    needs: a
    steps:
      - run: test ! -f scratch.txt
"""


def test_jobs_are_isolated_by_default(runner, tmp_path: Path):
    (tmp_path / "iso.yml").write_text(ISOLATION)
    isolated = runner.invoke(cli, ["run", "--pipeline", "iso.yml", "--ref", "main", "--sha", "abc"])
    assert isolated.exit_code == 0, isolated.output
    assert not (tmp_path / "scratch.txt").exists()

    shared = runner.invoke(cli, ["run", "--pipeline", "iso.yml", "--shared", "--ref", "main", "--sha", "abc"])
    assert shared.exit_code == 1
    assert (tmp_path / "scratch.txt").exists()


PATHS = """
on:
  push:
    paths: ["src/*"]
jobs:
  a:
    steps:
      - run: "true"
"""


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
def test_trigger_reads_changed_files_from_git(runner, tmp_path: Path):
    def git(*args):
        subprocess.run(["git", *args], cwd=tmp_path, check=True, capture_output=True)

    (tmp_path / "paths.yml").write_text(PATHS)
    git("init", "-q", "-b", "main")
    git("config", "user.email", "ci@example.com")
    git("config", "user.name", "ci")
    git("add", ".")
    git("commit", "-q", "-m", "first")
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "app.py").write_text("print('hi')\n")
    git("add", ".")
    git("commit", "-q", "-m", "code")

    hit = runner.invoke(cli, ["trigger", "--pipeline", "paths.yml", "--event", "push"])
    assert hit.exit_code == 0, hit.output
    assert "MATCH: push" in hit.output

    (tmp_path / "README.md").write_text("docs\n")
    git("add", ".")
    git("commit", "-q", "-m", "docs")
    miss = runner.invoke(cli, ["trigger", "--pipeline", "paths.yml", "--event", "push"])
    assert miss.exit_code == 1
    assert "NO MATCH" in miss.output

    explicit = runner.invoke(cli, ["trigger", "--pipeline", "paths.yml", "--event", "push", "--changed", "src/x.py"])
    assert explicit.exit_code == 0
