import threading
import time
from pathlib import Path

import pytest

from relayci import workers
from relayci.workers import DockerWorker, LocalWorker, StepOutcome, parse_env_file, worker_for


def test_parse_env_file_simple_and_heredoc():
    text = "A=1\n\nB=x=y\nNOTES<<EOF\nline one\nline two\nEOF\nC=3\n"
    assert parse_env_file(text) == {"A": "1", "B": "x=y", "NOTES": "line one\nline two", "C": "3"}


def test_local_worker_captures_output_and_env(tmp_path: Path, base_env):
    seen = []
    outcome = LocalWorker().run(
        'echo hello; echo "VERSION=1.2" >> "$RELAYCI_ENV"; exit 3',
        env=base_env,
        cwd=tmp_path,
        on_output=seen.append,
    )
    assert outcome.exit_code == 3
    assert outcome.output == ["hello"]
    assert seen == ["hello"]
    assert outcome.env_mutations == {"VERSION": "1.2"}


def test_local_worker_timeout_kills(tmp_path: Path, base_env):
    started = time.monotonic()
    outcome = LocalWorker().run("sleep 30", env=base_env, cwd=tmp_path, timeout=0.3)
    assert outcome.timed_out
    assert outcome.exit_code != 0
    assert time.monotonic() - started < 10


def test_local_worker_cancel_sends_term_then_kill(tmp_path: Path, base_env):
    cancel = threading.Event()
    threading.Timer(0.3, cancel.set).start()
    started = time.monotonic()
    outcome = LocalWorker(grace_period=0.5).run(
        "trap '' TERM; sleep 30", env=base_env, cwd=tmp_path, cancel=cancel,
    )
    assert outcome.cancelled
    assert not outcome.timed_out
    assert time.monotonic() - started < 10


def test_local_worker_missing_cwd(tmp_path: Path, base_env):
    with pytest.raises(FileNotFoundError):
        LocalWorker().run("true", env=base_env, cwd=tmp_path / "missing")


def test_docker_worker_command_line(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("HOST_ONLY", "same")
    worker = DockerWorker("python:3.12-slim", volumes=["/cache:/cache"], user="1000")
    argv = worker.build_command(
        "pytest -q",
        env={"HOST_ONLY": "same", "JOB_VAR": "x"},
        cwd=tmp_path,
        env_dir=tmp_path / "envdir",
        name="relayci-abc",
    )
    assert argv[:5] == ["docker", "run", "--rm", "--name", "relayci-abc"]
    assert f"{tmp_path.resolve()}:/workspace" in argv
    assert ["-e", "JOB_VAR"] == argv[argv.index("JOB_VAR") - 1:argv.index("JOB_VAR") + 1]
    assert "JOB_VAR=x" not in argv
    assert "HOST_ONLY" not in argv
    assert worker.forwarded_env({"HOST_ONLY": "same", "JOB_VAR": "x"}) == {"JOB_VAR": "x"}
    assert "RELAYCI_ENV=/relayci/env" in argv
    assert argv[-4:] == ["python:3.12-slim", "sh", "-c", "pytest -q"]


def test_worker_for_labels():
    assert isinstance(worker_for("local"), LocalWorker)
    assert isinstance(worker_for("ubuntu-latest"), LocalWorker)
    docker = worker_for("docker:alpine:3.19")
    assert isinstance(docker, DockerWorker) and docker.image == "alpine:3.19"
    with pytest.raises(ValueError):
        worker_for("docker:")


@pytest.mark.parametrize("cancelled, expected", [
    (True, ["docker", "stop", "-t", "7"]),
    (False, ["docker", "kill"]),
])
def test_docker_worker_stops_or_kills_container(monkeypatch, tmp_path: Path, cancelled, expected):
    seen = {}
    issued = []

    def fake_run_process(argv, **kwargs):
        seen.update(kwargs)
        kwargs["on_kill"](cancelled)
        return StepOutcome(137, cancelled=cancelled, timed_out=not cancelled)

    monkeypatch.setattr(workers, "check_tool", lambda tool: None)
    monkeypatch.setattr(workers, "_run_process", fake_run_process)
    monkeypatch.setattr(workers.subprocess, "run", lambda argv, **kw: issued.append(argv))

    DockerWorker("alpine", grace_period=7).run("sleep 60", env={"SECRET_X": "s3cr3t"}, cwd=tmp_path)

    assert issued[0][:-1] == expected
    assert issued[0][-1].startswith("relayci-")
    # values travel in the docker CLI's environment, not its argv
    assert seen["env"]["SECRET_X"] == "s3cr3t"
