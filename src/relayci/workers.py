# workers.py
from __future__ import annotations

import logging
import os
import shutil
import signal
import subprocess
import tempfile
import threading
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Protocol

from .errors import PipelineError

log = logging.getLogger(__name__)

ENV_FILE_VAR = "RELAYCI_ENV"
POLL_INTERVAL = 0.05

TOOL_HINTS = {
    "docker": "Install Docker and ensure the daemon is running.",
    "git": "Install Git or fix PATH.",
    "npm": "Install Node.js (includes npm) or fix PATH.",
    "pytest": "Install pytest (e.g., pip install pytest).",
    "ruff": "Install ruff (e.g., pip install ruff).",
}


@dataclass
class StepOutcome:
    """What a worker hands back for one command: (exit code, output, env mutations)."""
    exit_code: int
    output: List[str] = field(default_factory=list)
    env_mutations: Dict[str, str] = field(default_factory=dict)
    timed_out: bool = False
    cancelled: bool = False


@dataclass
class ToolUnavailable(PipelineError):
    tool: str

    def __str__(self) -> str:
        hint = TOOL_HINTS.get(self.tool, f"Install {self.tool} or fix PATH.")
        return f"{self.tool} is not available. Hint: {hint}"


class Worker(Protocol):
    def run(
        self,
        command: str,
        *,
        env: Mapping[str, str],
        cwd: Path,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
        on_output: Optional[Callable[[str], None]] = None,
    ) -> StepOutcome:
        ...


# ---------------------------------------------------------------------
# Env file ($RELAYCI_ENV)
# ---------------------------------------------------------------------

def parse_env_file(text: str) -> Dict[str, str]:
    """
    Parse lines written to $RELAYCI_ENV:
        NAME=value
        NAME<<EOF
        multi
        line
        EOF
    """
    out: Dict[str, str] = {}
    lines = text.splitlines()
    i = 0
    while i < len(lines):
        line = lines[i]
        i += 1
        if not line.strip():
            continue
        if "<<" in line and ("=" not in line or line.index("<<") < line.index("=")):
            name, delim = line.split("<<", 1)
            buf: List[str] = []
            while i < len(lines) and lines[i] != delim:
                buf.append(lines[i])
                i += 1
            i += 1  # closing delimiter
            out[name.strip()] = "\n".join(buf)
        elif "=" in line:
            name, value = line.split("=", 1)
            out[name.strip()] = value
    return out


# ---------------------------------------------------------------------
# Process supervision
# ---------------------------------------------------------------------

def _signal_group(proc: subprocess.Popen, sig: int) -> None:
    try:
        os.killpg(proc.pid, sig)
    except (ProcessLookupError, PermissionError):
        pass


def _supervise(
    proc: subprocess.Popen,
    *,
    timeout: Optional[float],
    cancel: Optional[threading.Event],
    grace_period: float,
    on_kill: Optional[Callable[[bool], None]] = None,
) -> tuple[int, bool, bool]:
    """
    Wait for `proc`, terminating it on timeout or cancellation.
    Returns (exit_code, timed_out, cancelled).
    """
    deadline = time.monotonic() + timeout if timeout is not None else None
    timed_out = cancelled = False

    while True:
        try:
            return proc.wait(timeout=POLL_INTERVAL), False, False
        except subprocess.TimeoutExpired:
            pass
        if cancel is not None and cancel.is_set():
            cancelled = True
            break
        if deadline is not None and time.monotonic() >= deadline:
            timed_out = True
            break

    # Timeouts kill right away; cancellation gets a grace period first.
    if on_kill is not None:
        on_kill(cancelled)
    if cancelled:
        _signal_group(proc, signal.SIGTERM)
        try:
            return proc.wait(timeout=grace_period), timed_out, cancelled
        except subprocess.TimeoutExpired:
            log.warning("process %s ignored SIGTERM for %.1fs, killing", proc.pid, grace_period)
    _signal_group(proc, signal.SIGKILL)
    return proc.wait(), timed_out, cancelled


def _pump(stream, sink: List[str], on_output: Optional[Callable[[str], None]]) -> None:
    for raw in iter(stream.readline, ""):
        line = raw.rstrip("\n")
        sink.append(line)
        if on_output is not None:
            on_output(line)
    stream.close()


def _run_process(
    argv,
    *,
    shell: bool,
    env: Mapping[str, str],
    cwd: Path,
    env_file: Path,
    timeout: Optional[float],
    cancel: Optional[threading.Event],
    grace_period: float,
    on_output: Optional[Callable[[str], None]],
    on_kill: Optional[Callable[[bool], None]] = None,
) -> StepOutcome:
    proc = subprocess.Popen(
        argv,
        shell=shell,
        cwd=str(cwd),
        env=dict(env),
        text=True,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        stdin=subprocess.DEVNULL,
        start_new_session=True,  # own process group, so the whole tree can be signalled
    )
    output: List[str] = []
    reader = threading.Thread(target=_pump, args=(proc.stdout, output, on_output), daemon=True)
    reader.start()

    exit_code, timed_out, cancelled = _supervise(
        proc, timeout=timeout, cancel=cancel, grace_period=grace_period, on_kill=on_kill,
    )
    reader.join(timeout=grace_period + 1.0)

    mutations: Dict[str, str] = {}
    if env_file.exists():
        mutations = parse_env_file(env_file.read_text(encoding="utf-8"))

    return StepOutcome(
        exit_code=exit_code,
        output=output,
        env_mutations=mutations,
        timed_out=timed_out,
        cancelled=cancelled,
    )


# ---------------------------------------------------------------------
# Workers
# ---------------------------------------------------------------------

class LocalWorker:
    """Runs commands with the local shell."""

    def __init__(self, grace_period: float = 10.0):
        self.grace_period = grace_period

    def run(
        self,
        command: str,
        *,
        env: Mapping[str, str],
        cwd: Path,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
        on_output: Optional[Callable[[str], None]] = None,
    ) -> StepOutcome:
        cwd = Path(cwd)
        if not cwd.exists():
            raise FileNotFoundError(f"step cwd not found: {cwd}")

        with tempfile.TemporaryDirectory(prefix="relayci-") as tmp:
            env_file = Path(tmp) / "env"
            env_file.touch()
            full_env = dict(env)
            full_env[ENV_FILE_VAR] = str(env_file)
            return _run_process(
                command,
                shell=True,
                env=full_env,
                cwd=cwd,
                env_file=env_file,
                timeout=timeout,
                cancel=cancel,
                grace_period=self.grace_period,
                on_output=on_output,
            )


def check_tool(tool: str) -> None:
    """Raise ToolUnavailable if `tool` is not on PATH."""
    if shutil.which(tool) is None:
        raise ToolUnavailable(tool)


class DockerWorker:
    """
    Runs commands inside a container: the job workspace is mounted at
    /workspace and only variables that differ from the host environment
    are forwarded.
    """

    container_workdir = "/workspace"

    def __init__(self, image: str, *, grace_period: float = 10.0, volumes: Optional[List[str]] = None, user: Optional[str] = None):
        self.image = image
        self.grace_period = grace_period
        self.volumes = list(volumes or [])
        self.user = user

    def forwarded_env(self, env: Mapping[str, str]) -> Dict[str, str]:
        return {k: v for k, v in env.items() if os.environ.get(k) != v}

    def build_command(self, command: str, *, env: Mapping[str, str], cwd: Path, env_dir: Path, name: str) -> List[str]:
        cmd = ["docker", "run", "--rm", "--name", name]
        cmd.extend(["-v", f"{Path(cwd).resolve()}:{self.container_workdir}"])
        cmd.extend(["-v", f"{env_dir}:/relayci"])
        for vol in self.volumes:
            cmd.extend(["-v", vol])
        cmd.extend(["-w", self.container_workdir])

        # names only; values come from the docker CLI's own environment
        for key in sorted(self.forwarded_env(env)):
            cmd.extend(["-e", key])
        cmd.extend(["-e", f"{ENV_FILE_VAR}=/relayci/env"])

        if self.user:
            cmd.extend(["--user", self.user])

        cmd.append(self.image)
        cmd.extend(["sh", "-c", command])
        return cmd

    def run(
        self,
        command: str,
        *,
        env: Mapping[str, str],
        cwd: Path,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
        on_output: Optional[Callable[[str], None]] = None,
    ) -> StepOutcome:
        check_tool("docker")
        name = f"relayci-{uuid.uuid4().hex[:12]}"

        def stop_container(cancelled: bool) -> None:
            if cancelled:
                argv = ["docker", "stop", "-t", str(int(self.grace_period)), name]
            else:
                argv = ["docker", "kill", name]
            subprocess.run(argv, capture_output=True, check=False)

        with tempfile.TemporaryDirectory(prefix="relayci-") as tmp:
            env_file = Path(tmp) / "env"
            env_file.touch()
            argv = self.build_command(command, env=env, cwd=cwd, env_dir=Path(tmp), name=name)
            return _run_process(
                argv,
                shell=False,
                env={**os.environ, **self.forwarded_env(env)},
                cwd=Path(cwd),
                env_file=env_file,
                timeout=timeout,
                cancel=cancel,
                grace_period=self.grace_period,
                on_output=on_output,
                on_kill=stop_container,
            )


def worker_for(runs_on: str, *, grace_period: float = 10.0) -> Worker:
    """
    Map a job's `runs_on` label to a worker:
      local / self-hosted / ubuntu-*  -> LocalWorker
      docker:<image>                  -> DockerWorker(<image>)
    """
    if runs_on.startswith("docker:"):
        image = runs_on.split(":", 1)[1]
        if not image:
            raise ValueError("runs_on 'docker:' needs an image, e.g. docker:python:3.12")
        return DockerWorker(image, grace_period=grace_period)
    return LocalWorker(grace_period=grace_period)
