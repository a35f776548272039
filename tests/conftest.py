from __future__ import annotations

import os
from pathlib import Path
from typing import Dict

import pytest

from relayci.artifacts import MemoryBackend
from relayci.scheduler import Scheduler


@pytest.fixture
def backend() -> MemoryBackend:
    return MemoryBackend()


@pytest.fixture
def base_env() -> Dict[str, str]:
    return {"PATH": os.environ.get("PATH", "/usr/bin:/bin"), "HOME": os.environ.get("HOME", "/tmp")}


@pytest.fixture
def make_scheduler(tmp_path: Path, backend, base_env):
    def _make(**overrides) -> Scheduler:
        options = dict(
            workspace=tmp_path,
            artifact_backend=backend,
            base_env=base_env,
            grace_period=1.0,
        )
        options.update(overrides)
        return Scheduler(**options)

    return _make
