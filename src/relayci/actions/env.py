# actions/env.py
from __future__ import annotations

from typing import Any, Mapping

from .base import ActionContext, ActionResult


class SetEnv:
    """Every `with:` entry becomes a variable for the following steps of the job."""

    def execute(self, config: Mapping[str, Any], ctx: ActionContext) -> ActionResult:
        mutations = {str(k): "" if v is None else str(v) for k, v in config.items()}
        return ActionResult(0, [f"set {k}" for k in sorted(mutations)], mutations)
