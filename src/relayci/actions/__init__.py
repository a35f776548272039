"""Reusable step actions.

Actions are looked up in a static registry by name. A reference may carry an
owner prefix and a version suffix, which are ignored:
`actions/upload-artifact@v4` resolves to `upload-artifact`.
"""

from __future__ import annotations

from typing import Dict

from .artifact import DownloadArtifact, UploadArtifact
from .base import Action, ActionContext, ActionResult
from .checkout import Checkout
from .env import SetEnv
from .tools import Docker, Lint, Test

ACTIONS: Dict[str, Action] = {
    "upload-artifact": UploadArtifact(),
    "download-artifact": DownloadArtifact(),
    "checkout": Checkout(),
    "set-env": SetEnv(),
    "lint": Lint(),
    "test": Test(),
    "docker": Docker(),
}


def action_name(ref: str) -> str:
    name = ref.split("@", 1)[0]
    return name.rsplit("/", 1)[-1]


def get_action(ref: str) -> Action:
    try:
        return ACTIONS[action_name(ref)]
    except KeyError:
        raise KeyError(f"Unknown action {ref!r}. Known actions: {sorted(ACTIONS)}") from None


__all__ = [
    "ACTIONS",
    "Action",
    "ActionContext",
    "ActionResult",
    "action_name",
    "get_action",
]
