# actions/checkout.py
from __future__ import annotations

import subprocess
from typing import Any, Mapping

from .. import git
from .base import ActionContext, ActionResult


class Checkout:
    """
    Clone the repository into the job workspace.

    with:
      repository: https://github.com/org/repo.git   (default: $RELAYCI_REPOSITORY, then the
                                                    workspace's `origin` remote)
      ref: main                                     (default: event sha, then ref)
      path: src/                                    (default: workspace root)
    """

    def execute(self, config: Mapping[str, Any], ctx: ActionContext) -> ActionResult:
        repo = config.get("repository") or ctx.env.get("RELAYCI_REPOSITORY")
        if not repo:
            try:
                repo = git.remote_url(cwd=ctx.workspace)
            except (subprocess.CalledProcessError, FileNotFoundError):
                raise ValueError(
                    "checkout: no 'repository' given, RELAYCI_REPOSITORY is unset "
                    "and the workspace has no origin remote"
                ) from None

        ref = config.get("ref")
        if not ref and ctx.event is not None:
            ref = ctx.event.sha or ctx.event.branch
        dest = ctx.workspace / str(config.get("path") or ".")

        git.clone_or_update(str(repo), str(ref or ""), dest)
        sha = git.head_sha(dest)
        return ActionResult(0, [f"Checked out {repo} at {sha}"], {"RELAYCI_CHECKOUT_SHA": sha})
