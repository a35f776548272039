# actions/artifact.py
from __future__ import annotations

from typing import Any, Mapping

from .base import ActionContext, ActionResult, as_list


class UploadArtifact:
    """
    with:
      name: dist
      path: |
        dist/*.whl
        !dist/*.tmp
      if-no-files-found: error | warn | ignore
      retention-days: 7
    """

    def execute(self, config: Mapping[str, Any], ctx: ActionContext) -> ActionResult:
        if ctx.artifacts is None:
            raise RuntimeError("upload-artifact needs an artifact store")
        name = str(config.get("name") or "artifact")
        patterns = as_list(config.get("path"))
        if not patterns:
            raise ValueError("upload-artifact: 'path' is required")

        retention = config.get("retention-days")
        artifact = ctx.artifacts.upload(
            name,
            patterns,
            root=ctx.workspace,
            if_no_files_found=str(config.get("if-no-files-found", "error")),
            retention_days=float(retention) if retention is not None else None,
        )
        if artifact is None:
            return ActionResult(0, [f"No files found for artifact '{name}', nothing uploaded"])
        lines = [f"Uploaded artifact '{name}' ({len(artifact.files)} files, {artifact.size} bytes)"]
        lines.extend(f"  {f}" for f in artifact.files)
        return ActionResult(0, lines)


class DownloadArtifact:
    """
    with:
      name: dist
      path: downloads/   (default: workspace root)
    """

    def execute(self, config: Mapping[str, Any], ctx: ActionContext) -> ActionResult:
        if ctx.artifacts is None:
            raise RuntimeError("download-artifact needs an artifact store")
        name = config.get("name")
        if not name:
            raise ValueError("download-artifact: 'name' is required")
        dest = ctx.workspace / str(config.get("path") or ".")
        written = ctx.artifacts.download(str(name), dest)
        lines = [f"Downloaded artifact '{name}' ({len(written)} files) to {dest}"]
        return ActionResult(0, lines)
