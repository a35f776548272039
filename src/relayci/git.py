# git.py
# Small wrapper around the Git CLI. Everything else in relayci goes
# through here instead of calling subprocess("git ...") directly.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout, stripped.

    Raises subprocess.CalledProcessError on a non-zero exit.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.PIPE,
    )
    return out.strip()


def repo_root(cwd: Optional[str | Path] = None) -> Path:
    """Absolute path to the root of the current repository."""
    return Path(_git(["rev-parse", "--show-toplevel"], cwd))


def head_sha(cwd: Optional[str | Path] = None) -> str:
    return _git(["rev-parse", "HEAD"], cwd)


def current_branch(cwd: Optional[str | Path] = None) -> str:
    """
    Current branch name, or the HEAD sha when detached.
    """
    branch = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd)
    if branch == "HEAD":
        return head_sha(cwd)
    return branch


def remote_url(remote: str = "origin", cwd: Optional[str | Path] = None) -> str:
    return _git(["remote", "get-url", remote], cwd)


def is_dirty(cwd: Optional[str | Path] = None) -> bool:
    """True if there are modified, staged or untracked files."""
    return _git(["status", "--porcelain"], cwd) != ""


def merge_base(with_ref: str = "origin/main", cwd: Optional[str | Path] = None) -> str:
    return _git(["merge-base", "HEAD", with_ref], cwd)


def changed_files(base: str, head: str = "HEAD", cwd: Optional[str | Path] = None) -> List[str]:
    """
    Files changed between two refs, relative to the repository root.

    Typical usage:
        files = changed_files(merge_base("origin/main"))
    """
    out = _git(["diff", "--name-only", f"{base}..{head}"], cwd)
    if not out:
        return []
    return out.splitlines()


def clone_or_update(repo_url: str, ref: str, dest: Path) -> Path:
    """
    Clone `repo_url` into `dest` (or fetch if already there) and check out `ref`.

    Raises:
        RuntimeError: if any git operation fails
    """
    dest = Path(dest)
    dest.parent.mkdir(parents=True, exist_ok=True)

    def git(*args: str, cwd: Optional[Path] = None) -> None:
        result = subprocess.run(["git", *args], cwd=cwd, check=False, capture_output=True, text=True)
        if result.returncode != 0:
            raise RuntimeError(f"git {args[0]} failed: {result.stderr.strip()}")

    try:
        if (dest / ".git").exists():
            git("fetch", "origin", cwd=dest)
        else:
            git("clone", repo_url, str(dest))
        if ref:
            git("checkout", ref, cwd=dest)
    except FileNotFoundError:
        raise RuntimeError("git command not found. Please install Git.") from None

    return dest
