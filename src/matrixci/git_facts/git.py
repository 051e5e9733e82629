# git.py
# Thin wrapper around the Git CLI.
# Change detection and the CLI header go through here; nothing else in the
# package shells out to git.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional

EMPTY_TREE = "4b825dc642cb6eb9a060e54bf8d69288fbee4904"


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout, stripped.

    Raises subprocess.CalledProcessError on a non-zero exit and
    FileNotFoundError when git is not installed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.PIPE,
    )
    return out.strip()


def current_branch(cwd: Optional[str | Path] = None) -> str:
    """
    Name of the checked-out branch.

    Returns "" on a detached HEAD.
    """
    name = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    return "" if name == "HEAD" else name


def remote_url(name: str = "origin", cwd: Optional[str | Path] = None) -> str:
    return _git(["remote", "get-url", name], cwd=cwd)


def changed_files(base: Optional[str], head: str = "HEAD", cwd: Optional[str | Path] = None) -> List[str]:
    """
    Files changed between two refs, relative to the repository root.

    A missing base (first push of a branch, all-zero sha) diffs head against
    the empty tree, i.e. every tracked file counts as changed.
    """
    if not base or set(base) == {"0"}:
        base = EMPTY_TREE
    out = _git(["diff", "--name-only", base, head], cwd=cwd)
    if not out:
        return []
    return out.splitlines()
