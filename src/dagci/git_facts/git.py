# git.py
# Small, focused wrapper around the Git CLI.
# The CLI uses it to turn "run here, now" into a push event for the
# current branch.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Raises:
        subprocess.CalledProcessError: git exited non-zero.
        FileNotFoundError: git is not installed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def repo_root(cwd: Optional[str] = None) -> Path:
    """Absolute path to the root of the repository containing `cwd`."""
    return Path(_git(["rev-parse", "--show-toplevel"], cwd=cwd))


def current_branch(cwd: Optional[str] = None) -> Optional[str]:
    """
    Name of the checked-out branch, or None on a detached HEAD.
    """
    name = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    return None if name == "HEAD" else name

