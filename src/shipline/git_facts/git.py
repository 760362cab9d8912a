# git.py
# Small, focused wrapper around the Git CLI.
# This module centralizes all Git interactions so the rest of the codebase
# never needs to call subprocess("git ...") directly.

from __future__ import annotations

import subprocess
from typing import List, Optional


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    This is the single low-level entry point for all Git operations in this file.

    Args:
        args: List of git arguments (e.g. ["tag", "--list"])
        cwd: Optional working directory in which to run the git command.

    Returns:
        Stdout from the git command with surrounding whitespace removed.
    """
    # A non-zero exit raises CalledProcessError; callers decide what that means.
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.PIPE,
    )
    return out.strip()


def head_sha(cwd: Optional[str] = None) -> str:
    """Full SHA of the current HEAD commit (the commit a release is bound to)."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def is_shallow(cwd: Optional[str] = None) -> bool:
    """
    True when the clone has truncated history.

    Version computation needs every tag, so a shallow clone is a
    configuration error for release jobs.
    """
    return _git(["rev-parse", "--is-shallow-repository"], cwd=cwd) == "true"


def list_tags(cwd: Optional[str] = None) -> List[str]:
    """All tag names in the repository."""
    out = _git(["tag", "--list"], cwd=cwd)
    return out.splitlines() if out else []


def tags_at(commit: str, cwd: Optional[str] = None) -> List[str]:
    """Tags that point directly at `commit`."""
    out = _git(["tag", "--points-at", commit], cwd=cwd)
    return out.splitlines() if out else []


def create_tag(tag: str, commit: str, message: str, cwd: Optional[str] = None) -> None:
    """Create an annotated tag on `commit`."""
    _git(["tag", "-a", tag, commit, "-m", message or tag], cwd=cwd)


def log_subjects(since: Optional[str] = None, until: str = "HEAD", cwd: Optional[str] = None) -> List[str]:
    """
    Commit subjects reachable from `until` but not from `since`.

    Used to generate release notes between the previous tag and HEAD.
    """
    rev = f"{since}..{until}" if since else until
    out = _git(["log", "--format=%s", rev], cwd=cwd)
    return out.splitlines() if out else []


def get_remote_url(remote: str = "origin", cwd: Optional[str] = None) -> str:
    return _git(["remote", "get-url", remote], cwd=cwd)
