"""Git command helpers used when opening automation pull requests."""

from __future__ import annotations

import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from .utils import project_root

PUSH_RETRY_DELAYS = (1, 3, 5)


class GitError(RuntimeError):
    """Raised when a git command fails."""


@dataclass(frozen=True)
class GitCommandResult:
    args: Sequence[str]
    stdout: str
    stderr: str
    returncode: int

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def _run_git(args: Iterable[str], cwd: Path | None = None, check: bool = True) -> GitCommandResult:
    """Execute a git command and optionally raise on failure."""

    args = tuple(args)
    try:
        result = subprocess.run(["git", *args], capture_output=True, text=True, cwd=cwd or project_root())
    except FileNotFoundError as exc:
        raise GitError("git command not found. Please ensure git is installed.") from exc
    git_result = GitCommandResult(
        args=args, stdout=result.stdout.strip(), stderr=result.stderr.strip(), returncode=result.returncode
    )
    if check and not git_result.ok:
        raise GitError(f"git {' '.join(args)} failed: {git_result.stderr}")
    return git_result


def get_current_branch(cwd: Path | None = None) -> str:
    return _run_git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd).stdout


def changed_files(cwd: Path | None = None) -> List[str]:
    """Paths with staged, unstaged or untracked changes."""

    status = _run_git(["status", "--porcelain"], cwd=cwd, check=False)
    return [line.split(maxsplit=1)[-1] for line in status.stdout.splitlines() if line.strip()]


def has_changes(cwd: Path | None = None) -> bool:
    return bool(changed_files(cwd))


def checkout_branch(branch_name: str, create: bool = False, base: str | None = None, cwd: Path | None = None) -> None:
    """Checkout a branch, creating it from ``base`` first if it does not exist."""

    if create and not _run_git(["rev-parse", "--verify", branch_name], cwd=cwd, check=False).ok:
        args = ["checkout", "-b", branch_name]
        if base:
            args.append(base)
        _run_git(args, cwd=cwd)
        return
    _run_git(["checkout", branch_name], cwd=cwd)


def commit_all(message: str, cwd: Path | None = None) -> tuple[bool, Optional[str]]:
    """Stage all changes and commit them.

    Returns:
        Tuple of (success, error_message)
    """
    if not has_changes(cwd=cwd):
        return False, "No changes to commit"
    try:
        _run_git(["add", "--all"], cwd=cwd)
    except GitError as exc:
        return False, str(exc)
    result = _run_git(["commit", "-m", message], cwd=cwd, check=False)
    if not result.ok:
        return False, result.stderr or "git commit failed"
    return True, None


def classify_push_error(stderr: str) -> str:
    """Classify a push failure as "network", "auth" or "unknown"."""

    stderr_lower = stderr.lower()
    if any(
        pattern in stderr_lower
        for pattern in (
            "could not resolve host",
            "failed to connect",
            "connection timed out",
            "connection refused",
            "network is unreachable",
            "temporary failure",
        )
    ):
        return "network"
    if any(
        pattern in stderr_lower
        for pattern in (
            "authentication failed",
            "permission denied",
            "could not read from remote repository",
            "fatal: unable to access",
        )
    ):
        return "auth"
    return "unknown"


def push_branch(branch_name: str, remote: str = "origin", cwd: Path | None = None) -> tuple[bool, Optional[str]]:
    """Push with upstream tracking, retrying network failures."""

    for delay in (*PUSH_RETRY_DELAYS, None):
        result = _run_git(["push", "-u", remote, branch_name], cwd=cwd, check=False)
        if result.ok:
            return True, None
        error = result.stderr or "git push failed"
        if classify_push_error(error) != "network" or delay is None:
            return False, error
        time.sleep(delay)
    return False, "git push failed"


__all__ = [
    "GitCommandResult",
    "GitError",
    "changed_files",
    "checkout_branch",
    "classify_push_error",
    "commit_all",
    "get_current_branch",
    "has_changes",
    "push_branch",
]
