"""GitHub helper operations backed by the ``gh`` CLI."""

from __future__ import annotations

import json
import logging
import os
import subprocess
from typing import Dict, List, Optional, Sequence

from pydantic import ValidationError

from .data_types import GitHubIssue

logger = logging.getLogger(__name__)

ISSUE_FIELDS = "number,title,body,labels,url"


class GitHubCLIError(RuntimeError):
    """Raised when a ``gh`` command fails or returns unusable output."""


def get_github_env() -> Optional[Dict[str, str]]:
    """Return a minimal environment for GitHub CLI commands if a PAT is set."""

    github_pat = os.getenv("GITHUB_PAT")
    if not github_pat:
        return None
    return {
        "GH_TOKEN": github_pat,
        "PATH": os.environ.get("PATH", ""),
        "HOME": os.environ.get("HOME", ""),
    }


def get_repo_url() -> str:
    """Return the remote origin URL for the current repository."""

    try:
        result = subprocess.run(
            ["git", "remote", "get-url", "origin"], capture_output=True, text=True, check=True
        )
    except subprocess.CalledProcessError as exc:
        raise ValueError(
            "No git remote 'origin' found. Please ensure you're in a git repository with a remote."
        ) from exc
    except FileNotFoundError as exc:
        raise ValueError("git command not found. Please ensure git is installed.") from exc
    return result.stdout.strip()


def extract_repo_path(github_url: str) -> str:
    """Extract ``<owner>/<repo>`` from an https or ssh GitHub remote URL."""

    path = github_url.strip()
    for prefix in ("https://github.com/", "http://github.com/", "git@github.com:", "ssh://git@github.com/"):
        if path.startswith(prefix):
            path = path[len(prefix):]
            break
    if path.endswith(".git"):
        path = path[: -len(".git")]
    return path.rstrip("/")


def run_gh(args: Sequence[str]) -> str:
    cmd = ["gh", *args]
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, env=get_github_env())
    except FileNotFoundError as exc:
        raise GitHubCLIError("GitHub CLI (gh) is not installed. Install it and run `gh auth login`.") from exc
    if result.returncode != 0:
        raise GitHubCLIError(f"gh {' '.join(args[:2])} failed: {result.stderr.strip()}")
    return result.stdout


def fetch_issue(issue_number: int | str, repo_path: str) -> GitHubIssue:
    """Fetch a GitHub issue and return a typed model."""

    stdout = run_gh(["issue", "view", str(issue_number), "-R", repo_path, "--json", ISSUE_FIELDS])
    try:
        payload = json.loads(stdout)
        payload["body"] = payload.get("body") or ""
        return GitHubIssue.model_validate(payload)
    except (json.JSONDecodeError, ValidationError) as exc:
        raise GitHubCLIError(f"Unable to parse issue #{issue_number} JSON: {exc}") from exc


def fetch_open_issues(repo_path: str, label: Optional[str] = None) -> List[GitHubIssue]:
    """Return open issues, optionally only those carrying ``label``."""

    args = ["issue", "list", "--repo", repo_path, "--state", "open", "--json", ISSUE_FIELDS, "--limit", "1000"]
    if label:
        args.extend(["--label", label])
    stdout = run_gh(args)
    try:
        issues = json.loads(stdout)
    except json.JSONDecodeError as exc:
        raise GitHubCLIError(f"Unable to parse issue list JSON: {exc}") from exc
    for issue in issues:
        issue["body"] = issue.get("body") or ""
    return [GitHubIssue.model_validate(issue) for issue in issues]


def make_issue_comment(issue_number: int | str, comment: str, repo_path: Optional[str] = None) -> None:
    """Post a comment on a GitHub issue."""

    repo_path = repo_path or extract_repo_path(get_repo_url())
    run_gh(["issue", "comment", str(issue_number), "-R", repo_path, "--body", comment])


__all__ = [
    "GitHubCLIError",
    "run_gh",
    "extract_repo_path",
    "fetch_issue",
    "fetch_open_issues",
    "get_github_env",
    "get_repo_url",
    "make_issue_comment",
]
