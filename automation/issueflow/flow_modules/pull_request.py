"""Open a pull request for the changes the agents left in the working tree."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional, Sequence

from .data_types import GitHubIssue, PullRequestResult
from .git_ops import GitError, changed_files, checkout_branch, commit_all, push_branch
from .github import GitHubCLIError, extract_repo_path, get_repo_url, run_gh

logger = logging.getLogger(__name__)

BRANCH_PREFIX = "automation/issue-"


def branch_name_for(issue_number: int) -> str:
    return f"{BRANCH_PREFIX}{issue_number}"


def format_pr_body(issue: GitHubIssue, results: Sequence[Any], files: Sequence[str]) -> str:
    lines = [f"Closes #{issue.number}", "", "## Agent summaries"]
    for result in results:
        lines.append(f"- **{result.agent_type}**: {result.description or 'no description'}")
    lines.extend(["", "## Files changed"])
    lines.extend(f"- `{path}`" for path in files)
    if not files:
        lines.append("- (none)")
    return "\n".join(lines)


def create_pull_request(
    issue: GitHubIssue,
    results: Sequence[Any],
    base_branch: str = "main",
    cwd: Path | None = None,
    repo_path: Optional[str] = None,
) -> PullRequestResult:
    """Branch, commit, push and open a pull request. Never raises."""

    branch = branch_name_for(issue.number)
    try:
        files = changed_files(cwd=cwd)
        if not files:
            return PullRequestResult(success=False, branch=branch, error="No changes to commit")

        checkout_branch(branch, create=True, base=None, cwd=cwd)
        committed, error = commit_all(f"Automated changes for #{issue.number}: {issue.title}", cwd=cwd)
        if not committed:
            return PullRequestResult(success=False, branch=branch, error=error)

        pushed, error = push_branch(branch, cwd=cwd)
        if not pushed:
            return PullRequestResult(success=False, branch=branch, files_changed=len(files), error=error)

        repo_path = repo_path or extract_repo_path(get_repo_url())
        stdout = run_gh(
            [
                "pr", "create",
                "-R", repo_path,
                "--base", base_branch,
                "--head", branch,
                "--title", f"Automated fix for #{issue.number}: {issue.title}",
                "--body", format_pr_body(issue, results, files),
            ]
        )
    except (GitError, GitHubCLIError, ValueError) as exc:
        logger.error(f"Error creating pull request for issue #{issue.number}: {exc}")
        return PullRequestResult(success=False, branch=branch, error=str(exc))

    pr_url = stdout.strip().splitlines()[-1] if stdout.strip() else None
    return PullRequestResult(success=True, pr_url=pr_url, files_changed=len(files), branch=branch)


__all__ = ["BRANCH_PREFIX", "branch_name_for", "create_pull_request", "format_pr_body"]
