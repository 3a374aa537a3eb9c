"""Issue comments summarising what the automation did."""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from .data_types import AgentRole, IssueAnalysis, PullRequestResult
from .github import GitHubCLIError, make_issue_comment

logger = logging.getLogger(__name__)

COMMENT_FOOTER = "\n\n---\n*Automated by issueflow*"
ERROR_COMMENT = "🤖 Automation encountered an error. Please review manually."


def _roles(agents: Iterable[AgentRole | str]) -> str:
    return ", ".join(str(getattr(agent, "value", agent)) for agent in agents)


def format_manual_review_comment(analysis: IssueAnalysis) -> str:
    return (
        "🤖 This issue requires human review due to complexity or risk level.\n\n"
        f"**Complexity:** {analysis.complexity.value} | **Risk:** {analysis.risk.value} | "
        f"**Suggested agents:** {_roles(analysis.agents)}"
    )


def format_completion_comment(
    successful: Iterable[AgentRole | str],
    failed: Iterable[AgentRole | str],
    pr_result: Optional[PullRequestResult] = None,
) -> str:
    """Markdown summary of the agent outcomes and the pull request, if one was attempted."""

    successful, failed = list(successful), list(failed)
    lines = ["🤖 Issueflow automation completed:", ""]
    if successful:
        lines.append(f"✅ **Successful agents:** {_roles(successful)}")
    if failed:
        lines.append(f"❌ **Failed agents:** {_roles(failed)}")

    if not successful:
        lines.extend(["", "No successful changes were made. Please review manually."])
    elif pr_result is not None and pr_result.success:
        lines.extend(
            [
                "",
                f"🔀 **Pull request created:** {pr_result.pr_url}",
                f"📁 **Files changed:** {pr_result.files_changed}",
                "",
                "Please review the pull request and merge if everything looks good.",
            ]
        )
    elif pr_result is not None:
        lines.extend(["", "⚠️ **PR creation failed.** Please create a pull request manually."])
    return "\n".join(lines)


def post_issue_comment(issue_number: int, body: str, repo_path: Optional[str] = None) -> bool:
    """Post ``body`` with the automation footer. Failures are logged, never raised."""

    try:
        make_issue_comment(issue_number, body + COMMENT_FOOTER, repo_path=repo_path)
    except (GitHubCLIError, ValueError) as exc:
        logger.warning(f"Could not add comment to issue #{issue_number}: {exc}")
        return False
    logger.info(f"Added comment to issue #{issue_number}")
    return True


__all__ = [
    "COMMENT_FOOTER",
    "ERROR_COMMENT",
    "format_completion_comment",
    "format_manual_review_comment",
    "post_issue_comment",
]
