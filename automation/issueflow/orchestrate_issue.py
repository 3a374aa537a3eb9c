#!/usr/bin/env -S uv run
# /// script
# requires-python = ">=3.10"
# dependencies = ["python-dotenv", "pydantic", "click"]
# ///

"""Run the agent pipeline for a single GitHub issue.

Classifies the issue, drives the coordinator loop through the configured
executor, opens a pull request when any agent succeeded and reports back on
the issue.

Usage:
    uv run automation/issueflow/orchestrate_issue.py 42
    ISSUE_NUMBER=42 uv run automation/issueflow/orchestrate_issue.py --executor claude
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional

import click

# Add automation directory to Python path for local imports
automation_dir = Path(__file__).resolve().parent.parent
if str(automation_dir) not in sys.path:
    sys.path.insert(0, str(automation_dir))

from issueflow.flow_modules.agent import check_claude_installed
from issueflow.flow_modules.data_types import OrchestrationConfig
from issueflow.flow_modules.exit_codes import (
    EXIT_BLOCKER_MISSING_ENV,
    EXIT_EXEC_AGENT_FAILED,
    EXIT_RESOURCE_NETWORK_ERROR,
    EXIT_SUCCESS,
)
from issueflow.flow_modules.github import GitHubCLIError, extract_repo_path, fetch_issue, get_repo_url
from issueflow.flow_modules.orchestrator import IssueOrchestrator
from issueflow.flow_modules.utils import load_flow_env, make_run_id, setup_logger


@click.command()
@click.argument("issue_number", type=int, envvar="ISSUE_NUMBER")
@click.option("--executor", type=click.Choice(["claude", "dry-run"]), help="Override ISSUEFLOW_EXECUTOR")
@click.option("--no-pr", is_flag=True, help="Skip pull request creation")
@click.option("--run-id", help="Reuse an existing run id for log placement")
def main(issue_number: int, executor: Optional[str], no_pr: bool, run_id: Optional[str]) -> None:
    """Orchestrate agents for ISSUE_NUMBER."""
    load_flow_env()
    config = OrchestrationConfig.from_env()
    updates = {}
    if executor:
        updates["executor"] = executor
    if no_pr:
        updates["create_pr"] = False
    if updates:
        config = config.model_copy(update=updates)

    run_id = run_id or make_run_id()
    logger = setup_logger(run_id, "orchestrate_issue")
    logger.info(f"Processing issue #{issue_number} with {config.executor} executor")

    try:
        repo_path = extract_repo_path(get_repo_url())
    except ValueError as exc:
        logger.error(str(exc))
        sys.exit(EXIT_BLOCKER_MISSING_ENV)

    if config.executor == "claude":
        error = check_claude_installed()
        if error:
            logger.error(error)
            sys.exit(EXIT_BLOCKER_MISSING_ENV)

    try:
        issue = fetch_issue(issue_number, repo_path)
    except GitHubCLIError as exc:
        logger.error(f"Failed to fetch issue #{issue_number}: {exc}")
        sys.exit(EXIT_RESOURCE_NETWORK_ERROR)

    orchestrator = IssueOrchestrator(config=config, logger=logger, run_id=run_id, repo_path=repo_path)
    result = orchestrator.run(issue)

    if result.manual_review:
        logger.info(f"Issue #{issue_number} flagged for manual review")
        sys.exit(EXIT_SUCCESS)
    if not result.success:
        logger.error(
            f"Issue #{issue_number} finished with failures: failed={[a.value for a in result.failed_agents]} "
            f"pending={[a.value for a in result.pending_agents]} error={result.error}"
        )
        sys.exit(EXIT_EXEC_AGENT_FAILED)

    logger.info(f"Issue #{issue_number} processed successfully")
    sys.exit(EXIT_SUCCESS)


if __name__ == "__main__":
    main()
