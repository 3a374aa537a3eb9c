#!/usr/bin/env uv run
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "schedule",
#     "python-dotenv",
#     "pydantic",
# ]
# ///

"""Polling trigger that runs the orchestrator for labelled open issues."""

from __future__ import annotations

import signal
import sys
import time
from pathlib import Path
from typing import Optional, Set

import schedule

# Add automation directory to Python path for local imports
automation_dir = Path(__file__).resolve().parent.parent
if str(automation_dir) not in sys.path:
    sys.path.insert(0, str(automation_dir))

from issueflow.flow_modules.data_types import GitHubIssue, OrchestrationConfig
from issueflow.flow_modules.exit_codes import EXIT_BLOCKER_MISSING_ENV
from issueflow.flow_modules.github import GitHubCLIError, extract_repo_path, fetch_open_issues, get_repo_url
from issueflow.flow_modules.orchestrator import IssueOrchestrator
from issueflow.flow_modules.utils import load_flow_env, make_run_id, setup_logger

processed_issues: Set[int] = set()
shutdown_requested = False


def signal_handler(signum: int, _frame: object) -> None:
    global shutdown_requested
    sys.stdout.write(f"INFO: Received signal {signum}; shutting down after current cycle.\n")
    shutdown_requested = True


def process_issue(issue: GitHubIssue, config: OrchestrationConfig, repo_path: str) -> bool:
    run_id = make_run_id()
    logger = setup_logger(run_id, "trigger_cron")
    sys.stdout.write(f"INFO: Orchestrating issue #{issue.number} (run {run_id})\n")
    result = IssueOrchestrator(config=config, logger=logger, run_id=run_id, repo_path=repo_path).run(issue)
    if result.error:
        sys.stderr.write(f"ERROR: Issue #{issue.number} failed: {result.error}\n")
        return False
    return True


def check_and_process_issues(config: OrchestrationConfig, repo_path: str) -> None:
    if shutdown_requested:
        sys.stdout.write("INFO: Shutdown requested; skipping poll cycle.\n")
        return

    sys.stdout.write("INFO: Starting poll cycle…\n")
    start = time.time()

    try:
        issues = fetch_open_issues(repo_path, label=config.trigger_label)
    except GitHubCLIError as exc:
        sys.stderr.write(f"ERROR: Could not list issues: {exc}\n")
        return
    if not issues:
        sys.stdout.write(f"INFO: No open issues labelled '{config.trigger_label}'.\n")
        return

    for issue in issues:
        if shutdown_requested:
            sys.stdout.write("INFO: Shutdown requested mid-cycle; stopping triggers.\n")
            break

        if issue.number in processed_issues:
            continue

        if process_issue(issue, config, repo_path):
            processed_issues.add(issue.number)
        else:
            sys.stdout.write(f"WARN: Issue #{issue.number} will be retried next cycle.\n")

    duration = time.time() - start
    sys.stdout.write(f"INFO: Poll cycle finished in {duration:.2f}s; total processed this run: {len(processed_issues)}\n")


def main(config: Optional[OrchestrationConfig] = None) -> None:
    load_flow_env()
    config = config or OrchestrationConfig.from_env()

    try:
        repo_path = extract_repo_path(get_repo_url())
    except ValueError as exc:
        sys.stderr.write(f"ERROR: {exc}\n")
        sys.exit(EXIT_BLOCKER_MISSING_ENV)

    sys.stdout.write("INFO: Starting issueflow cron trigger\n")
    sys.stdout.write(f"INFO: Repository: {repo_path}\n")
    sys.stdout.write(f"INFO: Label: {config.trigger_label}\n")
    sys.stdout.write(f"INFO: Poll interval: {config.polling_interval} seconds\n")

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    schedule.every(config.polling_interval).seconds.do(check_and_process_issues, config, repo_path)
    check_and_process_issues(config, repo_path)

    while not shutdown_requested:
        schedule.run_pending()
        time.sleep(1)

    sys.stdout.write("INFO: Cron trigger exiting\n")


if __name__ == "__main__":
    main()
