"""End-to-end handling of one issue: classify, coordinate agents, report."""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Callable, List

from .classifier import analyze_issue
from .communication import AgentCommunication
from .coordination import AgentCoordinator
from .data_types import (
    GitHubIssue,
    IssueAnalysis,
    IssueStatus,
    OrchestrationConfig,
    OrchestrationResult,
    PullRequestResult,
)
from .executor import AgentExecutionError, AgentExecutor, make_executor
from .monitoring import AutomationMonitor
from .pull_request import create_pull_request
from .reporter import (
    ERROR_COMMENT,
    format_completion_comment,
    format_manual_review_comment,
    post_issue_comment,
)
from .state import CoordinationStore, make_lock, state_path
from .utils import logs_root, make_run_id

PullRequestCreator = Callable[[GitHubIssue, List[Any]], PullRequestResult]


def resolve_log_root(config: OrchestrationConfig) -> Path:
    return Path(config.log_root) if config.log_root else logs_root()


def make_coordinator(config: OrchestrationConfig, monitor: AutomationMonitor | None = None) -> AgentCoordinator:
    """Coordinator wired to the configured state file and lock strategy."""

    path = state_path(resolve_log_root(config))
    store = CoordinationStore(path, lock=make_lock(config.lock_strategy, path))
    return AgentCoordinator(store, monitor=monitor, enforce_retry_limit=config.enforce_retry_limit)


class IssueOrchestrator:
    """Runs the coordinator loop for a single issue."""

    def __init__(
        self,
        config: OrchestrationConfig | None = None,
        coordinator: AgentCoordinator | None = None,
        monitor: AutomationMonitor | None = None,
        executor: AgentExecutor | None = None,
        pr_creator: PullRequestCreator | None = None,
        logger: logging.Logger | None = None,
        run_id: str | None = None,
        repo_path: str | None = None,
    ) -> None:
        self.config = config or OrchestrationConfig.from_env()
        self.run_id = run_id or make_run_id()
        self.log_root = resolve_log_root(self.config)
        self.monitor = monitor or AutomationMonitor(self.log_root)
        self.coordinator = coordinator or make_coordinator(self.config, self.monitor)
        self.executor = executor or make_executor(
            self.config.executor, self.run_id, model=self.config.model, log_root=self.log_root
        )
        self.pr_creator = pr_creator or self._default_pr_creator
        self.logger = logger or logging.getLogger(__name__)
        self.repo_path = repo_path

    def _default_pr_creator(self, issue: GitHubIssue, results: List[Any]) -> PullRequestResult:
        return create_pull_request(issue, results, base_branch=self.config.base_branch, repo_path=self.repo_path)

    def _comment(self, issue_number: int, body: str) -> bool:
        return post_issue_comment(issue_number, body, repo_path=self.repo_path)

    def run(self, issue: GitHubIssue) -> OrchestrationResult:
        result = OrchestrationResult(issue_number=issue.number)
        context = None
        try:
            analysis = analyze_issue(issue.title, issue.body, issue.labels)
            result.analysis = analysis
            self.logger.info(
                f"Issue #{issue.number} analysed: type={analysis.type.value} complexity={analysis.complexity.value} "
                f"risk={analysis.risk.value} agents={[agent.value for agent in analysis.agents]} "
                f"auto_implement={analysis.auto_implement}"
            )
            context = self.monitor.record_issue_start(issue.number, analysis, issue.title)

            if not analysis.auto_implement:
                self.logger.info(
                    f"Manual review required: {analysis.complexity.value} complexity + {analysis.risk.value} risk"
                )
                result.manual_review = True
                result.comment_posted = self._comment(issue.number, format_manual_review_comment(analysis))
                self.monitor.record_issue_completion(context, success=True, auto_implemented=False)
                return result

            results = self._execute_agents(issue, analysis, result)

            if result.successful_agents and self.config.create_pr:
                self.logger.info("Creating pull request")
                pr = self.pr_creator(issue, results)
                result.pull_request = pr
                self.monitor.record_pr_creation(issue.number, pr.pr_url, pr.files_changed, pr.success)
                if pr.success:
                    self.logger.info(f"Pull request created: {pr.pr_url}")
                else:
                    self.logger.warning(f"Pull request creation failed: {pr.error}")

            self.monitor.record_issue_completion(context, success=bool(result.successful_agents), auto_implemented=True)
            comment = format_completion_comment(result.successful_agents, result.failed_agents, result.pull_request)
            result.comment_posted = self._comment(issue.number, comment)
            return result
        except Exception as exc:  # noqa: BLE001 - any failure is reported on the issue
            self.logger.exception(f"Automation failed for issue #{issue.number}: {exc}")
            result.error = str(exc)
            if context is not None:
                self.monitor.record_issue_completion(context, success=False, auto_implemented=False)
            result.comment_posted = self._comment(issue.number, ERROR_COMMENT)
            return result

    def _execute_agents(self, issue: GitHubIssue, analysis: IssueAnalysis, result: OrchestrationResult) -> List[Any]:
        """Drive the coordinator loop; returns the successful agent results."""

        issue_data = {
            "title": issue.title,
            **analysis.model_dump(mode="json", by_alias=True),
        }
        issue_id = self.coordinator.register_issue(issue.number, issue_data, analysis.agents)
        result.issue_id = issue_id
        communication = AgentCommunication(issue_id, log_root=self.log_root, monitor=self.monitor)
        results: List[Any] = []

        next_agent = self.coordinator.get_next_agent(issue_id)
        while next_agent:
            role = next_agent.agent_type
            attempt = f" (retry {next_agent.retry_attempt})" if next_agent.retry_attempt else ""
            self.logger.info(f"Executing {role.value} agent for issue #{issue.number}{attempt}")
            communication.send_status_update(role.value, "in_progress", 0, f"{role.value} agent started")

            started = time.monotonic()
            try:
                agent_result = self.executor.execute(role, analysis, issue)
            except Exception as exc:  # noqa: BLE001 - the role must be failed or re-queued to free its locks
                duration_ms = (time.monotonic() - started) * 1000
                if isinstance(exc, AgentExecutionError):
                    self.logger.error(f"{role.value} agent failed: {exc}")
                else:
                    self.logger.exception(f"{role.value} agent raised {type(exc).__name__}: {exc}")
                self.monitor.record_agent_execution(role.value, False, duration_ms, str(exc))
                communication.notify_error(role.value, str(exc))
                retried = self.coordinator.handle_agent_failure(issue_id, role, exc)
                if retried:
                    self.logger.info(f"{role.value} agent queued for retry")
                next_agent = self.coordinator.get_next_agent(issue_id)
                continue

            duration_ms = (time.monotonic() - started) * 1000
            self.logger.info(f"{role.value} agent completed in {round(duration_ms / 1000)}s")
            self.monitor.record_agent_execution(role.value, True, duration_ms)
            communication.send_status_update(role.value, "completed", 100, agent_result.description)
            results.append(agent_result)
            outcome = self.coordinator.record_agent_completion(issue_id, role, True, agent_result)
            next_agent = outcome.next_agent

        record = self.coordinator.get_issue(issue_id)
        if record is None:
            return results
        result.successful_agents = list(record.completed_agents)
        result.failed_agents = list(record.failed_agents)
        if record.status != IssueStatus.COMPLETED:
            status = self.coordinator.get_coordination_status()
            result.pending_agents = [
                entry.agent_type for entry in status.queue if entry.issue_id == issue_id
            ]
            self.logger.warning(
                f"Issue #{issue.number} still has queued agents blocked by other issues: "
                f"{[agent.value for agent in result.pending_agents]}"
            )
        return results


__all__ = ["IssueOrchestrator", "make_coordinator", "resolve_log_root"]
