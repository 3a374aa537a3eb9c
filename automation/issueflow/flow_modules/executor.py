"""Agent executors: the component that performs the work for one role.

Executors return a role-specific result model on success and raise
``AgentExecutionError`` on failure; the orchestrator routes the error into the
coordinator's retry handling.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from pydantic import ValidationError

from .agent import prompt_claude_code_with_retry
from .communication import AgentCommunicationHelper
from .data_types import (
    AGENT_RESULT_ADAPTER,
    RESULT_TYPES,
    AgentPromptRequest,
    AgentRole,
    GitHubIssue,
    IssueAnalysis,
)
from .utils import automation_root, parse_json, run_logs_dir

logger = logging.getLogger(__name__)

EXPECTED_FILES: Dict[AgentRole, Tuple[str, ...]] = {
    AgentRole.FRONTEND: ("frontend/app/", "frontend/components/ui/"),
    AgentRole.BACKEND: ("backend/src/routes/", "backend/src/services/"),
    AgentRole.DATABASE: ("backend/src/models/", "backend/src/migrations/"),
    AgentRole.DEVOPS: (".github/workflows/", "docker-compose.yml"),
    AgentRole.DOCUMENTATION: ("README.md", "docs/"),
}

RESULT_CONTRACT = """\
When you are done, reply with ONLY a JSON object of this shape:
{{
  "agent_type": "{agent_type}",
  "success": true,
  "files_modified": ["path/relative/to/repo", "..."],
  "description": "one paragraph summary of the change",
  "error": null{extra}
}}
Set "success" to false and explain in "error" if you could not complete the task.
"""

_EXTRA_FIELDS = {
    AgentRole.FRONTEND: ',\n  "components": ["ComponentName"]',
    AgentRole.BACKEND: ',\n  "endpoints": ["GET /api/example"]',
    AgentRole.DATABASE: ',\n  "migrations": ["migration-name"]',
    AgentRole.DEVOPS: ',\n  "pipelines": ["workflow-name"]',
    AgentRole.DOCUMENTATION: ',\n  "documents": ["docs/page.md"]',
}


class AgentExecutionError(RuntimeError):
    """Raised when an agent could not complete its work."""

    def __init__(self, agent_type: AgentRole | str, message: str) -> None:
        super().__init__(message)
        self.agent_type = AgentRole(agent_type)


class AgentExecutor:
    """Base executor."""

    name = "base"

    def execute(self, agent_type: AgentRole, analysis: IssueAnalysis, issue: GitHubIssue) -> Any:
        raise NotImplementedError


class DryRunExecutor(AgentExecutor):
    """Reports the files a role would touch without changing anything."""

    name = "dry-run"

    def execute(self, agent_type: AgentRole, analysis: IssueAnalysis, issue: GitHubIssue) -> Any:
        role = AgentRole(agent_type)
        logger.info(f"[dry-run] {role.value} agent planning {analysis.type.value} change for issue #{issue.number}")
        return RESULT_TYPES[role](
            files_modified=list(EXPECTED_FILES.get(role, ())),
            description=f"{role.value} agent planned changes for issue #{issue.number}: {issue.title}",
        )


def load_agent_documentation(agent_type: AgentRole, agents_dir: Path | None = None) -> str:
    """Role guidance from ``automation/agents/<role>-agent.md``, or a one-line fallback."""

    path = (agents_dir or automation_root() / "agents") / f"{agent_type.value}-agent.md"
    try:
        return path.read_text(encoding="utf-8")
    except OSError:
        logger.warning(f"Could not load documentation for {agent_type.value} agent at {path}")
        return (
            f"You are a {agent_type.value} specialist for this project. "
            f"Follow the existing conventions for {agent_type.value} code."
        )


def build_agent_prompt(
    agent_type: AgentRole,
    analysis: IssueAnalysis,
    issue: GitHubIssue,
    documentation: str,
    communication_context: str = "",
) -> str:
    labels = ", ".join(issue.label_names()) or "none"
    sections = [
        documentation.strip(),
        f"# Issue #{issue.number}: {issue.title}",
        issue.body.strip() or "(no description)",
        (
            f"Labels: {labels}\n"
            f"Type: {analysis.type.value} | Complexity: {analysis.complexity.value} | Risk: {analysis.risk.value}\n"
            f"Agents on this issue: {', '.join(agent.value for agent in analysis.agents)}"
        ),
        f"Implement only the {agent_type.value} part of this issue.",
    ]
    if communication_context:
        sections.append(communication_context.strip())
    sections.append(RESULT_CONTRACT.format(agent_type=agent_type.value, extra=_EXTRA_FIELDS[agent_type]))
    return "\n\n".join(sections)


class ClaudeAgentExecutor(AgentExecutor):
    """Runs each role as a Claude Code session and parses its JSON reply."""

    name = "claude"

    def __init__(
        self,
        run_id: str,
        model: str = "sonnet",
        agents_dir: Path | None = None,
        log_root: Path | None = None,
        cwd: Optional[str] = None,
    ) -> None:
        self.run_id = run_id
        self.model = model
        self.agents_dir = agents_dir
        self.log_root = log_root
        self.cwd = cwd

    def execute(self, agent_type: AgentRole, analysis: IssueAnalysis, issue: GitHubIssue) -> Any:
        role = AgentRole(agent_type)
        helper = AgentCommunicationHelper(role.value, f"issue-{issue.number}", log_root=self.log_root)
        prompt = build_agent_prompt(
            role,
            analysis,
            issue,
            load_agent_documentation(role, self.agents_dir),
            helper.get_prompt_context(),
        )
        output_file = run_logs_dir(self.run_id) / f"{role.value}_agent" / "raw_output.jsonl"
        request = AgentPromptRequest(
            prompt=prompt,
            run_id=self.run_id,
            agent_name=f"{role.value}_agent",
            model=self.model,
            dangerously_skip_permissions=True,
            output_file=str(output_file),
            cwd=self.cwd,
        )
        response = prompt_claude_code_with_retry(request)
        if not response.success:
            raise AgentExecutionError(role, response.output)

        try:
            payload = parse_json(response.output)
            if isinstance(payload, dict):
                payload.setdefault("agent_type", role.value)
            result = AGENT_RESULT_ADAPTER.validate_python(payload)
        except (ValueError, ValidationError) as exc:
            raise AgentExecutionError(role, f"parse error: {exc}") from exc

        if result.agent_type != role.value:
            raise AgentExecutionError(role, f"parse error: expected {role.value} result, got {result.agent_type}")
        if not result.success:
            raise AgentExecutionError(role, result.error or f"{role.value} agent reported failure")

        logger.debug(f"{role.value} agent result: {json.dumps(result.model_dump(mode='json'))}")
        return result


def make_executor(kind: str, run_id: str, model: str = "sonnet", log_root: Path | None = None) -> AgentExecutor:
    if kind == ClaudeAgentExecutor.name:
        return ClaudeAgentExecutor(run_id, model=model, log_root=log_root)
    if kind == DryRunExecutor.name:
        return DryRunExecutor()
    raise ValueError(f"Unknown executor: {kind}")


__all__ = [
    "AgentExecutionError",
    "AgentExecutor",
    "ClaudeAgentExecutor",
    "DryRunExecutor",
    "EXPECTED_FILES",
    "build_agent_prompt",
    "load_agent_documentation",
    "make_executor",
]
