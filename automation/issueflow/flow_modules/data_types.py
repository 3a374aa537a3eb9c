"""Data models for issue orchestration."""

from __future__ import annotations

import os
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel


class AgentRole(str, Enum):
    """Category of change an agent is responsible for."""
    FRONTEND = "frontend"
    BACKEND = "backend"
    DATABASE = "database"
    DEVOPS = "devops"
    DOCUMENTATION = "documentation"


class IssueType(str, Enum):
    BUG = "bug"
    ENHANCEMENT = "enhancement"
    FEATURE = "feature"
    DOCUMENTATION = "documentation"


class Complexity(str, Enum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class IssueStatus(str, Enum):
    REGISTERED = "registered"
    COMPLETED = "completed"


class QueueStatus(str, Enum):
    QUEUED = "queued"
    EXECUTING = "executing"


class ProgressStatus(str, Enum):
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRY = "retry"


class MessagePriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class LockStrategy(str, Enum):
    """How the coordination store serialises read-modify-write cycles."""
    FILE = "file"      # advisory fcntl lock next to the state file
    THREAD = "thread"  # in-process lock only
    NONE = "none"


class GitHubLabel(BaseModel):
    name: str
    id: Optional[str] = None
    color: Optional[str] = None
    description: Optional[str] = None


class GitHubIssue(BaseModel):
    """Subset of issue fields the orchestrator needs."""

    model_config = ConfigDict(populate_by_name=True)

    number: int
    title: str
    body: str = ""
    labels: List[GitHubLabel] = []
    url: Optional[str] = None

    def label_names(self) -> List[str]:
        return [label.name for label in self.labels]


class IssueAnalysis(BaseModel):
    """Classifier verdict for an issue."""

    type: IssueType
    complexity: Complexity
    risk: RiskLevel
    agents: List[AgentRole]
    auto_implement: bool = Field(False, alias="autoImplement")

    model_config = ConfigDict(populate_by_name=True)


class _PersistedModel(BaseModel):
    """Base for documents written to the coordination state file (camelCase on disk)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AgentProgress(_PersistedModel):
    status: ProgressStatus
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    retry_attempt: int = 0
    last_error: Optional[str] = None
    result: Dict[str, Any] = Field(default_factory=dict)


class CoordinationMessage(_PersistedModel):
    """Buffered inter-agent note kept in the coordination state."""

    timestamp: str
    from_agent: str
    to_agent: str
    message: str
    data: Dict[str, Any] = Field(default_factory=dict)


class IssueRecord(_PersistedModel):
    issue_id: str
    issue_number: int
    issue_data: Dict[str, Any] = Field(default_factory=dict)
    required_agents: List[AgentRole]
    status: IssueStatus = IssueStatus.REGISTERED
    start_time: str
    end_time: Optional[str] = None
    agent_progress: Dict[str, AgentProgress] = Field(default_factory=dict)
    current_agent: Optional[AgentRole] = None
    completed_agents: List[AgentRole] = Field(default_factory=list)
    failed_agents: List[AgentRole] = Field(default_factory=list)
    communication_log: List[CoordinationMessage] = Field(default_factory=list)


class QueueEntry(_PersistedModel):
    issue_id: str
    agent_type: AgentRole
    status: QueueStatus = QueueStatus.QUEUED
    queue_time: str
    start_time: Optional[str] = None
    retry_attempt: int = 0


class CoordinationState(_PersistedModel):
    """Whole coordination document; one JSON file on disk."""

    active_issues: Dict[str, IssueRecord] = Field(default_factory=dict)
    agent_queue: List[QueueEntry] = Field(default_factory=list)
    resource_locks: Dict[str, int] = Field(default_factory=dict)
    agent_communication: Dict[str, List[CoordinationMessage]] = Field(default_factory=dict)
    last_update: Optional[str] = None


class NextAgent(BaseModel):
    """Descriptor handed to the caller for the dequeued unit of work."""

    issue_id: str
    issue_number: int
    agent_type: AgentRole
    issue_data: Dict[str, Any] = Field(default_factory=dict)
    retry_attempt: int = 0
    start_time: Optional[str] = None


class CompletionOutcome(BaseModel):
    issue_complete: bool
    next_agent: Optional[NextAgent] = None


class CoordinationStatus(BaseModel):
    active_issues: int
    queued_agents: int
    executing_agents: int
    resource_locks: int
    last_update: Optional[str] = None
    issues: Dict[str, IssueRecord] = Field(default_factory=dict)
    queue: List[QueueEntry] = Field(default_factory=list)
    locks: Dict[str, int] = Field(default_factory=dict)


class _AgentResultBase(BaseModel):
    success: bool = True
    files_modified: List[str] = Field(default_factory=list)
    description: str = ""
    error: Optional[str] = None


class FrontendResult(_AgentResultBase):
    agent_type: Literal["frontend"] = "frontend"
    components: List[str] = Field(default_factory=list)


class BackendResult(_AgentResultBase):
    agent_type: Literal["backend"] = "backend"
    endpoints: List[str] = Field(default_factory=list)


class DatabaseResult(_AgentResultBase):
    agent_type: Literal["database"] = "database"
    migrations: List[str] = Field(default_factory=list)


class DevopsResult(_AgentResultBase):
    agent_type: Literal["devops"] = "devops"
    pipelines: List[str] = Field(default_factory=list)


class DocumentationResult(_AgentResultBase):
    agent_type: Literal["documentation"] = "documentation"
    documents: List[str] = Field(default_factory=list)


AgentResult = Annotated[
    Union[FrontendResult, BackendResult, DatabaseResult, DevopsResult, DocumentationResult],
    Field(discriminator="agent_type"),
]

AGENT_RESULT_ADAPTER: TypeAdapter[Any] = TypeAdapter(AgentResult)

RESULT_TYPES: Dict[AgentRole, type] = {
    AgentRole.FRONTEND: FrontendResult,
    AgentRole.BACKEND: BackendResult,
    AgentRole.DATABASE: DatabaseResult,
    AgentRole.DEVOPS: DevopsResult,
    AgentRole.DOCUMENTATION: DocumentationResult,
}


def failed_result(agent_type: AgentRole, error: str) -> Any:
    """Build the role-specific result for a failed execution."""

    return RESULT_TYPES[AgentRole(agent_type)](success=False, error=error)


class AgentMessage(BaseModel):
    """One line of the JSONL message log."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    type: str
    from_agent: str = Field(alias="from")
    to_agent: str = Field(alias="to")
    timestamp: str
    issue_id: Optional[str] = Field(None, alias="issueId")
    data: Dict[str, Any] = Field(default_factory=dict)
    priority: MessagePriority = MessagePriority.MEDIUM
    status: Literal["sent", "read"] = "sent"
    read_at: Optional[str] = Field(None, alias="readAt")


class PullRequestResult(BaseModel):
    success: bool
    pr_url: Optional[str] = None
    files_changed: int = 0
    branch: Optional[str] = None
    error: Optional[str] = None


class AgentPromptRequest(BaseModel):
    prompt: str
    run_id: str
    agent_name: str = "ops"
    model: Literal["sonnet", "opus"] = "sonnet"
    dangerously_skip_permissions: bool = False
    output_file: str
    cwd: Optional[str] = None


class RetryCode(str, Enum):
    """Why a prompt failed, and whether another attempt can help."""

    CLAUDE_CODE_ERROR = "claude_code_error"
    TIMEOUT_ERROR = "timeout_error"
    EXECUTION_ERROR = "execution_error"
    ERROR_DURING_EXECUTION = "error_during_execution"
    NONE = "none"


class AgentPromptResponse(BaseModel):
    output: str
    success: bool
    session_id: Optional[str] = None
    retry_code: Optional[RetryCode] = None


class ClaudeCodeResultMessage(BaseModel):
    type: str
    subtype: str
    is_error: bool
    duration_ms: int
    duration_api_ms: int
    num_turns: int
    result: str
    session_id: str
    total_cost_usd: float


class AgentMetrics(_PersistedModel):
    executions: int = 0
    successes: int = 0
    failures: int = 0
    avg_duration: float = Field(0.0, description="Rolling mean duration in milliseconds")


class SystemMetrics(_PersistedModel):
    start_time: str
    total_issues_processed: int = 0
    total_agent_executions: int = 0
    total_prs_created: int = 0
    last_activity: Optional[str] = None


class IssueMetrics(_PersistedModel):
    by_type: Dict[str, int] = Field(default_factory=lambda: {t.value: 0 for t in IssueType})
    by_complexity: Dict[str, int] = Field(default_factory=lambda: {c.value: 0 for c in Complexity})
    by_risk: Dict[str, int] = Field(default_factory=lambda: {r.value: 0 for r in RiskLevel})
    auto_implemented: int = 0
    manual_review: int = 0


class PerformanceMetrics(_PersistedModel):
    avg_processing_time: float = 0.0
    total_errors: int = 0


class AutomationMetrics(_PersistedModel):
    """Persisted metrics document (metrics.json)."""

    system: SystemMetrics
    agents: Dict[str, AgentMetrics] = Field(default_factory=lambda: {role.value: AgentMetrics() for role in AgentRole})
    issues: IssueMetrics = Field(default_factory=IssueMetrics)
    performance: PerformanceMetrics = Field(default_factory=PerformanceMetrics)


class OrchestrationResult(BaseModel):
    """Outcome of one end-to-end orchestration run."""

    issue_number: int
    issue_id: Optional[str] = None
    analysis: Optional[IssueAnalysis] = None
    manual_review: bool = False
    successful_agents: List[AgentRole] = Field(default_factory=list)
    failed_agents: List[AgentRole] = Field(default_factory=list)
    pending_agents: List[AgentRole] = Field(default_factory=list)
    pull_request: Optional[PullRequestResult] = None
    comment_posted: bool = False
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None and not self.failed_agents and not self.pending_agents


HealthStatus = Literal["excellent", "good", "fair", "poor", "unknown"]


class AgentHealth(BaseModel):
    executions: int
    success_rate: int
    avg_duration: int
    status: HealthStatus


class SystemHealthSummary(BaseModel):
    status: HealthStatus
    uptime: str
    last_activity: Optional[str] = None
    total_issues_processed: int = 0
    total_agent_executions: int = 0
    total_prs_created: int = 0
    overall_success_rate: int = 0
    auto_implementation_rate: int = 0
    avg_processing_time: int = Field(0, description="Seconds")


class SystemHealth(BaseModel):
    """Derived view over the metrics document."""

    system: SystemHealthSummary
    agents: Dict[str, AgentHealth]
    issues: IssueMetrics
    performance: PerformanceMetrics


class IssueContext(BaseModel):
    """Handle returned by ``record_issue_start`` and passed back on completion."""

    issue_number: int
    start_time: str
    analysis: Optional[IssueAnalysis] = None


class CommunicationStats(BaseModel):
    total_messages: int = 0
    messages_by_type: Dict[str, int] = Field(default_factory=dict)
    messages_by_agent: Dict[str, int] = Field(default_factory=dict)
    messages_by_priority: Dict[str, int] = Field(default_factory=dict)
    unread_messages: int = 0


class CommunicationHistory(BaseModel):
    messages: List[AgentMessage] = Field(default_factory=list)
    total_messages: int = 0
    filtered_messages: int = 0


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class OrchestrationConfig(BaseModel):
    """Runtime configuration for the orchestrator, CLI and poller."""

    log_root: Optional[str] = Field(None, description="Directory for state, message logs and metrics")
    lock_strategy: LockStrategy = Field(default=LockStrategy.FILE, description="Coordination store locking")
    enforce_retry_limit: bool = Field(default=True, description="Count real retry attempts against the per-role limit")
    executor: Literal["claude", "dry-run"] = Field(default="dry-run", description="Agent execution backend")
    create_pr: bool = Field(default=True, description="Open a pull request when any agent succeeds")
    base_branch: str = Field(default="main", description="Base branch for automation pull requests")
    trigger_label: str = Field(default="automation", description="Label that opts an issue into polling")
    polling_interval: int = Field(default=60, ge=1, description="Poller interval in seconds")
    model: Literal["sonnet", "opus"] = "sonnet"

    @classmethod
    def from_env(cls) -> "OrchestrationConfig":
        return cls(
            log_root=os.getenv("ISSUEFLOW_LOG_ROOT") or None,
            lock_strategy=LockStrategy((os.getenv("ISSUEFLOW_LOCK_STRATEGY") or "file").strip().lower()),
            enforce_retry_limit=_env_flag("ISSUEFLOW_ENFORCE_RETRY_LIMIT", True),
            executor=(os.getenv("ISSUEFLOW_EXECUTOR") or "dry-run").strip().lower(),
            create_pr=_env_flag("ISSUEFLOW_CREATE_PR", True),
            base_branch=(os.getenv("ISSUEFLOW_BASE_BRANCH") or "main").strip(),
            trigger_label=(os.getenv("ISSUEFLOW_TRIGGER_LABEL") or "automation").strip(),
            polling_interval=int(os.getenv("ISSUEFLOW_POLL_INTERVAL", "60")),
            model=(os.getenv("ISSUEFLOW_MODEL") or "sonnet").strip().lower(),
        )


__all__ = [
    "AGENT_RESULT_ADAPTER",
    "AgentHealth",
    "AgentMessage",
    "AgentMetrics",
    "AgentProgress",
    "AgentPromptRequest",
    "AgentPromptResponse",
    "AgentResult",
    "AgentRole",
    "AutomationMetrics",
    "BackendResult",
    "ClaudeCodeResultMessage",
    "CommunicationHistory",
    "CommunicationStats",
    "CompletionOutcome",
    "Complexity",
    "CoordinationMessage",
    "CoordinationState",
    "CoordinationStatus",
    "DatabaseResult",
    "DevopsResult",
    "DocumentationResult",
    "FrontendResult",
    "HealthStatus",
    "GitHubIssue",
    "GitHubLabel",
    "IssueAnalysis",
    "IssueContext",
    "IssueMetrics",
    "IssueRecord",
    "IssueStatus",
    "IssueType",
    "LockStrategy",
    "MessagePriority",
    "NextAgent",
    "OrchestrationConfig",
    "OrchestrationResult",
    "PerformanceMetrics",
    "ProgressStatus",
    "PullRequestResult",
    "QueueEntry",
    "QueueStatus",
    "RESULT_TYPES",
    "RetryCode",
    "RiskLevel",
    "SystemHealth",
    "SystemHealthSummary",
    "SystemMetrics",
    "failed_result",
]
