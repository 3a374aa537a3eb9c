"""Agent coordination: execution order, work queue, resource locks and retries.

The coordinator is a synchronous state machine driven by a caller loop::

    next_agent = coordinator.get_next_agent()
    while next_agent:
        ...execute...
        next_agent = coordinator.record_agent_completion(...).next_agent

Per issue: registered → (queued → executing → completed | failed | retry → queued)*
per agent → completed. An issue completes once its queue entries drain,
however many agents failed along the way.
"""

from __future__ import annotations

import heapq
import logging
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .data_types import (
    AgentProgress,
    AgentRole,
    CompletionOutcome,
    Complexity,
    CoordinationMessage,
    CoordinationState,
    CoordinationStatus,
    IssueRecord,
    IssueStatus,
    IssueType,
    NextAgent,
    ProgressStatus,
    QueueEntry,
    QueueStatus,
)
from .state import CoordinationStore
from .utils import parse_timestamp, utc_now, utc_now_iso

logger = logging.getLogger(__name__)

AGENT_DEPENDENCIES: Dict[AgentRole, Tuple[AgentRole, ...]] = {
    AgentRole.DATABASE: (),
    AgentRole.BACKEND: (AgentRole.DATABASE,),
    AgentRole.FRONTEND: (AgentRole.BACKEND,),
    AgentRole.DEVOPS: (AgentRole.DATABASE, AgentRole.BACKEND, AgentRole.FRONTEND),
    AgentRole.DOCUMENTATION: (),
}

AGENT_PRIORITIES: Dict[AgentRole, int] = {
    AgentRole.DATABASE: 1,
    AgentRole.BACKEND: 2,
    AgentRole.FRONTEND: 3,
    AgentRole.DEVOPS: 4,
    AgentRole.DOCUMENTATION: 5,
}

AGENT_RESOURCES: Dict[AgentRole, Tuple[str, ...]] = {
    AgentRole.DATABASE: ("database-schema", "mongodb"),
    AgentRole.BACKEND: ("backend-api", "express-server"),
    AgentRole.FRONTEND: ("frontend-ui", "react-components"),
    AgentRole.DEVOPS: ("deployment-config", "ci-cd"),
    AgentRole.DOCUMENTATION: ("documentation-files",),
}

MAX_RETRIES: Dict[AgentRole, int] = {
    AgentRole.FRONTEND: 2,
    AgentRole.BACKEND: 2,
    AgentRole.DATABASE: 1,
    AgentRole.DEVOPS: 3,
    AgentRole.DOCUMENTATION: 2,
}
DEFAULT_MAX_RETRIES = 1

NON_RETRYABLE_ERRORS = (
    "syntax error",
    "invalid configuration",
    "authentication failed",
    "permission denied",
)

COORDINATOR_NAME = "coordinator"
DEPENDENCY_FAILED_ERROR = "blocked by failed dependency"


class IssueNotFoundError(KeyError):
    """Raised when a completion or failure refers to an unregistered issue."""

    def __init__(self, issue_id: str) -> None:
        super().__init__(issue_id)
        self.issue_id = issue_id

    def __str__(self) -> str:
        return f"Issue {self.issue_id} not found in coordination state"


class DependencyCycleError(ValueError):
    """Raised when the agent dependency table contains a cycle."""


def issue_id_for(issue_number: int | str) -> str:
    return f"issue-{issue_number}"


def _known_roles(agents: Iterable[Any]) -> List[AgentRole]:
    roles: List[AgentRole] = []
    for agent in agents:
        try:
            role = AgentRole(agent)
        except ValueError:
            logger.warning(f"Ignoring unknown agent role: {agent!r}")
            continue
        if role not in roles:
            roles.append(role)
    return roles


def topological_order(
    agents: Sequence[AgentRole],
    dependencies: Mapping[AgentRole, Sequence[AgentRole]] = AGENT_DEPENDENCIES,
    priorities: Mapping[AgentRole, int] = AGENT_PRIORITIES,
) -> List[AgentRole]:
    """Kahn's algorithm over ``dependencies`` restricted to ``agents``.

    Dependencies outside ``agents`` count as satisfied. Ready roles are
    emitted lowest priority number first.

    Raises:
        DependencyCycleError: if the restricted graph is cyclic.
    """
    selected = set(agents)
    indegree: Dict[AgentRole, int] = {agent: 0 for agent in agents}
    dependents: Dict[AgentRole, List[AgentRole]] = {agent: [] for agent in agents}
    for agent in agents:
        for dep in dependencies.get(agent, ()):
            if dep in selected and dep != agent:
                indegree[agent] += 1
                dependents[dep].append(agent)
            elif dep == agent:
                raise DependencyCycleError(f"Agent {agent.value} depends on itself")

    ready = [(priorities.get(agent, len(priorities) + 1), agent.value, agent) for agent in agents if indegree[agent] == 0]
    heapq.heapify(ready)
    ordered: List[AgentRole] = []
    while ready:
        _, _, agent = heapq.heappop(ready)
        ordered.append(agent)
        for dependent in dependents[agent]:
            indegree[dependent] -= 1
            if indegree[dependent] == 0:
                heapq.heappush(ready, (priorities.get(dependent, len(priorities) + 1), dependent.value, dependent))

    if len(ordered) != len(agents):
        stuck = sorted(agent.value for agent in agents if agent not in ordered)
        raise DependencyCycleError(f"Dependency cycle between agents: {', '.join(stuck)}")
    return ordered


class AgentCoordinator:
    """Coordinates agent execution order and resource usage across issues."""

    def __init__(
        self,
        store: CoordinationStore | None = None,
        monitor: Any = None,
        enforce_retry_limit: bool = True,
        dependencies: Mapping[AgentRole, Sequence[AgentRole]] | None = None,
    ) -> None:
        self.store = store or CoordinationStore()
        self.monitor = monitor
        self.enforce_retry_limit = enforce_retry_limit
        self.dependencies = dict(dependencies or AGENT_DEPENDENCIES)
        self.store.initialize()

    def _activity(self, level: str, event: str, **data: Any) -> None:
        if self.monitor is not None:
            self.monitor.log_activity(level, event, data)
        else:
            log = logger.error if level == "error" else logger.info
            log(f"{event} {data}")

    # ------------------------------------------------------------------ lookup

    def get_issue(self, issue_id: str) -> Optional[IssueRecord]:
        """Return the issue record, or None when it is not registered."""

        return self.store.load().active_issues.get(issue_id)

    @staticmethod
    def _require_issue(state: CoordinationState, issue_id: str) -> IssueRecord:
        issue = state.active_issues.get(issue_id)
        if issue is None:
            raise IssueNotFoundError(issue_id)
        return issue

    def get_agent_resources(self, agent_type: AgentRole | str) -> List[str]:
        try:
            return list(AGENT_RESOURCES[AgentRole(agent_type)])
        except ValueError:
            return []

    def get_agent_dependencies(self, agent_type: AgentRole | str) -> List[AgentRole]:
        try:
            return list(self.dependencies.get(AgentRole(agent_type), ()))
        except ValueError:
            return []

    # ---------------------------------------------------------------- ordering

    def determine_agent_order(self, required_agents: Iterable[Any], issue_data: Mapping[str, Any] | None = None) -> List[AgentRole]:
        """Order the required roles so every role follows its in-set dependencies."""

        issue_data = issue_data or {}
        roles = _known_roles(required_agents)
        by_priority = sorted(roles, key=lambda role: AGENT_PRIORITIES[role])

        if issue_data.get("type") == IssueType.DOCUMENTATION.value and AgentRole.DOCUMENTATION in roles:
            rest = [role for role in by_priority if role != AgentRole.DOCUMENTATION]
            return [AgentRole.DOCUMENTATION, *topological_order(rest, self.dependencies)]

        if issue_data.get("complexity") == Complexity.SIMPLE.value and len(roles) == 1:
            return by_priority

        return topological_order(by_priority, self.dependencies)

    # ------------------------------------------------------------ registration

    def register_issue(
        self,
        issue_number: int,
        issue_data: Mapping[str, Any] | Any,
        required_agents: Iterable[Any],
    ) -> str:
        """Create the issue record and enqueue one entry per ordered role."""

        if hasattr(issue_data, "model_dump"):
            issue_data = issue_data.model_dump(mode="json")
        issue_data = dict(issue_data or {})
        issue_id = issue_id_for(issue_number)
        roles = _known_roles(required_agents)
        ordered = self.determine_agent_order(roles, issue_data)

        with self.store.transaction() as state:
            now = utc_now_iso()
            for entry in state.agent_queue:
                if entry.issue_id == issue_id and entry.status == QueueStatus.EXECUTING:
                    self._unlock_resources(state, entry.agent_type, int(issue_number))
            state.active_issues[issue_id] = IssueRecord(
                issue_id=issue_id,
                issue_number=int(issue_number),
                issue_data=issue_data,
                required_agents=roles,
                start_time=now,
            )
            state.agent_queue = [entry for entry in state.agent_queue if entry.issue_id != issue_id]
            for role in ordered:
                state.agent_queue.append(QueueEntry(issue_id=issue_id, agent_type=role, queue_time=now))

        self._activity(
            "info",
            "Issue registered for coordination",
            issueNumber=issue_number,
            requiredAgents=[role.value for role in roles],
            orderedAgents=[role.value for role in ordered],
        )
        return issue_id

    # --------------------------------------------------------------- execution

    def _can_execute(self, state: CoordinationState, entry: QueueEntry, issue: IssueRecord) -> bool:
        resources = set(self.get_agent_resources(entry.agent_type))

        for resource in resources:
            holder = state.resource_locks.get(resource)
            if holder is not None and holder != issue.issue_number:
                return False

        for other in state.agent_queue:
            if other is entry or other.issue_id != entry.issue_id or other.status != QueueStatus.EXECUTING:
                continue
            if resources & set(self.get_agent_resources(other.agent_type)):
                return False

        for dep in self.get_agent_dependencies(entry.agent_type):
            if dep in issue.required_agents and dep not in issue.completed_agents:
                return False
        return True

    def can_execute_agent(self, agent_type: AgentRole | str, issue_id: str) -> bool:
        """True if the role's resources are free and its dependencies completed."""

        state = self.store.load()
        issue = state.active_issues.get(issue_id)
        if issue is None:
            return False
        role = AgentRole(agent_type)
        entry = next(
            (e for e in state.agent_queue if e.issue_id == issue_id and e.agent_type == role),
            QueueEntry(issue_id=issue_id, agent_type=role, queue_time=utc_now_iso()),
        )
        return self._can_execute(state, entry, issue)

    def _find_runnable(
        self, state: CoordinationState, issue_id: Optional[str] = None
    ) -> Tuple[Optional[QueueEntry], Optional[IssueRecord]]:
        for entry in state.agent_queue:
            if entry.status != QueueStatus.QUEUED or (issue_id and entry.issue_id != issue_id):
                continue
            issue = state.active_issues.get(entry.issue_id)
            if issue is not None and self._can_execute(state, entry, issue):
                return entry, issue
        return None, None

    def peek_next_agent(self, issue_id: Optional[str] = None) -> Optional[QueueEntry]:
        """The entry ``get_next_agent`` would dequeue, without changing any state."""

        entry, _ = self._find_runnable(self.store.load(), issue_id)
        return entry

    def get_next_agent(self, issue_id: Optional[str] = None) -> Optional[NextAgent]:
        """Dequeue the first runnable entry, mark it executing and lock its resources.

        With ``issue_id`` only that issue's entries are considered.
        """
        with self.store.transaction() as state:
            entry, issue = self._find_runnable(state, issue_id)
            if entry is not None and issue is not None:
                now = utc_now_iso()
                entry.status = QueueStatus.EXECUTING
                entry.start_time = now
                issue.current_agent = entry.agent_type
                issue.agent_progress[entry.agent_type.value] = AgentProgress(
                    status=ProgressStatus.EXECUTING,
                    start_time=now,
                    retry_attempt=entry.retry_attempt,
                )
                self._lock_resources(state, entry.agent_type, issue.issue_number)
                return NextAgent(
                    issue_id=entry.issue_id,
                    issue_number=issue.issue_number,
                    agent_type=entry.agent_type,
                    issue_data=issue.issue_data,
                    retry_attempt=entry.retry_attempt,
                    start_time=now,
                )
        return None

    # ------------------------------------------------------------------- locks

    def _lock_resources(self, state: CoordinationState, agent_type: AgentRole, issue_number: int) -> List[str]:
        resources = self.get_agent_resources(agent_type)
        for resource in resources:
            state.resource_locks[resource] = issue_number
        return resources

    def _unlock_resources(self, state: CoordinationState, agent_type: AgentRole, issue_number: int) -> List[str]:
        resources = self.get_agent_resources(agent_type)
        for resource in resources:
            if state.resource_locks.get(resource) == issue_number:
                del state.resource_locks[resource]
        return resources

    def acquire_resource_locks(self, agent_type: AgentRole | str, issue_number: int) -> None:
        with self.store.transaction() as state:
            resources = self._lock_resources(state, AgentRole(agent_type), int(issue_number))
        self._activity("info", "Resource locks acquired", agentType=str(AgentRole(agent_type).value), issueNumber=issue_number, resources=resources)

    def release_resource_locks(self, agent_type: AgentRole | str, issue_number: int) -> None:
        with self.store.transaction() as state:
            resources = self._unlock_resources(state, AgentRole(agent_type), int(issue_number))
        self._activity("info", "Resource locks released", agentType=str(AgentRole(agent_type).value), issueNumber=issue_number, resources=resources)

    # -------------------------------------------------------------- completion

    @staticmethod
    def _result_payload(result: Any) -> Dict[str, Any]:
        if result is None:
            return {}
        if hasattr(result, "model_dump"):
            return result.model_dump(mode="json")
        return dict(result)

    def _mark_finished(
        self,
        state: CoordinationState,
        issue: IssueRecord,
        agent_type: AgentRole,
        success: bool,
        result: Dict[str, Any],
    ) -> None:
        now = utc_now_iso()
        previous = issue.agent_progress.get(agent_type.value)
        issue.agent_progress[agent_type.value] = AgentProgress(
            status=ProgressStatus.COMPLETED if success else ProgressStatus.FAILED,
            start_time=previous.start_time if previous else None,
            end_time=now,
            retry_attempt=previous.retry_attempt if previous else 0,
            last_error=None if success else result.get("error"),
            result=result,
        )
        if issue.current_agent == agent_type:
            issue.current_agent = None
        target = issue.completed_agents if success else issue.failed_agents
        target.append(agent_type)
        state.agent_queue = [
            entry for entry in state.agent_queue
            if not (entry.issue_id == issue.issue_id and entry.agent_type == agent_type)
        ]
        self._unlock_resources(state, agent_type, issue.issue_number)

    def _skip_blocked_dependents(self, state: CoordinationState, issue: IssueRecord, failed: AgentRole) -> List[AgentRole]:
        """Fail queued roles that can no longer run because ``failed`` failed."""

        skipped: List[AgentRole] = []
        pending = [failed]
        while pending:
            blocker = pending.pop()
            for entry in list(state.agent_queue):
                if entry.issue_id != issue.issue_id or entry.status != QueueStatus.QUEUED:
                    continue
                if blocker in self.get_agent_dependencies(entry.agent_type):
                    self._mark_finished(
                        state, issue, entry.agent_type, False,
                        {"error": f"{DEPENDENCY_FAILED_ERROR}: {blocker.value}"},
                    )
                    skipped.append(entry.agent_type)
                    pending.append(entry.agent_type)
        return skipped

    def record_agent_completion(
        self,
        issue_id: str,
        agent_type: AgentRole | str,
        success: bool,
        result: Any = None,
        claim_next: bool = True,
    ) -> CompletionOutcome:
        """Record a role's outcome and report whether the issue has drained.

        With ``claim_next`` the issue's next runnable role is dequeued and
        returned as ``next_agent``.

        Raises:
            IssueNotFoundError: if ``issue_id`` is not registered.
        """
        role = AgentRole(agent_type)
        payload = self._result_payload(result)

        with self.store.transaction() as state:
            issue = self._require_issue(state, issue_id)
            self._mark_finished(state, issue, role, success, payload)
            skipped = [] if success else self._skip_blocked_dependents(state, issue, role)

            remaining = [entry for entry in state.agent_queue if entry.issue_id == issue_id]
            if not remaining:
                issue.status = IssueStatus.COMPLETED
                issue.end_time = utc_now_iso()
                buffered = state.agent_communication.pop(issue_id, None)
                if buffered:
                    issue.communication_log.extend(buffered)

        self._activity(
            "success" if success else "error",
            "Agent completion recorded",
            issueId=issue_id,
            agentType=role.value,
            success=success,
            remainingAgents=len(remaining),
            skippedAgents=[agent.value for agent in skipped],
        )
        return CompletionOutcome(
            issue_complete=not remaining,
            next_agent=self.get_next_agent(issue_id) if remaining and claim_next else None,
        )

    # ---------------------------------------------------------------- failures

    def should_retry_agent(self, agent_type: AgentRole | str, error: BaseException | str, current_retries: int = 0) -> bool:
        """Decide whether a failed role gets another attempt."""

        try:
            max_retries = MAX_RETRIES.get(AgentRole(agent_type), DEFAULT_MAX_RETRIES)
        except ValueError:
            max_retries = DEFAULT_MAX_RETRIES
        if not self.enforce_retry_limit:
            current_retries = 0
        if current_retries >= max_retries:
            return False

        message = str(error).lower()
        return not any(phrase in message for phrase in NON_RETRYABLE_ERRORS)

    def handle_agent_failure(self, issue_id: str, agent_type: AgentRole | str, error: BaseException | str) -> bool:
        """Re-queue the role for another attempt or record it as failed.

        Returns True if the role was re-queued.

        Raises:
            IssueNotFoundError: if ``issue_id`` is not registered.
        """
        role = AgentRole(agent_type)
        message = str(error)

        with self.store.transaction() as state:
            issue = self._require_issue(state, issue_id)
            entry = next(
                (e for e in state.agent_queue if e.issue_id == issue_id and e.agent_type == role),
                None,
            )
            previous = issue.agent_progress.get(role.value)
            current_retries = entry.retry_attempt if entry else (previous.retry_attempt if previous else 0)
            retry = self.should_retry_agent(role, error, current_retries)

            if retry:
                attempt = current_retries + 1
                now = utc_now_iso()
                if entry is None:
                    entry = QueueEntry(issue_id=issue_id, agent_type=role, queue_time=now)
                    state.agent_queue.append(entry)
                entry.status = QueueStatus.QUEUED
                entry.queue_time = now
                entry.start_time = None
                entry.retry_attempt = attempt
                issue.agent_progress[role.value] = AgentProgress(
                    status=ProgressStatus.RETRY,
                    retry_attempt=attempt,
                    last_error=message,
                )
                if issue.current_agent == role:
                    issue.current_agent = None
                self._unlock_resources(state, role, issue.issue_number)
                self._buffer_note(
                    state,
                    issue_id,
                    COORDINATOR_NAME,
                    role.value,
                    "Agent queued for retry",
                    {"retryAttempt": attempt, "error": message},
                )

        self._activity(
            "error", "Agent failure detected",
            issueId=issue_id, agentType=role.value, error=message, retry=retry, retriesSoFar=current_retries,
        )
        if not retry:
            self.record_agent_completion(issue_id, role, False, {"error": message}, claim_next=False)
        return retry

    # ----------------------------------------------------------- communication

    def add_agent_communication(
        self,
        issue_id: str,
        from_agent: str,
        to_agent: str,
        message: str,
        data: Mapping[str, Any] | None = None,
    ) -> CoordinationMessage:
        with self.store.transaction() as state:
            note = self._buffer_note(state, issue_id, from_agent, to_agent, message, data)
        self._activity("info", "Agent communication recorded", issueId=issue_id, fromAgent=from_agent, toAgent=to_agent, message=message)
        return note

    @staticmethod
    def _buffer_note(
        state: CoordinationState,
        issue_id: str,
        from_agent: str,
        to_agent: str,
        message: str,
        data: Mapping[str, Any] | None = None,
    ) -> CoordinationMessage:
        note = CoordinationMessage(
            timestamp=utc_now_iso(),
            from_agent=from_agent,
            to_agent=to_agent,
            message=message,
            data=dict(data or {}),
        )
        state.agent_communication.setdefault(issue_id, []).append(note)
        return note

    def get_agent_communication(self, issue_id: str, agent_type: str | None = None) -> List[CoordinationMessage]:
        """Buffered messages for an issue, optionally only those to or from ``agent_type``."""

        messages = self.store.load().agent_communication.get(issue_id, [])
        if agent_type:
            agent = str(getattr(agent_type, "value", agent_type))
            return [m for m in messages if m.to_agent == agent or m.from_agent == agent]
        return list(messages)

    # ------------------------------------------------------------- maintenance

    def get_coordination_status(self) -> CoordinationStatus:
        state = self.store.load()
        return CoordinationStatus(
            active_issues=len(state.active_issues),
            queued_agents=sum(1 for e in state.agent_queue if e.status == QueueStatus.QUEUED),
            executing_agents=sum(1 for e in state.agent_queue if e.status == QueueStatus.EXECUTING),
            resource_locks=len(state.resource_locks),
            last_update=state.last_update,
            issues=state.active_issues,
            queue=state.agent_queue,
            locks=state.resource_locks,
        )

    def clean_completed_issues(self, older_than_hours: float = 24) -> int:
        """Drop completed issues that ended before the cutoff, plus orphaned queue entries."""

        cutoff = utc_now() - timedelta(hours=older_than_hours)
        with self.store.transaction() as state:
            stale = [
                issue_id
                for issue_id, issue in state.active_issues.items()
                if issue.status == IssueStatus.COMPLETED and issue.end_time and parse_timestamp(issue.end_time) < cutoff
            ]
            for issue_id in stale:
                del state.active_issues[issue_id]
            state.agent_queue = [entry for entry in state.agent_queue if entry.issue_id in state.active_issues]

        if stale:
            self._activity("info", "Cleaned completed issues", cleanedCount=len(stale))
        return len(stale)


__all__ = [
    "AGENT_DEPENDENCIES",
    "AGENT_PRIORITIES",
    "AGENT_RESOURCES",
    "AgentCoordinator",
    "COORDINATOR_NAME",
    "DEFAULT_MAX_RETRIES",
    "DEPENDENCY_FAILED_ERROR",
    "DependencyCycleError",
    "IssueNotFoundError",
    "MAX_RETRIES",
    "NON_RETRYABLE_ERRORS",
    "issue_id_for",
    "topological_order",
]
