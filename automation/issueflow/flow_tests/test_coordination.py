"""Tests for AgentCoordinator ordering, queueing, locking and retries."""

from __future__ import annotations

from datetime import timedelta
from itertools import combinations
from unittest.mock import MagicMock

import pytest

from issueflow.flow_modules import coordination
from issueflow.flow_modules.coordination import (
    AGENT_DEPENDENCIES,
    AgentCoordinator,
    DEPENDENCY_FAILED_ERROR,
    DependencyCycleError,
    IssueNotFoundError,
    topological_order,
)
from issueflow.flow_modules.data_types import (
    AgentRole,
    FrontendResult,
    IssueStatus,
    ProgressStatus,
    QueueStatus,
)
from issueflow.flow_modules.utils import utc_now

ALL_ROLES = list(AgentRole)


def _drain(coordinator: AgentCoordinator, issue_id: str) -> list[AgentRole]:
    executed = []
    next_agent = coordinator.get_next_agent(issue_id)
    while next_agent:
        executed.append(next_agent.agent_type)
        next_agent = coordinator.record_agent_completion(issue_id, next_agent.agent_type, True).next_agent
    return executed


class TestAgentOrdering:
    @pytest.mark.parametrize(
        "subset",
        [list(combo) for size in range(1, len(ALL_ROLES) + 1) for combo in combinations(ALL_ROLES, size)],
    )
    def test_dependencies_precede_dependents(self, coordinator, subset):
        order = coordinator.determine_agent_order(list(reversed(subset)))

        assert sorted(order) == sorted(subset)
        for role in order:
            for dep in AGENT_DEPENDENCIES[role]:
                if dep in subset:
                    assert order.index(dep) < order.index(role)

    def test_full_stack_order(self, coordinator):
        order = coordinator.determine_agent_order(
            [AgentRole.DEVOPS, AgentRole.FRONTEND, AgentRole.BACKEND, AgentRole.DATABASE]
        )
        assert order == [AgentRole.DATABASE, AgentRole.BACKEND, AgentRole.FRONTEND, AgentRole.DEVOPS]

    def test_documentation_issue_runs_documentation_first(self, coordinator):
        order = coordinator.determine_agent_order(
            ["frontend", "documentation", "backend"], {"type": "documentation"}
        )
        assert order == [AgentRole.DOCUMENTATION, AgentRole.BACKEND, AgentRole.FRONTEND]

    def test_unknown_roles_are_ignored(self, coordinator):
        assert coordinator.determine_agent_order(["frontend", "qa"]) == [AgentRole.FRONTEND]

    def test_cycle_is_reported(self):
        cyclic = {AgentRole.BACKEND: (AgentRole.FRONTEND,), AgentRole.FRONTEND: (AgentRole.BACKEND,)}
        with pytest.raises(DependencyCycleError, match="backend, frontend"):
            topological_order([AgentRole.BACKEND, AgentRole.FRONTEND], cyclic)

    def test_self_dependency_is_a_cycle(self):
        with pytest.raises(DependencyCycleError):
            topological_order([AgentRole.DEVOPS], {AgentRole.DEVOPS: (AgentRole.DEVOPS,)})

    def test_coordinator_with_cyclic_table_fails_loudly(self, store):
        cyclic = dict(AGENT_DEPENDENCIES)
        cyclic[AgentRole.DATABASE] = (AgentRole.FRONTEND,)
        cyclic_coordinator = AgentCoordinator(store, dependencies=cyclic)
        with pytest.raises(DependencyCycleError):
            cyclic_coordinator.determine_agent_order([AgentRole.DATABASE, AgentRole.BACKEND, AgentRole.FRONTEND])


class TestQueue:
    def test_register_returns_issue_id_and_enqueues_in_order(self, coordinator):
        issue_id = coordinator.register_issue(7, {"title": "x"}, ["frontend", "database", "backend"])

        assert issue_id == "issue-7"
        status = coordinator.get_coordination_status()
        assert [entry.agent_type for entry in status.queue] == [
            AgentRole.DATABASE,
            AgentRole.BACKEND,
            AgentRole.FRONTEND,
        ]
        assert all(entry.status == QueueStatus.QUEUED for entry in status.queue)
        assert status.active_issues == 1

    def test_queue_drains_and_issue_completes(self, coordinator):
        roles = [AgentRole.FRONTEND, AgentRole.BACKEND, AgentRole.DATABASE, AgentRole.DOCUMENTATION]
        issue_id = coordinator.register_issue(1, {}, roles)

        executed = _drain(coordinator, issue_id)

        assert len(executed) == len(roles)
        issue = coordinator.get_issue(issue_id)
        assert issue.status == IssueStatus.COMPLETED
        assert issue.end_time is not None
        assert sorted(issue.completed_agents) == sorted(roles)
        status = coordinator.get_coordination_status()
        assert status.queue == []
        assert status.locks == {}

    def test_next_agent_marks_executing_and_locks(self, coordinator):
        issue_id = coordinator.register_issue(3, {"title": "t"}, ["backend"])

        next_agent = coordinator.get_next_agent()

        assert next_agent.issue_id == issue_id
        assert next_agent.issue_number == 3
        assert next_agent.issue_data == {"title": "t"}
        status = coordinator.get_coordination_status()
        assert status.executing_agents == 1
        assert status.locks == {"backend-api": 3, "express-server": 3}
        assert status.issues[issue_id].current_agent == AgentRole.BACKEND
        assert status.issues[issue_id].agent_progress["backend"].status == ProgressStatus.EXECUTING

    def test_peek_does_not_change_state(self, coordinator):
        coordinator.register_issue(3, {}, ["backend"])

        entry = coordinator.peek_next_agent()

        assert entry.agent_type == AgentRole.BACKEND
        status = coordinator.get_coordination_status()
        assert status.executing_agents == 0
        assert status.locks == {}

    def test_dependent_waits_for_dependency(self, coordinator):
        issue_id = coordinator.register_issue(4, {}, ["backend", "database"])

        first = coordinator.get_next_agent(issue_id)
        assert first.agent_type == AgentRole.DATABASE
        assert coordinator.get_next_agent(issue_id) is None
        assert coordinator.can_execute_agent(AgentRole.BACKEND, issue_id) is False

        outcome = coordinator.record_agent_completion(issue_id, AgentRole.DATABASE, True)

        assert outcome.issue_complete is False
        assert outcome.next_agent.agent_type == AgentRole.BACKEND

    def test_completion_result_is_stored(self, coordinator):
        issue_id = coordinator.register_issue(5, {}, ["frontend"])
        coordinator.get_next_agent(issue_id)
        result = FrontendResult(files_modified=["frontend/app/page.tsx"], description="done", components=["Nav"])

        outcome = coordinator.record_agent_completion(issue_id, "frontend", True, result)

        assert outcome.issue_complete is True
        progress = coordinator.get_issue(issue_id).agent_progress["frontend"]
        assert progress.status == ProgressStatus.COMPLETED
        assert progress.result["components"] == ["Nav"]

    def test_unknown_issue_raises(self, coordinator):
        with pytest.raises(IssueNotFoundError):
            coordinator.record_agent_completion("issue-999", AgentRole.FRONTEND, True)
        with pytest.raises(KeyError):
            coordinator.handle_agent_failure("issue-999", AgentRole.FRONTEND, "boom")
        assert coordinator.get_issue("issue-999") is None
        assert coordinator.can_execute_agent(AgentRole.FRONTEND, "issue-999") is False


class TestResourceLocks:
    def test_same_issue_roles_sharing_a_resource_never_overlap(self, coordinator, monkeypatch):
        monkeypatch.setitem(coordination.AGENT_RESOURCES, AgentRole.DOCUMENTATION, ("frontend-ui",))
        issue_id = coordinator.register_issue(9, {}, ["frontend", "documentation"])

        first = coordinator.get_next_agent(issue_id)
        assert first.agent_type == AgentRole.FRONTEND
        assert coordinator.get_next_agent(issue_id) is None
        executing = [e for e in coordinator.get_coordination_status().queue if e.status == QueueStatus.EXECUTING]
        assert len(executing) == 1

        outcome = coordinator.record_agent_completion(issue_id, AgentRole.FRONTEND, True)
        assert outcome.next_agent.agent_type == AgentRole.DOCUMENTATION

    def test_other_issue_waits_for_global_lock(self, coordinator):
        first_issue = coordinator.register_issue(10, {}, ["frontend"])
        second_issue = coordinator.register_issue(11, {}, ["frontend"])

        assert coordinator.get_next_agent().issue_id == first_issue
        assert coordinator.get_next_agent() is None
        assert coordinator.can_execute_agent("frontend", second_issue) is False

        outcome = coordinator.record_agent_completion(first_issue, AgentRole.FRONTEND, True)
        assert outcome.next_agent is None
        assert coordinator.get_next_agent(second_issue).issue_id == second_issue

    def test_completion_only_claims_work_for_its_own_issue(self, coordinator):
        first_issue = coordinator.register_issue(12, {}, ["database", "backend"])
        coordinator.register_issue(13, {}, ["documentation"])

        coordinator.get_next_agent(first_issue)
        outcome = coordinator.record_agent_completion(first_issue, AgentRole.DATABASE, True)

        assert outcome.next_agent.issue_id == first_issue
        assert coordinator.peek_next_agent().issue_id == "issue-13"

    def test_explicit_acquire_and_release(self, coordinator):
        coordinator.acquire_resource_locks(AgentRole.DEVOPS, 20)
        assert coordinator.get_coordination_status().locks == {"deployment-config": 20, "ci-cd": 20}

        coordinator.release_resource_locks(AgentRole.DEVOPS, 21)
        assert coordinator.get_coordination_status().resource_locks == 2

        coordinator.release_resource_locks(AgentRole.DEVOPS, 20)
        assert coordinator.get_coordination_status().resource_locks == 0

    def test_unknown_role_has_no_resources(self, coordinator):
        assert coordinator.get_agent_resources("qa") == []
        assert coordinator.get_agent_dependencies("qa") == []


class TestFailures:
    def test_retry_requeues_with_incremented_attempt(self, coordinator):
        issue_id = coordinator.register_issue(30, {}, ["frontend"])
        coordinator.get_next_agent(issue_id)

        assert coordinator.handle_agent_failure(issue_id, AgentRole.FRONTEND, "timeout talking to model") is True

        status = coordinator.get_coordination_status()
        assert len(status.queue) == 1
        entry = status.queue[0]
        assert entry.status == QueueStatus.QUEUED
        assert entry.retry_attempt == 1
        assert status.locks == {}
        progress = status.issues[issue_id].agent_progress["frontend"]
        assert progress.status == ProgressStatus.RETRY
        assert progress.last_error == "timeout talking to model"
        assert coordinator.get_next_agent(issue_id).retry_attempt == 1

    def test_retry_bound_records_failure(self, coordinator):
        issue_id = coordinator.register_issue(31, {}, ["database"])
        coordinator.get_next_agent(issue_id)
        assert coordinator.handle_agent_failure(issue_id, AgentRole.DATABASE, "flaky") is True

        coordinator.get_next_agent(issue_id)
        assert coordinator.handle_agent_failure(issue_id, AgentRole.DATABASE, "flaky") is False

        issue = coordinator.get_issue(issue_id)
        assert issue.failed_agents == [AgentRole.DATABASE]
        assert issue.status == IssueStatus.COMPLETED
        assert coordinator.get_coordination_status().queue == []

    def test_retry_limit_can_be_disabled(self, store):
        unlimited = AgentCoordinator(store, enforce_retry_limit=False)
        issue_id = unlimited.register_issue(32, {}, ["database"])

        for _ in range(4):
            unlimited.get_next_agent(issue_id)
            assert unlimited.handle_agent_failure(issue_id, AgentRole.DATABASE, "flaky") is True

    @pytest.mark.parametrize("error", ["Syntax error in file", "Permission denied (publickey)"])
    def test_denylisted_errors_are_terminal(self, coordinator, error):
        assert coordinator.should_retry_agent(AgentRole.DEVOPS, error, 0) is False

    def test_should_retry_respects_per_role_maximum(self, coordinator):
        assert coordinator.should_retry_agent(AgentRole.DEVOPS, "boom", 2) is True
        assert coordinator.should_retry_agent(AgentRole.DEVOPS, "boom", 3) is False
        assert coordinator.should_retry_agent("qa", "boom", 1) is False

    def test_terminal_failure_skips_blocked_dependents(self, coordinator):
        issue_id = coordinator.register_issue(33, {}, ["database", "backend", "frontend", "documentation"])
        coordinator.get_next_agent(issue_id)

        assert coordinator.handle_agent_failure(issue_id, AgentRole.DATABASE, "invalid configuration") is False

        issue = coordinator.get_issue(issue_id)
        assert set(issue.failed_agents) == {AgentRole.DATABASE, AgentRole.BACKEND, AgentRole.FRONTEND}
        assert issue.agent_progress["frontend"].last_error == f"{DEPENDENCY_FAILED_ERROR}: backend"
        assert issue.status == IssueStatus.REGISTERED
        assert _drain(coordinator, issue_id) == [AgentRole.DOCUMENTATION]
        assert coordinator.get_issue(issue_id).status == IssueStatus.COMPLETED

    def test_retry_leaves_note_for_the_agent(self, coordinator):
        issue_id = coordinator.register_issue(34, {}, ["frontend"])
        coordinator.get_next_agent(issue_id)

        coordinator.handle_agent_failure(issue_id, AgentRole.FRONTEND, "timeout talking to model")

        notes = coordinator.get_agent_communication(issue_id, AgentRole.FRONTEND)
        assert [(n.from_agent, n.message) for n in notes] == [("coordinator", "Agent queued for retry")]
        assert notes[0].data == {"retryAttempt": 1, "error": "timeout talking to model"}

    def test_failure_is_reported_to_monitor_after_decision(self, store):
        monitor = MagicMock()
        monitored = AgentCoordinator(store, monitor=monitor)
        issue_id = monitored.register_issue(35, {}, ["frontend"])
        monitored.get_next_agent(issue_id)

        assert monitored.handle_agent_failure(issue_id, AgentRole.FRONTEND, "flaky") is True

        failures = [c for c in monitor.log_activity.call_args_list if c[0][1] == "Agent failure detected"]
        assert len(failures) == 1
        assert failures[0][0][2]["retry"] is True
        assert failures[0][0][2]["error"] == "flaky"


class TestCommunicationBuffer:
    def test_messages_are_returned_in_call_order(self, coordinator):
        issue_id = coordinator.register_issue(40, {}, ["backend", "frontend"])
        for index in range(5):
            coordinator.add_agent_communication(issue_id, "backend", "frontend", f"note {index}", {"n": index})

        messages = coordinator.get_agent_communication(issue_id)

        assert [message.message for message in messages] == [f"note {i}" for i in range(5)]
        assert coordinator.get_agent_communication(issue_id, AgentRole.FRONTEND) == messages
        assert coordinator.get_agent_communication(issue_id, "devops") == []

    def test_buffer_moves_into_issue_record_on_completion(self, coordinator):
        issue_id = coordinator.register_issue(41, {}, ["frontend"])
        coordinator.add_agent_communication(issue_id, "coordinator", "frontend", "hello")

        _drain(coordinator, issue_id)

        assert coordinator.get_agent_communication(issue_id) == []
        assert [m.message for m in coordinator.get_issue(issue_id).communication_log] == ["hello"]

    def test_monitor_receives_message_text(self, store):
        monitor = MagicMock()
        monitored = AgentCoordinator(store, monitor=monitor)
        issue_id = monitored.register_issue(42, {}, ["backend"])

        monitored.add_agent_communication(issue_id, "database", "backend", "schema ready")

        level, event, data = monitor.log_activity.call_args[0]
        assert (level, event) == ("info", "Agent communication recorded")
        assert data["message"] == "schema ready"
        assert len(monitored.get_agent_communication(issue_id)) == 1


class TestMaintenance:
    def test_clean_removes_only_old_completed_issues(self, coordinator, store):
        old_issue = coordinator.register_issue(50, {}, ["frontend"])
        _drain(coordinator, old_issue)
        recent_issue = coordinator.register_issue(51, {}, ["backend"])
        _drain(coordinator, recent_issue)
        coordinator.register_issue(52, {}, ["database"])

        with store.transaction() as state:
            state.active_issues[old_issue].end_time = (utc_now() - timedelta(hours=30)).isoformat()

        assert coordinator.clean_completed_issues(24) == 1

        status = coordinator.get_coordination_status()
        assert set(status.issues) == {recent_issue, "issue-52"}
        assert [entry.issue_id for entry in status.queue] == ["issue-52"]

    def test_reregistering_replaces_queue_entries(self, coordinator):
        coordinator.register_issue(60, {}, ["frontend", "backend"])
        coordinator.register_issue(60, {}, ["documentation"])

        queue = coordinator.get_coordination_status().queue
        assert [entry.agent_type for entry in queue] == [AgentRole.DOCUMENTATION]

    def test_reregistering_releases_locks_of_executing_role(self, coordinator):
        issue_id = coordinator.register_issue(62, {}, ["frontend"])
        coordinator.get_next_agent(issue_id)
        assert coordinator.get_coordination_status().locks

        coordinator.register_issue(62, {}, ["frontend"])

        assert coordinator.get_coordination_status().locks == {}
        assert coordinator.get_next_agent(issue_id).agent_type == AgentRole.FRONTEND

    def test_state_is_persisted_in_camel_case(self, coordinator, store):
        coordinator.register_issue(61, {"title": "x"}, ["frontend"])

        raw = store.path.read_text(encoding="utf-8")
        assert '"activeIssues"' in raw
        assert '"agentQueue"' in raw
        assert '"issueNumber": 61' in raw
