"""Shared fixtures for issueflow tests."""

from __future__ import annotations

from pathlib import Path

import pytest

from issueflow.flow_modules.coordination import AgentCoordinator
from issueflow.flow_modules.data_types import GitHubIssue, GitHubLabel
from issueflow.flow_modules.state import CoordinationStore, ThreadLock, state_path


@pytest.fixture
def log_root(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Isolated log root; also exported so module defaults resolve into tmp_path."""
    root = tmp_path / "logs"
    root.mkdir()
    monkeypatch.setenv("ISSUEFLOW_LOG_ROOT", str(root))
    return root


@pytest.fixture
def store(log_root: Path) -> CoordinationStore:
    return CoordinationStore(state_path(log_root), lock=ThreadLock())


@pytest.fixture
def coordinator(store: CoordinationStore) -> AgentCoordinator:
    return AgentCoordinator(store)


@pytest.fixture
def make_issue():
    def _make(number: int = 42, title: str = "Fix button color in dashboard", body: str = "", labels=("bug",)) -> GitHubIssue:
        return GitHubIssue(
            number=number,
            title=title,
            body=body,
            labels=[GitHubLabel(name=name) for name in labels],
            url=f"https://github.com/acme/blog/issues/{number}",
        )

    return _make
