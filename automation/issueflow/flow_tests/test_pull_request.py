"""Tests for pull request creation and the git helpers behind it."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from issueflow.flow_modules import git_ops
from issueflow.flow_modules.data_types import BackendResult, FrontendResult
from issueflow.flow_modules.git_ops import GitError, changed_files, classify_push_error, push_branch
from issueflow.flow_modules.pull_request import branch_name_for, create_pull_request, format_pr_body

MODULE = "issueflow.flow_modules.pull_request"


@pytest.fixture
def issue(make_issue):
    return make_issue(number=21, title="Fix button color")


@pytest.fixture
def results():
    return [
        BackendResult(description="added route"),
        FrontendResult(description=""),
    ]


def test_branch_name():
    assert branch_name_for(21) == "automation/issue-21"


def test_pr_body(issue, results):
    body = format_pr_body(issue, results, ["frontend/app/page.tsx"])

    assert body.startswith("Closes #21")
    assert "- **backend**: added route" in body
    assert "- **frontend**: no description" in body
    assert "- `frontend/app/page.tsx`" in body


def test_create_pull_request_happy_path(issue, results):
    with patch(f"{MODULE}.changed_files", return_value=["a.ts", "b.ts"]), \
            patch(f"{MODULE}.checkout_branch") as mock_checkout, \
            patch(f"{MODULE}.commit_all", return_value=(True, None)), \
            patch(f"{MODULE}.push_branch", return_value=(True, None)), \
            patch(f"{MODULE}.run_gh", return_value="Creating pull request\nhttps://github.com/acme/blog/pull/3\n") as mock_gh:
        result = create_pull_request(issue, results, base_branch="develop", repo_path="acme/blog")

    assert result.success is True
    assert result.pr_url == "https://github.com/acme/blog/pull/3"
    assert result.files_changed == 2
    assert result.branch == "automation/issue-21"
    mock_checkout.assert_called_once_with("automation/issue-21", create=True, base=None, cwd=None)
    args = mock_gh.call_args[0][0]
    assert args[args.index("--base") + 1] == "develop"
    assert args[args.index("-R") + 1] == "acme/blog"


def test_create_pull_request_without_changes(issue, results):
    with patch(f"{MODULE}.changed_files", return_value=[]):
        result = create_pull_request(issue, results)

    assert result.success is False
    assert result.error == "No changes to commit"


def test_create_pull_request_push_failure(issue, results):
    with patch(f"{MODULE}.changed_files", return_value=["a.ts"]), \
            patch(f"{MODULE}.checkout_branch"), \
            patch(f"{MODULE}.commit_all", return_value=(True, None)), \
            patch(f"{MODULE}.push_branch", return_value=(False, "fatal: Authentication failed")):
        result = create_pull_request(issue, results, repo_path="acme/blog")

    assert result.success is False
    assert result.files_changed == 1
    assert "Authentication failed" in result.error


def test_create_pull_request_never_raises(issue, results):
    with patch(f"{MODULE}.changed_files", return_value=["a.ts"]), \
            patch(f"{MODULE}.checkout_branch", side_effect=GitError("git checkout failed")):
        result = create_pull_request(issue, results)

    assert result.success is False
    assert result.error == "git checkout failed"


def test_changed_files_parses_porcelain():
    status = git_ops.GitCommandResult(args=(), stdout="M frontend/app/page.tsx\n?? docs/new.md", stderr="", returncode=0)
    with patch.object(git_ops, "_run_git", return_value=status):
        assert changed_files() == ["frontend/app/page.tsx", "docs/new.md"]


@pytest.mark.parametrize(
    "stderr, expected",
    [
        ("fatal: Could not resolve host: github.com", "network"),
        ("remote: Permission denied to bot", "auth"),
        ("rejected: non-fast-forward", "unknown"),
    ],
)
def test_classify_push_error(stderr, expected):
    assert classify_push_error(stderr) == expected


def test_push_retries_network_errors():
    network = MagicMock(ok=False, stderr="fatal: Could not resolve host: github.com")
    success = MagicMock(ok=True, stderr="")
    with patch.object(git_ops, "_run_git", side_effect=[network, network, success]) as mock_git, \
            patch("time.sleep") as mock_sleep:
        assert push_branch("automation/issue-1") == (True, None)

    assert mock_git.call_count == 3
    assert [call[0][0] for call in mock_sleep.call_args_list] == [1, 3]


def test_push_does_not_retry_auth_errors():
    auth = MagicMock(ok=False, stderr="Permission denied (publickey)")
    with patch.object(git_ops, "_run_git", return_value=auth) as mock_git, patch("time.sleep"):
        ok, error = push_branch("automation/issue-1")

    assert ok is False
    assert "Permission denied" in error
    assert mock_git.call_count == 1
