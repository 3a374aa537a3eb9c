"""Tests for the gh CLI helpers and issue comment formatting."""

from __future__ import annotations

import json
from unittest.mock import MagicMock, patch

import pytest

from issueflow.flow_modules.classifier import analyze_issue
from issueflow.flow_modules.data_types import AgentRole, PullRequestResult
from issueflow.flow_modules.github import (
    GitHubCLIError,
    extract_repo_path,
    fetch_issue,
    fetch_open_issues,
    get_github_env,
    make_issue_comment,
    run_gh,
)
from issueflow.flow_modules.reporter import (
    COMMENT_FOOTER,
    format_completion_comment,
    format_manual_review_comment,
    post_issue_comment,
)


@pytest.mark.parametrize(
    "url",
    [
        "https://github.com/acme/blog",
        "https://github.com/acme/blog.git",
        "git@github.com:acme/blog.git",
        "ssh://git@github.com/acme/blog/",
    ],
)
def test_extract_repo_path(url):
    assert extract_repo_path(url) == "acme/blog"


def test_github_env_only_with_pat(monkeypatch):
    monkeypatch.delenv("GITHUB_PAT", raising=False)
    assert get_github_env() is None

    monkeypatch.setenv("GITHUB_PAT", "ghp_test")
    assert get_github_env()["GH_TOKEN"] == "ghp_test"


def test_run_gh_raises_on_failure():
    with patch("issueflow.flow_modules.github.subprocess.run") as mock_run:
        mock_run.return_value = MagicMock(returncode=1, stdout="", stderr="HTTP 404")
        with pytest.raises(GitHubCLIError, match="HTTP 404"):
            run_gh(["issue", "view", "1"])


def test_run_gh_missing_binary():
    with patch("issueflow.flow_modules.github.subprocess.run", side_effect=FileNotFoundError):
        with pytest.raises(GitHubCLIError, match="not installed"):
            run_gh(["issue", "list"])


def test_fetch_issue_parses_labels_and_null_body():
    payload = {
        "number": 5,
        "title": "Fix button color",
        "body": None,
        "labels": [{"id": "L1", "name": "bug", "color": "d73a4a", "description": ""}],
        "url": "https://github.com/acme/blog/issues/5",
    }
    with patch("issueflow.flow_modules.github.subprocess.run") as mock_run:
        mock_run.return_value = MagicMock(returncode=0, stdout=json.dumps(payload), stderr="")
        issue = fetch_issue(5, "acme/blog")

    assert issue.body == ""
    assert issue.label_names() == ["bug"]
    cmd = mock_run.call_args[0][0]
    assert cmd[:4] == ["gh", "issue", "view", "5"]


def test_fetch_issue_bad_json():
    with patch("issueflow.flow_modules.github.subprocess.run") as mock_run:
        mock_run.return_value = MagicMock(returncode=0, stdout="<html>", stderr="")
        with pytest.raises(GitHubCLIError, match="Unable to parse issue #5"):
            fetch_issue(5, "acme/blog")


def test_fetch_open_issues_filters_by_label():
    with patch("issueflow.flow_modules.github.subprocess.run") as mock_run:
        mock_run.return_value = MagicMock(
            returncode=0, stdout=json.dumps([{"number": 1, "title": "a", "body": None, "labels": []}]), stderr=""
        )
        issues = fetch_open_issues("acme/blog", label="automation")

    assert [issue.number for issue in issues] == [1]
    cmd = mock_run.call_args[0][0]
    assert cmd[cmd.index("--label") + 1] == "automation"


def test_make_issue_comment_keeps_real_newlines():
    with patch("issueflow.flow_modules.github.subprocess.run") as mock_run:
        mock_run.return_value = MagicMock(returncode=0, stdout="", stderr="")
        make_issue_comment(7, "line one\nline two", repo_path="acme/blog")

    cmd = mock_run.call_args[0][0]
    body = cmd[cmd.index("--body") + 1]
    assert body == "line one\nline two"
    assert "\\n" not in body


def test_manual_review_comment():
    analysis = analyze_issue("Implement user authentication system", "Add OAuth", ["feature"])

    comment = format_manual_review_comment(analysis)

    assert "requires human review" in comment
    assert "**Complexity:** complex | **Risk:** high" in comment
    assert "**Suggested agents:** frontend" in comment


def test_completion_comment_with_pull_request():
    pr = PullRequestResult(success=True, pr_url="https://github.com/acme/blog/pull/9", files_changed=3)

    comment = format_completion_comment([AgentRole.DATABASE, AgentRole.BACKEND], [AgentRole.DEVOPS], pr)

    assert "✅ **Successful agents:** database, backend" in comment
    assert "❌ **Failed agents:** devops" in comment
    assert "https://github.com/acme/blog/pull/9" in comment
    assert "📁 **Files changed:** 3" in comment


def test_completion_comment_without_successes():
    comment = format_completion_comment([], ["frontend"])

    assert "Successful agents" not in comment
    assert "No successful changes were made. Please review manually." in comment


def test_completion_comment_when_pr_failed():
    pr = PullRequestResult(success=False, error="No changes to commit")

    comment = format_completion_comment(["frontend"], [], pr)

    assert "PR creation failed" in comment
    assert "Pull request created" not in comment


def test_post_issue_comment_appends_footer():
    with patch("issueflow.flow_modules.reporter.make_issue_comment") as mock_comment:
        assert post_issue_comment(4, "hello", repo_path="acme/blog") is True

    mock_comment.assert_called_once_with(4, "hello" + COMMENT_FOOTER, repo_path="acme/blog")


def test_post_issue_comment_never_raises():
    with patch("issueflow.flow_modules.reporter.make_issue_comment", side_effect=GitHubCLIError("rate limited")):
        assert post_issue_comment(4, "hello") is False
