"""Tests for the Claude Code wrapper and its retry logic."""

from __future__ import annotations

import json
from unittest.mock import patch

import pytest

from issueflow.flow_modules.agent import (
    parse_jsonl_output,
    prompt_claude_code,
    prompt_claude_code_with_retry,
)
from issueflow.flow_modules.data_types import AgentPromptRequest, AgentPromptResponse, RetryCode


@pytest.fixture
def sample_request(tmp_path):
    """Create a sample prompt request for testing."""
    return AgentPromptRequest(
        prompt="Test prompt",
        run_id="run12345",
        agent_name="frontend_agent",
        model="sonnet",
        dangerously_skip_permissions=True,
        output_file=str(tmp_path / "raw_output.jsonl"),
    )


def _failure(code: RetryCode, output: str = "Error") -> AgentPromptResponse:
    return AgentPromptResponse(output=output, success=False, session_id=None, retry_code=code)


SUCCESS = AgentPromptResponse(output="Success", success=True, session_id="session123", retry_code=RetryCode.NONE)


def test_retry_on_transient_error_succeeds_eventually(sample_request):
    responses = [_failure(RetryCode.TIMEOUT_ERROR, "Network error"), SUCCESS]

    with patch("issueflow.flow_modules.agent.prompt_claude_code", side_effect=responses):
        with patch("time.sleep"):
            result = prompt_claude_code_with_retry(sample_request, max_retries=3)

    assert result.success is True
    assert result.output == "Success"
    assert result.retry_code == RetryCode.NONE


def test_retry_max_retries_exhausted(sample_request):
    with patch(
        "issueflow.flow_modules.agent.prompt_claude_code",
        return_value=_failure(RetryCode.CLAUDE_CODE_ERROR, "Persistent error"),
    ) as mock_prompt:
        with patch("time.sleep"):
            result = prompt_claude_code_with_retry(sample_request, max_retries=2)

    assert mock_prompt.call_count == 3
    assert result.success is False
    assert result.output == "Persistent error"


def test_no_retry_on_success(sample_request):
    with patch("issueflow.flow_modules.agent.prompt_claude_code", return_value=SUCCESS) as mock_prompt:
        result = prompt_claude_code_with_retry(sample_request, max_retries=3)

    assert mock_prompt.call_count == 1
    assert result.success is True


def test_no_retry_on_non_retryable_code(sample_request):
    with patch(
        "issueflow.flow_modules.agent.prompt_claude_code", return_value=_failure(RetryCode.NONE)
    ) as mock_prompt:
        with patch("time.sleep") as mock_sleep:
            prompt_claude_code_with_retry(sample_request, max_retries=3)

    assert mock_prompt.call_count == 1
    mock_sleep.assert_not_called()


@pytest.mark.parametrize(
    "retry_code",
    [
        RetryCode.CLAUDE_CODE_ERROR,
        RetryCode.TIMEOUT_ERROR,
        RetryCode.EXECUTION_ERROR,
        RetryCode.ERROR_DURING_EXECUTION,
    ],
)
def test_retry_on_all_retryable_error_types(sample_request, retry_code):
    with patch("issueflow.flow_modules.agent.prompt_claude_code", side_effect=[_failure(retry_code), SUCCESS]):
        with patch("time.sleep"):
            result = prompt_claude_code_with_retry(sample_request, max_retries=3)

    assert result.success is True, f"Failed for retry_code: {retry_code}"


def test_default_delays(sample_request):
    with patch("issueflow.flow_modules.agent.prompt_claude_code", return_value=_failure(RetryCode.TIMEOUT_ERROR)):
        with patch("time.sleep") as mock_sleep:
            prompt_claude_code_with_retry(sample_request, max_retries=3)

    assert [call[0][0] for call in mock_sleep.call_args_list] == [1, 3, 5]


def test_custom_retry_delays(sample_request):
    with patch("issueflow.flow_modules.agent.prompt_claude_code", return_value=_failure(RetryCode.EXECUTION_ERROR)):
        with patch("time.sleep") as mock_sleep:
            prompt_claude_code_with_retry(sample_request, max_retries=4, retry_delays=[2, 4])

    assert [call[0][0] for call in mock_sleep.call_args_list] == [2, 4, 4, 4]


def test_parse_jsonl_output_finds_result_message(tmp_path):
    output = tmp_path / "out.jsonl"
    output.write_text(
        "\n".join(
            [
                json.dumps({"type": "system", "subtype": "init"}),
                "not json",
                json.dumps({"type": "result", "result": "{}", "session_id": "abc", "is_error": False}),
            ]
        ),
        encoding="utf-8",
    )

    messages, result = parse_jsonl_output(str(output))

    assert len(messages) == 2
    assert result["session_id"] == "abc"


def test_parse_jsonl_output_missing_file(tmp_path):
    assert parse_jsonl_output(str(tmp_path / "missing.jsonl")) == ([], None)


def test_prompt_reports_missing_cli(sample_request):
    with patch("issueflow.flow_modules.agent.check_claude_installed", return_value="Error: not installed"):
        response = prompt_claude_code(sample_request)

    assert response.success is False
    assert response.output == "Error: not installed"
    assert response.retry_code == RetryCode.NONE
