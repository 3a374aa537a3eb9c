"""Claude Code CLI wrapper used by the agent executor."""

from __future__ import annotations

import json
import logging
import os
import subprocess
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .data_types import AgentPromptRequest, AgentPromptResponse, ClaudeCodeResultMessage, RetryCode
from .utils import load_flow_env, project_root, run_logs_dir

logger = logging.getLogger(__name__)

load_flow_env()

CLAUDE_PATH = os.getenv("CLAUDE_CODE_PATH", "claude")
DEFAULT_TIMEOUT_SECONDS = int(os.getenv("ISSUEFLOW_AGENT_TIMEOUT", "1800"))
DEFAULT_RETRY_DELAYS = (1, 3, 5)

RETRYABLE_CODES = frozenset(
    {
        RetryCode.CLAUDE_CODE_ERROR,
        RetryCode.TIMEOUT_ERROR,
        RetryCode.EXECUTION_ERROR,
        RetryCode.ERROR_DURING_EXECUTION,
    }
)


def check_claude_installed() -> Optional[str]:
    """Return an error message if the Claude Code CLI is not available."""

    try:
        result = subprocess.run([CLAUDE_PATH, "--version"], capture_output=True, text=True)
        if result.returncode != 0:
            return f"Error: Claude Code CLI is not installed. Expected at: {CLAUDE_PATH}"
    except FileNotFoundError:
        return f"Error: Claude Code CLI is not installed. Expected at: {CLAUDE_PATH}"
    return None


def parse_jsonl_output(output_file: str) -> Tuple[List[Dict[str, Any]], Optional[Dict[str, Any]]]:
    """Parse a Claude stream-json output file into all messages and the final result message."""

    messages: List[Dict[str, Any]] = []
    try:
        with open(output_file, "r", encoding="utf-8") as handle:
            for line in handle:
                if not line.strip():
                    continue
                try:
                    messages.append(json.loads(line))
                except json.JSONDecodeError as exc:
                    logger.warning(f"Skipping unparseable line in {output_file}: {exc}")
    except OSError as exc:
        logger.error(f"Error reading JSONL file {output_file}: {exc}")
        return [], None

    result_message = next((msg for msg in reversed(messages) if msg.get("type") == "result"), None)
    return messages, result_message


def get_claude_env() -> Dict[str, str]:
    """Return the environment variables required for Claude Code execution."""

    env = {
        "ANTHROPIC_API_KEY": os.getenv("ANTHROPIC_API_KEY"),
        "CLAUDE_CODE_PATH": CLAUDE_PATH,
        "CLAUDE_BASH_MAINTAIN_PROJECT_WORKING_DIR": os.getenv("CLAUDE_BASH_MAINTAIN_PROJECT_WORKING_DIR", "true"),
        "HOME": os.getenv("HOME"),
        "USER": os.getenv("USER"),
        "PATH": os.getenv("PATH"),
        "SHELL": os.getenv("SHELL"),
        "TERM": os.getenv("TERM"),
    }

    github_pat = os.getenv("GITHUB_PAT")
    if github_pat:
        env["GITHUB_PAT"] = github_pat
        env["GH_TOKEN"] = github_pat

    return {key: value for key, value in env.items() if value is not None}


def save_prompt(prompt: str, run_id: str, agent_name: str) -> Path:
    """Persist the raw prompt for later auditing."""

    prompt_dir = run_logs_dir(run_id) / agent_name / "prompts"
    prompt_dir.mkdir(parents=True, exist_ok=True)
    prompt_file = prompt_dir / "prompt.txt"
    prompt_file.write_text(prompt, encoding="utf-8")
    logger.debug(f"Saved prompt to: {prompt_file}")
    return prompt_file


def prompt_claude_code(request: AgentPromptRequest) -> AgentPromptResponse:
    """Execute Claude Code once with the configured prompt."""

    error_msg = check_claude_installed()
    if error_msg:
        return AgentPromptResponse(output=error_msg, success=False, retry_code=RetryCode.NONE)

    save_prompt(request.prompt, request.run_id, request.agent_name)

    output_path = Path(request.output_file)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    cmd = [CLAUDE_PATH, "-p", request.prompt, "--model", request.model, "--output-format", "stream-json", "--verbose"]
    if request.dangerously_skip_permissions:
        cmd.append("--dangerously-skip-permissions")

    try:
        with open(output_path, "w", encoding="utf-8") as handle:
            result = subprocess.run(
                cmd,
                stdout=handle,
                stderr=subprocess.PIPE,
                text=True,
                env=get_claude_env(),
                cwd=request.cwd or project_root(),
                timeout=DEFAULT_TIMEOUT_SECONDS,
            )
    except subprocess.TimeoutExpired:
        error = "Error: Claude Code command timed out"
        logger.error(error)
        return AgentPromptResponse(output=error, success=False, retry_code=RetryCode.TIMEOUT_ERROR)
    except OSError as exc:
        error = f"Error executing Claude Code: {exc}"
        logger.error(error)
        return AgentPromptResponse(output=error, success=False, retry_code=RetryCode.EXECUTION_ERROR)

    if result.returncode != 0:
        error = f"Claude Code error: {result.stderr}"
        logger.error(error)
        return AgentPromptResponse(output=error, success=False, retry_code=RetryCode.CLAUDE_CODE_ERROR)

    logger.debug(f"Output saved to: {output_path}")
    messages, result_message = parse_jsonl_output(str(output_path))

    if result_message:
        message = ClaudeCodeResultMessage(**result_message)
        return AgentPromptResponse(
            output=message.result,
            success=not message.is_error,
            session_id=message.session_id,
            retry_code=RetryCode.ERROR_DURING_EXECUTION if message.is_error else RetryCode.NONE,
        )

    raw_output = "".join(json.dumps(entry) + "\n" for entry in messages)
    return AgentPromptResponse(output=raw_output, success=True, retry_code=RetryCode.NONE)


def prompt_claude_code_with_retry(
    request: AgentPromptRequest,
    max_retries: int = 3,
    retry_delays: Sequence[int] = DEFAULT_RETRY_DELAYS,
) -> AgentPromptResponse:
    """Run ``prompt_claude_code``, retrying transient failures after the given delays.

    ``max_retries`` counts attempts after the first one. Delays past the end of
    ``retry_delays`` reuse its last value.
    """
    response = prompt_claude_code(request)
    for attempt in range(max_retries):
        if response.success or response.retry_code not in RETRYABLE_CODES:
            return response
        delay = retry_delays[min(attempt, len(retry_delays) - 1)] if retry_delays else 0
        logger.warning(
            f"Claude Code attempt {attempt + 1} failed ({response.retry_code}); retrying in {delay}s"
        )
        time.sleep(delay)
        response = prompt_claude_code(request)
    return response


__all__ = [
    "CLAUDE_PATH",
    "DEFAULT_RETRY_DELAYS",
    "RETRYABLE_CODES",
    "RetryCode",
    "check_claude_installed",
    "get_claude_env",
    "parse_jsonl_output",
    "prompt_claude_code",
    "prompt_claude_code_with_retry",
    "save_prompt",
]
