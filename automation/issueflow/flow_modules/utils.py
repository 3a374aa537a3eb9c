"""Paths, environment loading, run loggers and agent-output parsing."""

from __future__ import annotations

import json
import logging
import os
import re
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Optional

from dotenv import load_dotenv
from pydantic import TypeAdapter

FLOW_ENV_FILE = "automation/.env"
RUN_LOG_FORMAT = "%(asctime)s %(levelname)-7s %(message)s"

_FENCED_JSON = re.compile(r"```(?:json)?\s*\n(.*?)\n```", re.DOTALL)


def project_root() -> Path:
    """Repository root: the directory holding ``automation/``."""

    return Path(__file__).resolve().parents[3]


def automation_root() -> Path:
    return project_root() / "automation"


def _from_project(entry: str) -> Path:
    path = Path(entry.strip()).expanduser()
    return path if path.is_absolute() else project_root() / path


def load_flow_env() -> List[Path]:
    """Load the repository ``.env``, then issueflow settings on top of it.

    Issueflow settings come from ``ISSUEFLOW_ENV_FILE`` (an ``os.pathsep``
    separated list) or ``automation/.env`` and override values already set.
    Returns the issueflow files that were found.
    """
    load_dotenv(project_root() / ".env", override=False)

    listed = [entry for entry in os.getenv("ISSUEFLOW_ENV_FILE", "").split(os.pathsep) if entry.strip()]
    loaded = [path for path in map(_from_project, listed or [FLOW_ENV_FILE]) if path.is_file()]
    for path in loaded:
        load_dotenv(path, override=True)
    return loaded


def logs_root() -> Path:
    """Root for coordination state, message logs and metrics (``ISSUEFLOW_LOG_ROOT`` overrides)."""

    override = os.environ.get("ISSUEFLOW_LOG_ROOT")
    return Path(override) if override else automation_root() / "logs"


def run_logs_dir(run_id: str, env: str | None = None) -> Path:
    """``<log_root>/runs/<env>/<run_id>``; env defaults to ``ISSUEFLOW_ENV`` or ``local``."""

    env_name = (env or os.environ.get("ISSUEFLOW_ENV", "") or "local").strip().lower()
    return logs_root() / "runs" / env_name / run_id


def make_run_id() -> str:
    return uuid.uuid4().hex[:8]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO timestamp, treating naive values as UTC."""

    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def setup_logger(run_id: str, trigger_type: str = "orchestrate_issue", env: str | None = None) -> logging.Logger:
    """Logger for one orchestration run.

    DEBUG and above go to ``<run dir>/<trigger_type>/execution.log``, INFO and
    above to stdout. Calling it again for the same run replaces the handlers.
    """
    log_file = run_logs_dir(run_id, env) / trigger_type / "execution.log"
    log_file.parent.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(f"issueflow.run.{run_id}")
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(RUN_LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    logger.addHandler(file_handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(console_handler)

    logger.info(f"Run {run_id} ({trigger_type}) logging to {log_file}")
    return logger


def _json_text(text: str) -> str:
    """The JSON document inside agent output: a fenced block, or the outermost object/array."""

    fenced = _FENCED_JSON.search(text)
    candidate = (fenced.group(1) if fenced else text).strip()
    if candidate[:1] in ("{", "["):
        return candidate

    starts = [index for index in (candidate.find("{"), candidate.find("[")) if index != -1]
    if not starts:
        return candidate
    start = min(starts)
    end = candidate.rfind("}" if candidate[start] == "{" else "]")
    return candidate[start : end + 1] if end > start else candidate


def parse_json(text: str, target_type: Optional[Any] = None) -> Any:
    """Parse JSON from agent output, optionally validating it as ``target_type``.

    ``target_type`` is anything pydantic can validate (a model, ``list[Model]``, ...).

    Raises:
        ValueError: if no JSON can be decoded, or validation fails.
    """
    try:
        data = json.loads(_json_text(text))
    except json.JSONDecodeError as exc:
        raise ValueError(f"Failed to parse JSON from agent output: {exc}") from exc

    if target_type is None:
        return data
    return TypeAdapter(target_type).validate_python(data)


__all__ = [
    "FLOW_ENV_FILE",
    "automation_root",
    "load_flow_env",
    "logs_root",
    "make_run_id",
    "parse_json",
    "parse_timestamp",
    "project_root",
    "run_logs_dir",
    "setup_logger",
    "utc_now",
    "utc_now_iso",
]
