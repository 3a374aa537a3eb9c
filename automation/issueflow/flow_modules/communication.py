"""Persistent inter-agent message log.

Messages are appended to ``<log_root>/communication/<issue_id|global>-messages.jsonl``,
one JSON object per line. Agents may also publish small state snapshots to
``<log_root>/state/<issue_id>-<agent>-<category>.json``.

Reads are tolerant: a line that fails to parse is logged and skipped, the
rest of the file still loads.
"""

from __future__ import annotations

import json
import logging
import secrets
import time
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pydantic import ValidationError

from .data_types import (
    AgentMessage,
    AgentRole,
    CommunicationHistory,
    CommunicationStats,
    MessagePriority,
)
from .state import FileLock
from .utils import logs_root, utc_now, utc_now_iso

logger = logging.getLogger(__name__)

BROADCAST = "broadcast"
COORDINATOR = "coordinator"
DEFAULT_RESOURCE_DURATION_MS = 600_000


def generate_message_id() -> str:
    return f"msg-{int(time.time() * 1000)}-{secrets.token_hex(5)[:9]}"


class AgentCommunication:
    """Message log scoped to one issue (or the global log when ``issue_id`` is None)."""

    def __init__(self, issue_id: Optional[str] = None, log_root: Path | None = None, monitor: Any = None) -> None:
        self.issue_id = issue_id
        root = log_root or logs_root()
        self.communication_dir = root / "communication"
        self.state_dir = root / "state"
        self.monitor = monitor
        for directory in (self.communication_dir, self.state_dir):
            directory.mkdir(parents=True, exist_ok=True)
        self.message_file = self.communication_dir / f"{issue_id or 'global'}-messages.jsonl"
        self._lock = FileLock(self.message_file.with_name(self.message_file.name + ".lock"))

    def _activity(self, level: str, event: str, **data: Any) -> None:
        if self.monitor is not None:
            self.monitor.log_activity(level, event, data)
        elif level == "error":
            logger.error(f"{event} {data}")
        else:
            logger.debug(f"{event} {data}")

    # ------------------------------------------------------------------ storage

    def _read_all(self) -> List[AgentMessage]:
        if not self.message_file.exists():
            return []
        messages: List[AgentMessage] = []
        with open(self.message_file, "rb") as handle:
            for line_number, raw in enumerate(handle, start=1):
                if not raw.strip():
                    continue
                try:
                    messages.append(AgentMessage.model_validate(json.loads(raw.decode("utf-8"))))
                except (UnicodeDecodeError, json.JSONDecodeError, ValidationError) as exc:
                    logger.warning(f"Skipping malformed message line {line_number} in {self.message_file.name}: {exc}")
                    self._activity(
                        "error",
                        "Failed to parse message line",
                        line=raw.decode("utf-8", errors="replace").strip(),
                        error=str(exc),
                    )
        return messages

    def _write_all(self, messages: Iterable[AgentMessage]) -> None:
        tmp_path = self.message_file.with_name(self.message_file.name + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as handle:
            for message in messages:
                handle.write(message.model_dump_json(by_alias=True) + "\n")
        tmp_path.replace(self.message_file)

    def get_all_messages(self) -> List[AgentMessage]:
        """Every well-formed message in the log, in append order."""

        with self._lock.hold():
            return self._read_all()

    # ------------------------------------------------------------------ sending

    def send_message(
        self,
        from_agent: str,
        to_agent: str,
        message_type: str,
        data: Dict[str, Any] | None = None,
        priority: MessagePriority | str = MessagePriority.MEDIUM,
    ) -> Tuple[Optional[AgentMessage], Optional[str]]:
        """Append a message to the log.

        Returns:
            (message, None) on success, (None, error) if the log could not be written.
        """
        message = AgentMessage(
            id=generate_message_id(),
            type=message_type,
            from_agent=from_agent,
            to_agent=to_agent,
            timestamp=utc_now_iso(),
            issue_id=self.issue_id,
            data=data or {},
            priority=MessagePriority(priority),
        )
        try:
            with self._lock.hold(), open(self.message_file, "a", encoding="utf-8") as handle:
                handle.write(message.model_dump_json(by_alias=True) + "\n")
        except OSError as exc:
            self._activity("error", "Failed to send agent message", **{"from": from_agent, "to": to_agent, "error": str(exc)})
            return None, str(exc)

        self._activity(
            "info",
            "Agent message sent",
            **{"from": from_agent, "to": to_agent, "type": message_type, "priority": message.priority.value},
        )
        return message, None

    def broadcast_message(
        self,
        from_agent: str,
        message_type: str,
        data: Dict[str, Any] | None = None,
        priority: MessagePriority | str = MessagePriority.MEDIUM,
    ) -> Tuple[bool, Dict[str, Optional[str]]]:
        """Send one message to every role except the sender.

        Returns:
            (all_sent, {role: error or None})
        """
        results: Dict[str, Optional[str]] = {}
        for role in AgentRole:
            if role.value == from_agent:
                continue
            _, error = self.send_message(from_agent, role.value, message_type, data, priority)
            results[role.value] = error
        return all(error is None for error in results.values()), results

    def notify_dependency(
        self,
        from_agent: str,
        to_agent: str,
        requirement: str,
        status: str,
        details: Dict[str, Any] | None = None,
    ) -> Tuple[Optional[AgentMessage], Optional[str]]:
        payload = {"requirement": requirement, "status": status, "details": details or {}}
        return self.send_message(from_agent, to_agent, "dependency", payload, MessagePriority.HIGH)

    def send_status_update(
        self,
        agent_type: str,
        status: str,
        progress: Optional[int] = None,
        message: str = "",
        details: Dict[str, Any] | None = None,
    ) -> Tuple[Optional[AgentMessage], Optional[str]]:
        payload = {"status": status, "progress": progress, "message": message, "details": details or {}}
        return self.send_message(agent_type, COORDINATOR, "status", payload, MessagePriority.MEDIUM)

    def notify_error(
        self,
        from_agent: str,
        error: str,
        severity: str = "error",
        impact: List[str] | None = None,
        recovery: Optional[str] = None,
    ) -> Tuple[Optional[AgentMessage], Optional[str]]:
        """Report an error; critical errors go to every agent, others to the coordinator."""

        to_agent = BROADCAST if severity == "critical" else COORDINATOR
        payload = {"error": error, "severity": severity, "impact": impact or [], "recovery": recovery}
        return self.send_message(from_agent, to_agent, "error", payload, MessagePriority.HIGH)

    def request_resource(
        self, agent_type: str, resource: str, duration: int = DEFAULT_RESOURCE_DURATION_MS
    ) -> Tuple[Optional[AgentMessage], Optional[str]]:
        payload = {"action": "request", "resource": resource, "duration": duration}
        return self.send_message(agent_type, COORDINATOR, "resource", payload, MessagePriority.HIGH)

    def release_resource(self, agent_type: str, resource: str) -> Tuple[Optional[AgentMessage], Optional[str]]:
        payload = {"action": "release", "resource": resource}
        return self.send_message(agent_type, COORDINATOR, "resource", payload, MessagePriority.MEDIUM)

    # ---------------------------------------------------------------- receiving

    def get_messages_for_agent(self, agent_type: str) -> List[AgentMessage]:
        """Unread messages addressed to ``agent_type`` or broadcast, oldest first."""

        messages = [
            message
            for message in self.get_all_messages()
            if message.to_agent in (agent_type, BROADCAST) and message.status != "read"
        ]
        return sorted(messages, key=lambda message: message.timestamp)

    def receive_messages(self, agent_type: str, mark_as_read: bool = True) -> List[AgentMessage]:
        messages = self.get_messages_for_agent(agent_type)
        if mark_as_read and messages:
            self.mark_messages_as_read(message.id for message in messages)
        return messages

    def mark_messages_as_read(self, message_ids: Iterable[str]) -> int:
        """Rewrite the log with the given messages flagged read; returns how many changed."""

        wanted = set(message_ids)
        changed = 0
        with self._lock.hold():
            messages = self._read_all()
            now = utc_now_iso()
            for message in messages:
                if message.id in wanted and message.status != "read":
                    message.status = "read"
                    message.read_at = now
                    changed += 1
            if changed:
                self._write_all(messages)
        return changed

    def get_communication_history(
        self, filter_agent: Optional[str] = None, message_type: Optional[str] = None
    ) -> CommunicationHistory:
        messages = self.get_all_messages()
        filtered = messages
        if filter_agent:
            filtered = [m for m in filtered if filter_agent in (m.from_agent, m.to_agent)]
        if message_type:
            filtered = [m for m in filtered if m.type == message_type]
        return CommunicationHistory(
            messages=filtered,
            total_messages=len(messages),
            filtered_messages=len(filtered),
        )

    def get_communication_stats(self) -> CommunicationStats:
        stats = CommunicationStats()
        for message in self.get_all_messages():
            stats.total_messages += 1
            stats.messages_by_type[message.type] = stats.messages_by_type.get(message.type, 0) + 1
            stats.messages_by_agent[message.from_agent] = stats.messages_by_agent.get(message.from_agent, 0) + 1
            priority = message.priority.value
            stats.messages_by_priority[priority] = stats.messages_by_priority.get(priority, 0) + 1
            if message.status != "read":
                stats.unread_messages += 1
        return stats

    # ------------------------------------------------------------- shared state

    def _state_file(self, agent_type: str, category: str) -> Path:
        return self.state_dir / f"{self.issue_id}-{agent_type}-{category}.json"

    def share_state(
        self, agent_type: str, state: Dict[str, Any], category: str = "general"
    ) -> Tuple[Optional[Path], Optional[str]]:
        payload = {
            "agentType": agent_type,
            "issueId": self.issue_id,
            "category": category,
            "timestamp": utc_now_iso(),
            "state": state,
        }
        state_file = self._state_file(agent_type, category)
        try:
            state_file.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        except (OSError, TypeError) as exc:
            self._activity("error", "Failed to share agent state", agentType=agent_type, error=str(exc))
            return None, str(exc)
        self._activity("info", "Agent state shared", agentType=agent_type, category=category, issueId=self.issue_id)
        return state_file, None

    def get_shared_state(
        self, agent_type: str, category: str = "general"
    ) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
        state_file = self._state_file(agent_type, category)
        if not state_file.exists():
            return None, "State not found"
        try:
            payload = json.loads(state_file.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            self._activity("error", "Failed to get shared state", agentType=agent_type, error=str(exc))
            return None, str(exc)
        return payload.get("state"), None

    # -------------------------------------------------------------- maintenance

    def clean_old_communications(self, older_than_hours: float = 72) -> int:
        """Delete message logs and state files last modified before the cutoff."""

        cutoff = (utc_now() - timedelta(hours=older_than_hours)).timestamp()
        cleaned = 0
        for directory in (self.communication_dir, self.state_dir):
            for path in directory.iterdir():
                if not path.is_file() or path.suffix == ".lock":
                    continue
                try:
                    if path.stat().st_mtime < cutoff:
                        path.unlink()
                        cleaned += 1
                except OSError as exc:
                    self._activity("error", "Failed to clean old communications", path=str(path), error=str(exc))
        self._activity("info", "Cleaned old communication files", cleanedCount=cleaned)
        return cleaned


PROMPT_CONTEXT_TEMPLATE = """\
COMMUNICATION SYSTEM:
You share a message log with the other agents working on issue {issue_id}.
Record anything other roles need to know in your result, using these message kinds:

1. information - context or data another agent should read
2. dependency - a requirement you need from, or have satisfied for, another agent
3. status - progress updates for the coordinator (in_progress, completed, failed)
4. error - problems you hit; mark critical ones so every agent sees them
5. resource - request or release a shared resource

You are the {agent_type} agent. Messages addressed to you so far:
{inbox}

Remember to communicate important information to dependent agents!
"""


class AgentCommunicationHelper:
    """Builds the communication section of an agent prompt."""

    def __init__(self, agent_type: str, issue_id: Optional[str], log_root: Path | None = None) -> None:
        self.agent_type = agent_type
        self.comm = AgentCommunication(issue_id, log_root=log_root)

    def get_prompt_context(self) -> str:
        inbox = self.comm.get_messages_for_agent(self.agent_type)
        lines = [
            f"- [{message.type}] from {message.from_agent}: {json.dumps(message.data)}"
            for message in inbox
        ]
        return PROMPT_CONTEXT_TEMPLATE.format(
            issue_id=self.comm.issue_id or "global",
            agent_type=self.agent_type,
            inbox="\n".join(lines) or "- (none)",
        )


__all__ = [
    "AgentCommunication",
    "AgentCommunicationHelper",
    "BROADCAST",
    "COORDINATOR",
    "generate_message_id",
]
