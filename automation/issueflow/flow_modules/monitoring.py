"""Automation metrics and the human-readable activity log.

``metrics.json`` holds counters per agent role and per issue category;
``activity.log`` gets one ``[ts] LEVEL: message {json}`` line per event.
"""

from __future__ import annotations

import csv
import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from pydantic import ValidationError

from .data_types import (
    AgentHealth,
    AgentMetrics,
    AutomationMetrics,
    HealthStatus,
    IssueAnalysis,
    IssueContext,
    SystemHealth,
    SystemHealthSummary,
    SystemMetrics,
)
from .state import FileLock
from .utils import logs_root, parse_timestamp, utc_now, utc_now_iso

logger = logging.getLogger(__name__)

METRICS_FILENAME = "metrics.json"
ACTIVITY_FILENAME = "activity.log"

_LEVELS = {
    "info": logging.INFO,
    "success": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def health_status(success_rate: float, executions: int) -> HealthStatus:
    if executions == 0:
        return "unknown"
    if success_rate >= 90:
        return "excellent"
    if success_rate >= 75:
        return "good"
    if success_rate >= 50:
        return "fair"
    return "poor"


def format_uptime(start_time: str, now: Optional[datetime] = None) -> str:
    elapsed = (now or utc_now()) - parse_timestamp(start_time)
    total_minutes = max(int(elapsed.total_seconds() // 60), 0)
    days, remainder = divmod(total_minutes, 24 * 60)
    hours, minutes = divmod(remainder, 60)
    return f"{days}d {hours}h {minutes}m"


class AutomationMonitor:
    def __init__(self, log_root: Path | None = None) -> None:
        self.logs_dir = log_root or logs_root()
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        self.metrics_file = self.logs_dir / METRICS_FILENAME
        self.activity_log = self.logs_dir / ACTIVITY_FILENAME
        self._lock = FileLock(self.metrics_file.with_name(METRICS_FILENAME + ".lock"))
        self.initialize_metrics()

    # ---------------------------------------------------------------- storage

    def initialize_metrics(self) -> None:
        if not self.metrics_file.exists():
            self.save_metrics(AutomationMetrics(system=SystemMetrics(start_time=utc_now_iso())))

    def load_metrics(self) -> AutomationMetrics:
        try:
            data = json.loads(self.metrics_file.read_text(encoding="utf-8"))
            return AutomationMetrics.model_validate(data)
        except (OSError, json.JSONDecodeError, ValidationError) as exc:
            logger.error(f"Error loading metrics: {exc}")
            metrics = AutomationMetrics(system=SystemMetrics(start_time=utc_now_iso()))
            self.save_metrics(metrics)
            return metrics

    def save_metrics(self, metrics: AutomationMetrics) -> bool:
        try:
            self.metrics_file.write_text(
                json.dumps(metrics.model_dump(mode="json", by_alias=True), indent=2), encoding="utf-8"
            )
        except OSError as exc:
            logger.error(f"Error saving metrics: {exc}")
            return False
        return True

    def _update(self, mutate) -> AutomationMetrics:
        with self._lock.hold():
            metrics = self.load_metrics()
            mutate(metrics)
            self.save_metrics(metrics)
        return metrics

    # --------------------------------------------------------------- recording

    def log_activity(self, level: str, message: str, data: Mapping[str, Any] | None = None) -> None:
        timestamp = utc_now_iso()
        payload = json.dumps(dict(data or {}), default=str)
        line = f"[{timestamp}] {level.upper()}: {message} {payload}\n"
        try:
            with open(self.activity_log, "a", encoding="utf-8") as handle:
                handle.write(line)
        except OSError as exc:
            logger.error(f"Error writing to activity log: {exc}")
        logger.log(_LEVELS.get(level, logging.INFO), f"{level.upper()}: {message}")

    def record_issue_start(self, issue_number: int, analysis: IssueAnalysis, title: str = "") -> IssueContext:
        self.log_activity(
            "info",
            "Issue processing started",
            {
                "issueNumber": issue_number,
                "title": title,
                "type": analysis.type.value,
                "complexity": analysis.complexity.value,
                "risk": analysis.risk.value,
                "agents": [agent.value for agent in analysis.agents],
            },
        )

        def mutate(metrics: AutomationMetrics) -> None:
            metrics.system.total_issues_processed += 1
            metrics.system.last_activity = utc_now_iso()
            issues = metrics.issues
            for bucket, key in (
                (issues.by_type, analysis.type.value),
                (issues.by_complexity, analysis.complexity.value),
                (issues.by_risk, analysis.risk.value),
            ):
                if key in bucket:
                    bucket[key] += 1

        self._update(mutate)
        return IssueContext(issue_number=issue_number, start_time=utc_now_iso(), analysis=analysis)

    def record_agent_execution(
        self, agent_type: str, success: bool, duration_ms: float, error: Optional[str] = None
    ) -> None:
        self.log_activity(
            "success" if success else "error",
            f"Agent {agent_type} execution {'completed' if success else 'failed'}",
            {"agentType": agent_type, "duration": duration_ms, "error": error},
        )

        def mutate(metrics: AutomationMetrics) -> None:
            agent = metrics.agents.setdefault(agent_type, AgentMetrics())
            agent.executions += 1
            if success:
                agent.successes += 1
            else:
                agent.failures += 1
                metrics.performance.total_errors += 1
            agent.avg_duration = (agent.avg_duration * (agent.executions - 1) + duration_ms) / agent.executions
            metrics.system.total_agent_executions += 1
            metrics.system.last_activity = utc_now_iso()

        self._update(mutate)

    def record_issue_completion(self, context: IssueContext, success: bool, auto_implemented: bool) -> None:
        duration_ms = (utc_now() - parse_timestamp(context.start_time)).total_seconds() * 1000
        self.log_activity(
            "success" if success else "error",
            "Issue processing completed",
            {
                "issueNumber": context.issue_number,
                "duration": round(duration_ms),
                "success": success,
                "autoImplemented": auto_implemented,
            },
        )

        def mutate(metrics: AutomationMetrics) -> None:
            issues = metrics.issues
            if auto_implemented:
                issues.auto_implemented += 1
            else:
                issues.manual_review += 1
            processed = issues.auto_implemented + issues.manual_review
            perf = metrics.performance
            perf.avg_processing_time = (perf.avg_processing_time * (processed - 1) + duration_ms) / processed

        self._update(mutate)

    def record_pr_creation(
        self, issue_number: int, pr_url: Optional[str], files_changed: int, success: bool
    ) -> None:
        self.log_activity(
            "success" if success else "error",
            "PR creation completed",
            {"issueNumber": issue_number, "prUrl": pr_url, "filesChanged": files_changed, "success": success},
        )
        if success:
            self._update(lambda metrics: setattr(metrics.system, "total_prs_created", metrics.system.total_prs_created + 1))

    # ------------------------------------------------------------------ health

    def get_system_health(self) -> SystemHealth:
        metrics = self.load_metrics()

        agents: Dict[str, AgentHealth] = {}
        for agent_type, agent in metrics.agents.items():
            rate = agent.successes / agent.executions * 100 if agent.executions else 0.0
            agents[agent_type] = AgentHealth(
                executions=agent.executions,
                success_rate=round(rate),
                avg_duration=round(agent.avg_duration),
                status=health_status(rate, agent.executions),
            )

        total_executions = sum(agent.executions for agent in metrics.agents.values())
        total_successes = sum(agent.successes for agent in metrics.agents.values())
        overall = total_successes / total_executions * 100 if total_executions else 0.0
        reviewed = metrics.issues.auto_implemented + metrics.issues.manual_review
        auto_rate = metrics.issues.auto_implemented / reviewed * 100 if reviewed else 0.0

        return SystemHealth(
            system=SystemHealthSummary(
                status=health_status(overall, total_executions),
                uptime=format_uptime(metrics.system.start_time),
                last_activity=metrics.system.last_activity,
                total_issues_processed=metrics.system.total_issues_processed,
                total_agent_executions=metrics.system.total_agent_executions,
                total_prs_created=metrics.system.total_prs_created,
                overall_success_rate=round(overall),
                auto_implementation_rate=round(auto_rate),
                avg_processing_time=round(metrics.performance.avg_processing_time / 1000),
            ),
            agents=agents,
            issues=metrics.issues,
            performance=metrics.performance,
        )

    @staticmethod
    def generate_recommendations(health: SystemHealth) -> List[str]:
        recommendations: List[str] = []
        if health.system.overall_success_rate < 75:
            recommendations.append("Overall success rate is below 75%. Review failed agent executions.")
        if health.system.auto_implementation_rate < 50:
            recommendations.append("Auto-implementation rate is low. Consider refining risk assessment criteria.")
        for agent_type, agent in health.agents.items():
            if agent.success_rate < 80 and agent.executions > 5:
                recommendations.append(
                    f"{agent_type} agent has low success rate ({agent.success_rate}%). Review agent documentation and prompts."
                )
            if agent.avg_duration > 30_000:
                recommendations.append(
                    f"{agent_type} agent has high average duration ({round(agent.avg_duration / 1000)}s). Consider optimization."
                )
        if health.system.avg_processing_time > 300:
            recommendations.append("Average processing time is high. Consider parallel agent execution.")
        if health.performance.total_errors > 10:
            recommendations.append("High error count detected. Review system logs for common failure patterns.")
        return recommendations

    # ------------------------------------------------------------- maintenance

    def clean_old_logs(self, days_to_keep: int = 30) -> Optional[Path]:
        """Move ``activity.log`` into ``archive/`` if it was last written before the cutoff."""

        if not self.activity_log.exists():
            return None
        cutoff = (utc_now() - timedelta(days=days_to_keep)).timestamp()
        mtime = self.activity_log.stat().st_mtime
        if mtime >= cutoff:
            return None
        archive_dir = self.logs_dir / "archive"
        archive_dir.mkdir(parents=True, exist_ok=True)
        archive_path = archive_dir / f"activity-{datetime.fromtimestamp(mtime).date().isoformat()}.log"
        self.activity_log.replace(archive_path)
        logger.info(f"Archived old activity log to {archive_path.name}")
        return archive_path

    def export_metrics_to_csv(self, path: Path | None = None) -> Path:
        metrics = self.load_metrics()
        csv_path = path or self.logs_dir / f"metrics-export-{utc_now().date().isoformat()}.csv"
        with open(csv_path, "w", encoding="utf-8", newline="") as handle:
            writer = csv.writer(handle)
            writer.writerow(["Agent", "Executions", "Successes", "Failures", "Success Rate", "Avg Duration"])
            for agent_type, agent in metrics.agents.items():
                rate = agent.successes / agent.executions * 100 if agent.executions else 0.0
                writer.writerow(
                    [agent_type, agent.executions, agent.successes, agent.failures, f"{rate:.2f}", f"{agent.avg_duration:.2f}"]
                )
        return csv_path


__all__ = [
    "ACTIVITY_FILENAME",
    "AutomationMonitor",
    "METRICS_FILENAME",
    "format_uptime",
    "health_status",
]
