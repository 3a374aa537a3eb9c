"""Keyword classifier mapping an issue to type, complexity, risk and agent roles.

Every function here is pure: the verdict depends only on the title, body and
labels passed in. Matching is case-insensitive substring matching.
"""

from __future__ import annotations

from typing import Any, Iterable, List, Mapping, Sequence, Tuple

from .data_types import AgentRole, Complexity, IssueAnalysis, IssueType, RiskLevel

# (issue type, label that forces it, title keywords); first match wins
ISSUE_TYPE_RULES: Tuple[Tuple[IssueType, str, Tuple[str, ...]], ...] = (
    (IssueType.BUG, "bug", ("fix", "error")),
    (IssueType.ENHANCEMENT, "enhancement", ("improve", "optimize")),
    (IssueType.FEATURE, "feature", ("add", "implement")),
    (IssueType.DOCUMENTATION, "documentation", ("doc", "readme")),
)

SIMPLE_KEYWORDS = ("typo", "color", "text", "button", "style", "css", "readme")
COMPLEX_KEYWORDS = ("architecture", "refactor", "migration", "authentication", "database")

HIGH_RISK_KEYWORDS = ("breaking", "migration", "security", "authentication", "database", "payment")
LOW_RISK_KEYWORDS = ("documentation", "readme", "typo", "color", "css", "style")

# role -> (title keywords, body keywords); dict order is the output order
AGENT_KEYWORDS: Mapping[AgentRole, Tuple[Tuple[str, ...], Tuple[str, ...]]] = {
    AgentRole.FRONTEND: (("ui", "component", "page", "frontend"), ("react", "next.js")),
    AgentRole.BACKEND: (("api", "backend", "server", "endpoint"), ("express", "route")),
    AgentRole.DATABASE: (("database", "schema", "model", "mongo"), ("collection", "query")),
    AgentRole.DEVOPS: (("deploy", "ci", "build", "performance"), ("docker", "github actions")),
    AgentRole.DOCUMENTATION: (("doc", "readme", "guide", "documentation"), ("tutorial",)),
}

DEFAULT_AGENTS: Tuple[AgentRole, ...] = (AgentRole.FRONTEND,)


def _label_names(labels: Iterable[Any] | None) -> List[str]:
    """Accept label objects, ``{"name": ...}`` mappings or plain strings."""

    names: List[str] = []
    for label in labels or []:
        if isinstance(label, str):
            name = label
        elif isinstance(label, Mapping):
            name = str(label.get("name", ""))
        else:
            name = str(getattr(label, "name", ""))
        names.append(name.lower())
    return names


def _mentions(keywords: Sequence[str], *texts: str) -> bool:
    return any(keyword in text for keyword in keywords for text in texts)


def classify_issue_type(title: str, labels: Iterable[Any] | None = None) -> IssueType:
    title = (title or "").lower()
    names = _label_names(labels)
    for issue_type, label, title_keywords in ISSUE_TYPE_RULES:
        if label in names or _mentions(title_keywords, title):
            return issue_type
    return IssueType.FEATURE


def assess_complexity(title: str, body: str = "") -> Complexity:
    title, body = (title or "").lower(), (body or "").lower()
    if _mentions(SIMPLE_KEYWORDS, title, body):
        return Complexity.SIMPLE
    if _mentions(COMPLEX_KEYWORDS, title, body):
        return Complexity.COMPLEX
    return Complexity.MODERATE


def assess_risk(title: str, body: str = "") -> RiskLevel:
    title, body = (title or "").lower(), (body or "").lower()
    if _mentions(HIGH_RISK_KEYWORDS, title, body):
        return RiskLevel.HIGH
    if _mentions(LOW_RISK_KEYWORDS, title, body):
        return RiskLevel.LOW
    return RiskLevel.MEDIUM


def determine_required_agents(title: str, body: str = "") -> List[AgentRole]:
    """Return the roles whose keywords appear, in fixed role order."""

    title, body = (title or "").lower(), (body or "").lower()
    agents = [
        role
        for role, (title_keywords, body_keywords) in AGENT_KEYWORDS.items()
        if _mentions(title_keywords, title) or _mentions(body_keywords, body)
    ]
    return agents or list(DEFAULT_AGENTS)


def should_auto_implement(complexity: Complexity, risk: RiskLevel) -> bool:
    return complexity in (Complexity.SIMPLE, Complexity.MODERATE) and risk == RiskLevel.LOW


def analyze_issue(title: str, body: str = "", labels: Iterable[Any] | None = None) -> IssueAnalysis:
    """Classify an issue.

    Examples:
        >>> analyze_issue("Fix button color in dashboard", "", [{"name": "bug"}]).auto_implement
        True
        >>> analyze_issue("Implement user authentication system", "Add OAuth", ["feature"]).risk
        <RiskLevel.HIGH: 'high'>
    """
    complexity = assess_complexity(title, body)
    risk = assess_risk(title, body)
    return IssueAnalysis(
        type=classify_issue_type(title, labels),
        complexity=complexity,
        risk=risk,
        agents=determine_required_agents(title, body),
        auto_implement=should_auto_implement(complexity, risk),
    )


__all__ = [
    "AGENT_KEYWORDS",
    "COMPLEX_KEYWORDS",
    "HIGH_RISK_KEYWORDS",
    "ISSUE_TYPE_RULES",
    "LOW_RISK_KEYWORDS",
    "SIMPLE_KEYWORDS",
    "analyze_issue",
    "assess_complexity",
    "assess_risk",
    "classify_issue_type",
    "determine_required_agents",
    "should_auto_implement",
]
