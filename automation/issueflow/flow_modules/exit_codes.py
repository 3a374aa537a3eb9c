"""Exit code constants for issueflow entry points.

Exit Code Ranges:
    0: Success
    1-9: Blockers (missing preconditions, bad arguments)
    20-29: Execution failures (agent errors, unparseable output)
    30-39: Resource failures (state file, GitHub, git)
"""

from __future__ import annotations

# Success
EXIT_SUCCESS = 0

# Blockers (1-9)
EXIT_BLOCKER_MISSING_ENV = 1  # Missing environment variables or executables (gh, claude)
EXIT_BLOCKER_MISSING_STATE = 2  # Issue not registered / coordination state unusable
EXIT_BLOCKER_INVALID_ARGS = 5  # Invalid command-line arguments

# Execution Failures (20-29)
EXIT_EXEC_AGENT_FAILED = 20  # One or more agents failed
EXIT_EXEC_PARSE_ERROR = 22  # Failed to parse agent or gh output

# Resource Failures (30-39)
EXIT_RESOURCE_GIT_ERROR = 30  # Git operation failed
EXIT_RESOURCE_FILE_ERROR = 31  # State, message log or metrics file I/O error
EXIT_RESOURCE_NETWORK_ERROR = 32  # GitHub CLI / network error


def get_exit_code_description(code: int) -> str:
    """Get human-readable description for an exit code.

    Examples:
        >>> get_exit_code_description(EXIT_BLOCKER_MISSING_ENV)
        'Blocker: Missing environment variables or executables'
        >>> get_exit_code_description(99)
        'Unknown exit code: 99'
    """
    descriptions = {
        EXIT_SUCCESS: "Success",
        EXIT_BLOCKER_MISSING_ENV: "Blocker: Missing environment variables or executables",
        EXIT_BLOCKER_MISSING_STATE: "Blocker: Issue or coordination state unavailable",
        EXIT_BLOCKER_INVALID_ARGS: "Blocker: Invalid command-line arguments",
        EXIT_EXEC_AGENT_FAILED: "Execution Failure: Agent execution failed",
        EXIT_EXEC_PARSE_ERROR: "Execution Failure: Failed to parse output",
        EXIT_RESOURCE_GIT_ERROR: "Resource Failure: Git operation failed",
        EXIT_RESOURCE_FILE_ERROR: "Resource Failure: File I/O error",
        EXIT_RESOURCE_NETWORK_ERROR: "Resource Failure: GitHub/network error",
    }
    return descriptions.get(code, f"Unknown exit code: {code}")


def is_blocker(code: int) -> bool:
    return 1 <= code <= 9


def is_execution_failure(code: int) -> bool:
    return 20 <= code <= 29


def is_resource_failure(code: int) -> bool:
    return 30 <= code <= 39
