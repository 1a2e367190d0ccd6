"""Uniform result shape for tool executions.

Every tool returns a :class:`ToolResult`: text for the model plus an error
flag.  Use :func:`tool_error` / :func:`tool_success` rather than building
results by hand so error categories stay consistent across tools.
"""

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any
from typing import Optional


class ErrorType(str, Enum):
    """Standard error types for tool failures."""

    UNKNOWN_TOOL = "unknown_tool"
    VALIDATION_ERROR = "validation_error"
    NOT_FOUND = "not_found"
    WRITE_BLOCKED = "write_blocked"
    PERMISSION_DENIED = "permission_denied"
    SAVE_FAILED = "save_failed"
    TEST_FAILURE = "test_failure"
    EXECUTION_ERROR = "execution_error"


@dataclass(frozen=True)
class ToolResult:
    content: str
    is_error: bool = False
    error_type: Optional[str] = None


def tool_error(error_type: ErrorType, user_message: str) -> ToolResult:
    """Create a standardized error result."""
    return ToolResult(content=user_message, is_error=True, error_type=error_type.value)


def tool_success(data: Any) -> ToolResult:
    """Create a standardized success result; non-strings are rendered as JSON."""
    if isinstance(data, str):
        return ToolResult(content=data)
    return ToolResult(content=json.dumps(data, indent=2, default=str))


__all__ = [
    "ErrorType",
    "ToolResult",
    "tool_error",
    "tool_success",
]
