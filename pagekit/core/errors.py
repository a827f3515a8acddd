"""
Error taxonomy for the runtime.

Every error is contained at the smallest enclosing unit:
- ConfigError: malformed or unknown descriptor, contained at the offending node
- DataError: fetch/stream failure, surfaced as a datasource status
- ValidationError: field rule failures, surfaced inline, blocks the action
- ActionError: step failure, routed to onError or the notification channel
- EngineFault: corrupted internal state, the only page-level failure
"""
from typing import Any, Dict, List, Optional


class PagekitError(Exception):
    """Base class for all runtime errors."""


class ConfigError(PagekitError):
    def __init__(self, message: str, node_id: Optional[str] = None):
        super().__init__(message)
        self.node_id = node_id

    def __str__(self) -> str:
        base = super().__str__()
        return f"[{self.node_id}] {base}" if self.node_id else base


class ExpressionError(ConfigError):
    """Expression could not be parsed or evaluated."""

    def __init__(self, message: str, expression: str = ""):
        super().__init__(message)
        self.expression = expression


class DataError(PagekitError):
    """
    Datasource failure.

    Attributes:
        datasource_id: Datasource that failed
        kind: One of 'network', 'timeout', 'http', 'config', 'transform', 'stream'
        status: HTTP status code when kind == 'http'
    """

    def __init__(
        self,
        message: str,
        datasource_id: Optional[str] = None,
        kind: str = "network",
        status: Optional[int] = None,
    ):
        super().__init__(message)
        self.datasource_id = datasource_id
        self.kind = kind
        self.status = status


class ValidationError(PagekitError):
    """Field validation failed; errors maps widget id -> messages."""

    def __init__(self, errors: Dict[str, List[str]]):
        fields = ", ".join(sorted(errors))
        super().__init__(f"Validation failed for: {fields}")
        self.errors = errors


class ActionError(PagekitError):
    def __init__(
        self,
        message: str,
        action_id: Optional[str] = None,
        step: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.action_id = action_id
        self.step = step
        self.cause = cause


class OperationCancelled(PagekitError):
    """Raised at a suspension point whose cancellation token was cancelled."""

    def __init__(self, reason: Any = None):
        super().__init__(f"Operation cancelled: {reason}" if reason else "Operation cancelled")
        self.reason = reason


class EngineFault(PagekitError):
    """Internal invariant violated. Never caused by configuration or network."""
