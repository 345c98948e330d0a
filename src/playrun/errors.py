# errors.py
from __future__ import annotations

from typing import Any, Dict, List, Optional


class OrchestrationError(Exception):
    """
    Structured engine error with enough context for:
      - clean CLI output (offending job id, cycle path, field)
      - summary rendering
      - debugging without full tracebacks
    """

    kind = "OrchestrationError"

    def __init__(
        self,
        message: str,
        *,
        ref: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.ref = ref
        self.details = dict(details or {})

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.ref:
            lines.append(f"ref={self.ref}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class ConfigurationError(OrchestrationError):
    """Malformed or ambiguous playbook, bad settings, missing collaborator."""

    kind = "ConfigurationError"


class SchedulingError(OrchestrationError):
    """Dependency cycle or unresolvable reference found while ordering jobs."""

    kind = "SchedulingError"

    def __init__(self, message: str, *, cycle: Optional[List[str]] = None, **kwargs: Any):
        self.cycle = list(cycle or [])
        if self.cycle and "ref" not in kwargs:
            kwargs["ref"] = " -> ".join(self.cycle)
        super().__init__(message, **kwargs)


class ExecutionFailure(OrchestrationError):
    """A collaborator ran and reported failure."""

    kind = "ExecutionFailure"

    def __init__(self, message: str, *, exit_code: Optional[int] = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.exit_code = exit_code


class JobTimeout(ExecutionFailure):
    kind = "Timeout"


class CacheError(OrchestrationError):
    """Unreadable or inconsistent cache entry. Callers degrade to a miss."""

    kind = "CacheError"
