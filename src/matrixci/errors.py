# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict


@dataclass(eq=False)
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - debugging without full tracebacks
    """
    message: str
    details: Dict[str, object] = field(default_factory=dict)

    kind = "CIError"

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class ConfigurationError(CIError):
    """Malformed matrix / include / exclude / stage declaration. Fatal before any job runs."""
    kind = "ConfigurationError"


class ExecutionError(CIError):
    """A command could not be spawned at all."""
    kind = "ExecutionError"


class CacheError(CIError):
    """A cache fetch/store failed. Never fatal: callers degrade to a cache miss."""
    kind = "CacheError"
