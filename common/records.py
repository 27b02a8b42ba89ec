from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Union

SEVERITY_NAMES = (
    "emerg",
    "alert",
    "crit",
    "error",
    "warning",
    "notice",
    "info",
    "debug",
)
SEVERITY_ERROR = 3
SEVERITY_INFO = 6
DEFAULT_SEVERITY = SEVERITY_INFO


def now_ms() -> float:
    return time.time() * 1000.0


def coerce_severity(value: Any) -> int:
    try:
        level = int(str(value).strip())
    except (TypeError, ValueError):
        return DEFAULT_SEVERITY
    if 0 <= level < len(SEVERITY_NAMES):
        return level
    return DEFAULT_SEVERITY


def severity_name(level: int) -> str:
    if 0 <= level < len(SEVERITY_NAMES):
        return SEVERITY_NAMES[level]
    return SEVERITY_NAMES[DEFAULT_SEVERITY]


@dataclass(frozen=True, slots=True)
class LogRecord:
    timestamp: float
    message: str
    source: str
    severity: int = DEFAULT_SEVERITY
    history: bool = False
    truncated: bool = False

    @classmethod
    def raw(cls, message: str, source: str, severity: int = DEFAULT_SEVERITY) -> "LogRecord":
        return cls(timestamp=now_ms(), message=message, source=source, severity=severity)

    def as_history(self) -> "LogRecord":
        if self.history:
            return self
        return LogRecord(
            timestamp=self.timestamp,
            message=self.message,
            source=self.source,
            severity=self.severity,
            history=True,
            truncated=self.truncated,
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "timestamp": self.timestamp,
            "message": self.message,
            "service": self.source,
            "priority": self.severity,
            "level": severity_name(self.severity),
        }
        if self.history:
            out["history"] = True
        if self.truncated:
            out["truncated"] = True
        return out


@dataclass(frozen=True, slots=True)
class Structured:
    record: LogRecord


@dataclass(frozen=True, slots=True)
class Raw:
    record: LogRecord


ParsedLine = Union[Structured, Raw]
