# =============================================================================
#  Duplicord
#  Copyright (C) 2025 github.com/Duplicord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

"""
Progress events pushed to observers of a run.

Every event serialises to the wire shape used by the UI:

    {"type": "log", "runId": ..., "timestamp", "message", "severity"}
    {"type": "phase", "runId": ..., "phase", "percentage"}
    {"type": "item-progress", "runId": ..., "current", "total", "itemName", "percentage"}
    {"type": "result", "runId": ..., "success", "duration", "reason", "error", "itemFailures"}
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional, Union

logger = logging.getLogger(__name__)


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"

    @property
    def level(self) -> int:
        return {
            Severity.INFO: logging.INFO,
            Severity.WARNING: logging.WARNING,
            Severity.ERROR: logging.ERROR,
        }[self]


@dataclass(frozen=True)
class LogEvent:
    run_id: str
    timestamp: str
    message: str
    severity: Severity = Severity.INFO

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "log",
            "runId": self.run_id,
            "timestamp": self.timestamp,
            "message": self.message,
            "severity": self.severity.value,
        }


@dataclass(frozen=True)
class PhaseEvent:
    run_id: str
    phase: str
    percentage: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "phase",
            "runId": self.run_id,
            "phase": self.phase,
            "percentage": self.percentage,
        }


@dataclass(frozen=True)
class ItemProgressEvent:
    run_id: str
    current: int
    total: int
    item_name: str
    percentage: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "item-progress",
            "runId": self.run_id,
            "current": self.current,
            "total": self.total,
            "itemName": self.item_name,
            "percentage": self.percentage,
        }


@dataclass(frozen=True)
class ResultEvent:
    run_id: str
    success: bool
    duration: float
    reason: Optional[str] = None
    error: Optional[str] = None
    item_failures: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "result",
            "runId": self.run_id,
            "success": self.success,
            "duration": round(self.duration, 3),
            "reason": self.reason,
            "error": self.error,
            "itemFailures": self.item_failures,
        }


Event = Union[LogEvent, PhaseEvent, ItemProgressEvent, ResultEvent]
EventSink = Callable[[Event], None]


def item_percentage(current: int, total: int) -> int:
    if total <= 0:
        return 0
    return max(0, min(100, (current * 100) // total))


def safe_emit(sink: Optional[EventSink], event: Event) -> None:
    """Deliver to a sink without letting observer failures reach the caller."""
    if sink is None:
        return
    try:
        sink(event)
    except Exception:
        logger.debug("Event sink raised for %s", type(event).__name__, exc_info=True)


class CallbackSink:
    def __init__(self, fn: Callable[[Dict[str, Any]], None]):
        self.fn = fn

    def __call__(self, event: Event) -> None:
        self.fn(event.to_dict())


class FanoutSink:
    def __init__(self, sinks: Iterable[EventSink]):
        self.sinks = [s for s in sinks if s is not None]

    def __call__(self, event: Event) -> None:
        for s in self.sinks:
            safe_emit(s, event)
