# =============================================================================
#  Duplicord
#  Copyright (C) 2025 github.com/Duplicord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from duplicord.common.events import (
    EventSink,
    ItemProgressEvent,
    LogEvent,
    PhaseEvent,
    ResultEvent,
    Severity,
    item_percentage,
    safe_emit,
)

logger = logging.getLogger("duplicord.server.run")


class RunPhase(Enum):
    PENDING = ("Pending", 0)
    VALIDATING = ("Validating inputs", 5)
    CONNECTING = ("Connecting to Discord", 10)
    LOCATING = ("Locating servers", 15)
    WIPING = ("Wiping target server", 25)
    BACKING_UP = ("Backing up source server", 40)
    DUPLICATING = ("Duplicating structure", 65)
    FINALIZING = ("Finalizing", 95)
    COMPLETED = ("Completed", 100)
    CANCELLED = ("Cancelled", -1)
    FAILED = ("Failed", -1)

    def __init__(self, label: str, percentage: int):
        self.label = label
        self.percentage = percentage

    @property
    def terminal(self) -> bool:
        return self in (RunPhase.COMPLETED, RunPhase.CANCELLED, RunPhase.FAILED)


@dataclass(frozen=True)
class LogEntry:
    timestamp: str
    message: str
    severity: Severity

    def to_dict(self) -> Dict[str, str]:
        return {
            "timestamp": self.timestamp,
            "message": self.message,
            "severity": self.severity.value,
        }


@dataclass(frozen=True)
class ItemProgress:
    current: int = 0
    total: int = 0
    label: str = ""

    @property
    def percentage(self) -> int:
        return item_percentage(self.current, self.total)


@dataclass(frozen=True)
class RunResult:
    run_id: str
    duration: float  # seconds
    logs: List[LogEntry] = field(default_factory=list)
    item_failures: int = 0
    success: bool = True


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class RunState:
    """
    Mutable record of one run. Every mutation is pushed to the event sink at
    the point it happens. Once cancelled, phase and item-progress events are
    no longer emitted; log lines and the final result still are.
    """

    def __init__(self, run_id: str, sink: Optional[EventSink] = None):
        self.run_id = run_id
        self.sink = sink
        self.phase = RunPhase.PENDING
        self.percentage = 0
        self.item = ItemProgress()
        self.item_failures = 0
        self.logs: List[LogEntry] = []
        self._cancel_evt = asyncio.Event()
        self._logger = logging.LoggerAdapter(logger, {"run_id": run_id})

    # ---------- cancellation ----------
    @property
    def cancelled(self) -> bool:
        return self._cancel_evt.is_set()

    @property
    def cancel_event(self) -> asyncio.Event:
        return self._cancel_evt

    def request_cancel(self) -> bool:
        """One-way flag. Returns True only for the call that set it."""
        if self._cancel_evt.is_set():
            return False
        self._cancel_evt.set()
        return True

    # ---------- log ----------
    def log(self, message: str, severity: Severity = Severity.INFO) -> LogEntry:
        entry = LogEntry(timestamp=_now_iso(), message=message, severity=severity)
        self.logs.append(entry)
        self._logger.log(severity.level, "[%s] %s", self.run_id, message)
        safe_emit(
            self.sink,
            LogEvent(
                run_id=self.run_id,
                timestamp=entry.timestamp,
                message=message,
                severity=severity,
            ),
        )
        return entry

    def warn(self, message: str) -> LogEntry:
        return self.log(message, Severity.WARNING)

    def item_failed(self, message: str) -> LogEntry:
        """A single item could not be processed; counted and logged as a warning."""
        self.item_failures += 1
        return self.warn(message)

    def error(self, message: str) -> LogEntry:
        return self.log(message, Severity.ERROR)

    # ---------- progress ----------
    def enter(self, phase: RunPhase) -> None:
        self.phase = phase
        if phase.terminal and phase is not RunPhase.COMPLETED:
            return
        self.percentage = max(self.percentage, min(100, max(0, phase.percentage)))
        if self.cancelled:
            return
        safe_emit(
            self.sink,
            PhaseEvent(run_id=self.run_id, phase=phase.label, percentage=self.percentage),
        )

    def begin_items(self, total: int) -> None:
        self.item = ItemProgress(current=0, total=total)

    def advance(self, current: int, label: str) -> None:
        self.item = ItemProgress(current=current, total=self.item.total, label=label)
        if self.cancelled:
            return
        safe_emit(
            self.sink,
            ItemProgressEvent(
                run_id=self.run_id,
                current=current,
                total=self.item.total,
                item_name=label,
                percentage=self.item.percentage,
            ),
        )

    def finish(
        self,
        success: bool,
        duration: float,
        reason: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        safe_emit(
            self.sink,
            ResultEvent(
                run_id=self.run_id,
                success=success,
                duration=duration,
                reason=reason,
                error=error,
                item_failures=self.item_failures,
            ),
        )

    def describe(self) -> Dict[str, Any]:
        return {
            "runId": self.run_id,
            "phase": self.phase.label,
            "percentage": self.percentage,
            "item": {
                "current": self.item.current,
                "total": self.item.total,
                "itemName": self.item.label,
                "percentage": self.item.percentage,
            },
            "cancelled": self.cancelled,
            "itemFailures": self.item_failures,
            "logCount": len(self.logs),
        }
