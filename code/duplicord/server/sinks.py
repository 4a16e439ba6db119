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
from typing import Optional, Set

from duplicord.common.events import Event, LogEvent, ResultEvent
from duplicord.common.websockets import AdminBus


class LoggingSink:
    """Writes non-log events through a logger; log events are already logged by the run."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger("duplicord.server.events")

    def __call__(self, event: Event) -> None:
        if isinstance(event, LogEvent):
            return
        if isinstance(event, ResultEvent):
            lvl = logging.INFO if event.success else logging.WARNING
            self.logger.log(
                lvl,
                "[%s] result success=%s duration=%.1fs reason=%s failures=%d",
                event.run_id,
                event.success,
                event.duration,
                event.reason,
                event.item_failures,
            )
            return
        self.logger.debug("[%s] %s", event.run_id, event.to_dict())


class BusSink:
    """
    Forwards every event to a remote admin bus as `{kind: "duplicate", ...}`.
    Sends are scheduled on the running loop; call `drain()` before exiting so
    the last events (the result in particular) are not lost and the
    connection is closed.
    """

    def __init__(self, url: str, role: str = "server", logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger("duplicord.server.bus")
        self.bus = AdminBus(role=role, admin_ws_url=url, logger=self.logger)
        self._pending: Set[asyncio.Task] = set()

    def __call__(self, event: Event) -> None:
        loop = asyncio.get_running_loop()
        t = loop.create_task(self.bus.publish("duplicate", event.to_dict()))
        self._pending.add(t)
        t.add_done_callback(self._pending.discard)

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self, timeout: float = 5.0) -> None:
        if self._pending:
            _, pending = await asyncio.wait(set(self._pending), timeout=timeout)
            for t in pending:
                t.cancel()
            if pending:
                self.logger.warning("Dropped %d undelivered bus event(s)", len(pending))
        await self.bus.close()
