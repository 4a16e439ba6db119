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
import time
from typing import Dict, List, Optional

from duplicord.server.duplicator import GuildDuplicator

logger = logging.getLogger("duplicord.server.registry")


class RunRegistry:
    """Active runs by id. Entries leave the table when their outcome resolves."""

    def __init__(self):
        self._runs: Dict[str, GuildDuplicator] = {}
        self._lock = asyncio.Lock()

    async def new_id(self) -> str:
        """Millisecond timestamp, suffixed when two runs start in the same ms."""
        base = str(int(time.time() * 1000))
        async with self._lock:
            rid, n = base, 1
            while rid in self._runs:
                rid = f"{base}-{n}"
                n += 1
            return rid

    async def add(self, run: GuildDuplicator) -> None:
        async with self._lock:
            if run.run_id in self._runs:
                raise KeyError(f"run {run.run_id} already registered")
            self._runs[run.run_id] = run
        logger.debug("Registry add | run=%s active=%d", run.run_id, len(self._runs))

    async def get(self, run_id: str) -> Optional[GuildDuplicator]:
        async with self._lock:
            return self._runs.get(run_id)

    async def remove(self, run_id: str) -> Optional[GuildDuplicator]:
        async with self._lock:
            run = self._runs.pop(run_id, None)
        if run:
            logger.debug("Registry remove | run=%s active=%d", run_id, len(self._runs))
        return run

    async def cancel(self, run_id: str) -> bool:
        """True when the run was found (cancel itself is idempotent)."""
        run = await self.get(run_id)
        if run is None:
            return False
        run.cancel()
        return True

    def track(self, run: GuildDuplicator, outcome: asyncio.Future) -> None:
        """Drop `run` from the table once `outcome` settles."""

        def _done(_fut: asyncio.Future) -> None:
            asyncio.ensure_future(self.remove(run.run_id))

        outcome.add_done_callback(_done)

    def active_count(self) -> int:
        return len(self._runs)

    def ids(self) -> List[str]:
        return list(self._runs)

    async def cancel_all(self) -> int:
        async with self._lock:
            runs = list(self._runs.values())
        for run in runs:
            run.cancel()
        return len(runs)
