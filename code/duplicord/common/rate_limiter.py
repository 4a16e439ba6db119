# =============================================================================
#  Duplicord
#  Copyright (C) 2025 github.com/Duplicord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

import asyncio, time
from enum import Enum
from typing import Dict, Optional


class ActionType(Enum):
    DELETE_CHANNEL = "delete_channel"
    DELETE_ROLE = "delete_role"
    CREATE_ROLE = "create_role"
    CREATE_CHANNEL = "create_channel"
    EDIT_GUILD = "edit_guild"


DEFAULT_DELAYS: Dict[ActionType, float] = {
    ActionType.DELETE_CHANNEL: 0.8,
    ActionType.DELETE_ROLE: 0.8,
    ActionType.CREATE_ROLE: 1.0,
    ActionType.CREATE_CHANNEL: 1.0,
    ActionType.EDIT_GUILD: 1.0,
}


async def wait_or_stop(stop: asyncio.Event, seconds: float) -> bool:
    """
    Sleep for `seconds` unless `stop` gets set first.
    Returns True when the full pause elapsed, False when it was cut short.
    """
    if stop.is_set():
        return False
    if seconds <= 0:
        return True
    try:
        await asyncio.wait_for(stop.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return True
    return False


class RateLimiter:
    """Fixed spacing after a call, stretched by retry-after cooldowns."""

    def __init__(self, min_interval: float):
        self._min_interval = max(0.0, float(min_interval))
        self._cooldown_until = 0.0

    @property
    def min_interval(self) -> float:
        return self._min_interval

    async def pause(self, stop: asyncio.Event) -> bool:
        wait = max(self._min_interval, self.remaining_cooldown())
        return await wait_or_stop(stop, wait)

    def backoff(self, seconds: float):
        now = time.monotonic()
        candidate_end = now + max(0.0, seconds)
        if candidate_end > self._cooldown_until:
            self._cooldown_until = candidate_end

    def reset(self):
        self._cooldown_until = 0.0

    def remaining_cooldown(self) -> float:
        return max(0.0, self._cooldown_until - time.monotonic())


class RateLimitManager:
    """
    One per run. Every mutating remote call is followed by `pause(action)`,
    so a run never has more than one mutating call in flight and calls are
    spaced by at least the configured interval for that action.
    """

    def __init__(self, config: Optional[Dict[ActionType, float]] = None):
        cfg = dict(DEFAULT_DELAYS)
        if config:
            cfg.update(config)
        self._limiters: Dict[ActionType, RateLimiter] = {
            a: RateLimiter(cfg[a]) for a in cfg
        }

    def _get(self, action: ActionType) -> Optional[RateLimiter]:
        return self._limiters.get(action)

    def interval(self, action: ActionType) -> float:
        lim = self._get(action)
        return lim.min_interval if lim else 0.0

    async def pause(self, action: ActionType, stop: asyncio.Event) -> bool:
        lim = self._get(action)
        if lim is None:
            return not stop.is_set()
        return await lim.pause(stop)

    def penalize(self, action: Optional[ActionType], seconds: float):
        """Stretch the next pause; `action=None` applies to every action."""
        targets = self._limiters.values() if action is None else [self._get(action)]
        for lim in targets:
            if lim:
                lim.backoff(seconds)

    def reset(self, action: ActionType):
        lim = self._get(action)
        if lim:
            lim.reset()

    def remaining(self, action: ActionType) -> float:
        lim = self._get(action)
        return lim.remaining_cooldown() if lim else 0.0
