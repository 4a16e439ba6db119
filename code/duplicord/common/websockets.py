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
import contextlib
import json
import logging
import random
import uuid
from typing import Any, Optional, Tuple
import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake, WebSocketException

# connect/send bound applied to every frame once shutdown has begun
SHUTDOWN_TIMEOUT = 0.25


class WebsocketManager:
    """
    Long-lived outbound connection to one websocket endpoint.

    Frames go out one at a time in the order `send()` was called. A broken
    connection is dropped and reopened on the next attempt, with exponential
    backoff between attempts. After `begin_shutdown()` every frame gets a
    single short attempt so the process can exit quickly.
    """

    def __init__(
        self,
        send_url: str,
        logger: Optional[logging.Logger] = None,
        *,
        max_attempts: int = 5,
        base_backoff: float = 0.5,
        backoff_cap: float = 8.0,
        jitter: float = 0.2,
        connect_timeout: float = 5.0,
        send_timeout: float = 5.0,
    ):
        self.send_url = send_url
        self.logger = logger or logging.getLogger("WebsocketManager")
        self.max_attempts = max_attempts
        self.base_backoff = base_backoff
        self.backoff_cap = backoff_cap
        self.jitter = jitter
        self.connect_timeout = connect_timeout
        self.send_timeout = send_timeout
        self.sent = 0
        self.dropped = 0
        self._ws = None
        self._lock = asyncio.Lock()
        self._shutting_down = False

    @property
    def connected(self) -> bool:
        return self._ws is not None

    def begin_shutdown(self) -> None:
        self._shutting_down = True

    def _budget(self) -> Tuple[int, float, float]:
        if self._shutting_down:
            return (
                1,
                min(self.connect_timeout, SHUTDOWN_TIMEOUT),
                min(self.send_timeout, SHUTDOWN_TIMEOUT),
            )
        return self.max_attempts, self.connect_timeout, self.send_timeout

    def _backoff_delay(self, attempt: int) -> float:
        """Exponential backoff with jitter. attempt >= 1"""
        delay = min(self.backoff_cap, self.base_backoff * (2 ** (attempt - 1)))
        return delay + random.random() * (self.jitter * delay)

    async def _open(self, timeout: float):
        ws = await asyncio.wait_for(
            websockets.connect(self.send_url, max_size=None, ping_interval=None),
            timeout,
        )
        self.logger.debug("[ws] connected to %s", self.send_url)
        return ws

    async def _drop(self) -> None:
        ws, self._ws = self._ws, None
        if ws is None:
            return
        with contextlib.suppress(WebSocketException, RuntimeError, OSError):
            await ws.close()

    async def send(self, payload: dict) -> bool:
        """Write one JSON frame. Returns False once every attempt has failed."""
        raw = json.dumps(payload, separators=(",", ":"), default=str)
        async with self._lock:
            attempts, connect_timeout, send_timeout = self._budget()
            for attempt in range(1, attempts + 1):
                try:
                    if self._ws is None:
                        self._ws = await self._open(connect_timeout)
                    await asyncio.wait_for(self._ws.send(raw), send_timeout)
                    self.sent += 1
                    return True
                except (asyncio.TimeoutError, OSError, ConnectionClosed, InvalidHandshake) as e:
                    await self._drop()
                    final = self._shutting_down or attempt >= attempts
                    lvl = self.logger.info if final else self.logger.warning
                    lvl("[ws] send failed attempt %d/%d: %s", attempt, attempts, e)
                    if final:
                        break
                    await asyncio.sleep(self._backoff_delay(attempt))
                except Exception as e:
                    await self._drop()
                    self.logger.error("[ws] send unexpected failure: %s", e)
                    break
            self.dropped += 1
            return False

    async def close(self) -> None:
        self.begin_shutdown()
        async with self._lock:
            await self._drop()


class AdminBus:
    """Publishes `{kind, role, rid, payload}` envelopes to a remote admin bus."""

    def __init__(
        self,
        role: str,
        admin_ws_url: str,
        logger: Optional[logging.Logger] = None,
    ):
        self.role = role
        self.logger = logger or logging.getLogger(f"AdminBus[{role}]")
        self.ws = WebsocketManager(send_url=admin_ws_url, logger=self.logger)

    def begin_shutdown(self) -> None:
        self.ws.begin_shutdown()

    async def close(self) -> None:
        await self.ws.close()
        if self.ws.dropped:
            self.logger.info(
                "AdminBus closed | sent=%d dropped=%d", self.ws.sent, self.ws.dropped
            )

    async def publish(self, kind: str, payload: Any) -> bool:
        if not isinstance(payload, dict):
            payload = {"text": str(payload)}
        env = {
            "kind": kind or "log",
            "role": self.role,
            "rid": uuid.uuid4().hex,
            "payload": payload,
        }
        return await self.ws.send(env)
