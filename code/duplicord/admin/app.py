# =============================================================================
#  Duplicord
#  Copyright (C) 2025 github.com/Duplicord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations
from collections import OrderedDict, deque
import asyncio
import json
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, Optional, Set

from fastapi import Body, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from duplicord.admin.logging_setup import (
    client_var,
    forget_secret,
    get_logger,
    register_secret,
    req_id_var,
    route_var,
    run_id_var,
)
from duplicord.common.config import CURRENT_VERSION, Config
from duplicord.common.events import Event
from duplicord.server.directory import DirectoryClient
from duplicord.server.discord_client import DiscordDirectoryClient
from duplicord.server.duplicator import GuildDuplicator
from duplicord.server.registry import RunRegistry

APP_TITLE = "Duplicord"
LOGGER = get_logger("duplicord.admin")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _set_ws_context(route: str, ws: WebSocket, run_id: str = "-"):
    route_var.set(route)
    c = getattr(ws, "client", None)
    if c:
        client_var.set(f"{getattr(c, 'host', '?')}:{getattr(c, 'port', '?')}")
    else:
        client_var.set("-")
    req_id_var.set(uuid.uuid4().hex[:8])
    run_id_var.set(run_id)


class EventHub:
    """
    In-process fan-out of run events to WebSocket subscribers. Each run keeps
    a short replay buffer so a late subscriber still sees what it missed;
    buffers of the oldest runs are dropped once `max_runs` is exceeded.
    """

    def __init__(self, replay: int = 200, queue_size: int = 500, max_runs: int = 50):
        self.replay = replay
        self.queue_size = queue_size
        self.max_runs = max_runs
        self.run_subscribers: Dict[str, Set[asyncio.Queue]] = {}
        self.subscribers: Set[asyncio.Queue] = set()
        self.recent: "OrderedDict[str, Deque[str]]" = OrderedDict()

    def knows(self, run_id: str) -> bool:
        return run_id in self.recent

    def subscribe(self, run_id: Optional[str] = None) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        if run_id is None:
            self.subscribers.add(q)
        else:
            for text in list(self.recent.get(run_id, ()))[-self.queue_size:]:
                q.put_nowait(text)
            self.run_subscribers.setdefault(run_id, set()).add(q)
        LOGGER.debug(
            "EventHub.subscribe | run=%s", run_id or "*",
            extra={"subscribers": self._count()},
        )
        return q

    def unsubscribe(self, q: asyncio.Queue, run_id: Optional[str] = None):
        if run_id is None:
            self.subscribers.discard(q)
        else:
            qs = self.run_subscribers.get(run_id)
            if qs is not None:
                qs.discard(q)
                if not qs:
                    self.run_subscribers.pop(run_id, None)
        LOGGER.debug(
            "EventHub.unsubscribe | run=%s", run_id or "*",
            extra={"subscribers": self._count()},
        )

    def _count(self) -> int:
        return len(self.subscribers) + sum(len(s) for s in self.run_subscribers.values())

    def publish(self, event: Dict[str, Any]) -> None:
        """Synchronous; safe to call from inside the workflow's event sink."""
        run_id = str(event.get("runId") or "-")
        text = json.dumps(event, separators=(",", ":"))

        buf = self.recent.get(run_id)
        if buf is None:
            buf = self.recent[run_id] = deque(maxlen=self.replay)
            while len(self.recent) > self.max_runs:
                self.recent.popitem(last=False)
        buf.append(text)

        targets = list(self.subscribers) + list(self.run_subscribers.get(run_id, ()))
        for q in targets:
            try:
                q.put_nowait(text)
            except asyncio.QueueFull:
                # slow consumer: cut it loose rather than block the run
                self.subscribers.discard(q)
                self.run_subscribers.get(run_id, set()).discard(q)
                LOGGER.warning("EventHub dropped a slow subscriber | run=%s", run_id)


class HubSink:
    def __init__(self, hub: EventHub):
        self.hub = hub

    def __call__(self, event: Event) -> None:
        self.hub.publish(event.to_dict())


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:8]
        token_r = req_id_var.set(rid)
        token_s = route_var.set(request.url.path or "-")
        token_c = client_var.set(
            f"{getattr(request.client, 'host', '?')}:{getattr(request.client, 'port', '?')}"
        )
        response = None
        try:
            response = await call_next(request)
        finally:
            if response is not None:
                response.headers["X-Request-ID"] = rid
            req_id_var.reset(token_r)
            route_var.reset(token_s)
            client_var.reset(token_c)
        return response


def _fail(status_code: int, error: str) -> JSONResponse:
    return JSONResponse({"success": False, "error": error}, status_code=status_code)


def create_app(
    config: Optional[Config] = None,
    client_factory: Optional[Callable[[], DirectoryClient]] = None,
) -> FastAPI:
    config = config or Config(logger=LOGGER.logger)
    client_factory = client_factory or DiscordDirectoryClient

    app = FastAPI(title=APP_TITLE, version=CURRENT_VERSION)
    hub = EventHub()
    registry = RunRegistry()
    started_at = time.monotonic()
    app.state.config = config
    app.state.hub = hub
    app.state.registry = registry

    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[config.CLIENT_URL] if config.CLIENT_URL else [],
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    @app.get("/")
    async def root():
        return {
            "status": "online",
            "message": "Discord Duplicator API",
            "timestamp": _now_iso(),
            "version": CURRENT_VERSION,
        }

    @app.get("/api/health")
    async def health():
        return {
            "success": True,
            "status": "healthy",
            "serverTime": _now_iso(),
            "uptime": round(time.monotonic() - started_at, 3),
            "activeProcesses": registry.active_count(),
        }

    @app.get("/api/ping")
    async def ping():
        return {"success": True, "message": "pong", "timestamp": int(time.time() * 1000)}

    @app.post("/api/duplicate")
    async def duplicate(payload: Optional[Dict[str, Any]] = Body(default=None)):
        payload = payload or {}
        token = str(payload.get("botToken") or "").strip()
        source_id = str(payload.get("sourceGuildId") or "").strip()
        target_id = str(payload.get("targetGuildId") or "").strip()
        if not token or not source_id or not target_id:
            LOGGER.info("POST /api/duplicate rejected | missing fields")
            return _fail(400, "Missing required fields")

        run = None
        register_secret(token)
        try:
            run_id = await registry.new_id()
            run = GuildDuplicator(
                token,
                source_id,
                target_id,
                client=client_factory(),
                sink=HubSink(hub),
                run_id=run_id,
                delays=config.delays(),
                login_timeout=config.LOGIN_TIMEOUT_SECONDS,
                min_token_length=config.MIN_TOKEN_LENGTH,
            )
            await registry.add(run)
            outcome = run.start()
            registry.track(run, outcome)
            # the outcome settles on cancel before teardown; hold the secret until the task ends
            run.task.add_done_callback(lambda _t: forget_secret(token))
        except Exception as e:
            if run is None or run.task is None:
                forget_secret(token)
            LOGGER.exception("POST /api/duplicate failed")
            return _fail(500, str(e))

        LOGGER.info(
            "Run %s started | source=%s target=%s", run_id, source_id, target_id,
            extra={"guild_id": target_id},
        )
        return {
            "success": True,
            "message": "Duplication process started",
            "processId": run_id,
        }

    @app.post("/api/cancel/{process_id}")
    async def cancel(process_id: str):
        try:
            found = await registry.cancel(process_id)
        except Exception as e:
            LOGGER.exception("POST /api/cancel failed")
            return _fail(500, str(e))
        if not found:
            return _fail(404, "Process not found")
        LOGGER.info("Run %s cancel requested", process_id)
        return {"success": True, "message": "Process cancelled"}

    @app.get("/api/runs/{process_id}")
    async def run_status(process_id: str):
        run = await registry.get(process_id)
        if run is None:
            return _fail(404, "Process not found")
        return {"success": True, "run": run.state.describe()}

    async def _pump(websocket: WebSocket, q: asyncio.Queue, stop_on_result: bool) -> int:
        sent = 0
        while True:
            text = await q.get()
            await websocket.send_text(text)
            sent += 1
            if stop_on_result and '"type":"result"' in text:
                return sent

    @app.websocket("/ws/runs/{process_id}")
    async def ws_run(websocket: WebSocket, process_id: str):
        await websocket.accept()
        _set_ws_context("/ws/runs", websocket, process_id)
        local_log = get_logger("duplicord.admin.ws", socket_id=id(websocket))

        if not hub.knows(process_id) and await registry.get(process_id) is None:
            local_log.info("Unknown run %s", process_id)
            await websocket.close(code=4404)
            return

        q = hub.subscribe(process_id)
        local_log.info("Subscriber attached to run %s", process_id)
        try:
            sent = await _pump(websocket, q, stop_on_result=True)
            local_log.debug("Run %s finished | events_sent=%d", process_id, sent)
            await websocket.close()
        except WebSocketDisconnect:
            local_log.info("Subscriber disconnected from run %s", process_id)
        except asyncio.CancelledError:
            local_log.debug("Connection cancelled (client closed)")
        finally:
            hub.unsubscribe(q, process_id)

    @app.websocket("/ws/out")
    async def ws_out(websocket: WebSocket):
        await websocket.accept()
        _set_ws_context("/ws/out", websocket)
        local_log = get_logger("duplicord.admin.ws", socket_id=id(websocket))
        q = hub.subscribe()
        local_log.info("Client connected")
        try:
            await _pump(websocket, q, stop_on_result=False)
        except WebSocketDisconnect:
            local_log.info("Client disconnected")
        except asyncio.CancelledError:
            local_log.debug("Connection cancelled (client closed)")
        finally:
            hub.unsubscribe(q)

    @app.on_event("startup")
    async def _banner():
        LOGGER.debug(
            "Starting %s %s | LOG_LEVEL=%s | LOG_FORMAT=%s | CLIENT_URL=%s",
            APP_TITLE,
            CURRENT_VERSION,
            config.LOG_LEVEL,
            config.LOG_FORMAT,
            config.CLIENT_URL,
        )

    @app.on_event("shutdown")
    async def on_shutdown():
        LOGGER.info("Shutdown initiated")
        n = await registry.cancel_all()
        LOGGER.info("Shutdown complete | cancelled_runs=%d", n)

    return app


app = create_app()
