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
import uuid
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Set, Tuple, TypeVar

from duplicord.common.events import EventSink
from duplicord.common.rate_limiter import ActionType, RateLimitManager
from duplicord.server import discord_hooks
from duplicord.server.directory import (
    ChannelInfo,
    ChannelKind,
    DirectoryClient,
    GuildInfo,
    RoleInfo,
)
from duplicord.server.errors import (
    AuthFailed,
    AuthTimeout,
    Cancelled,
    DuplicationError,
    InsufficientPermissions,
    InvalidInput,
    ItemOperationFailed,
    SameServer,
    ServerNotFound,
    Unexpected,
)
from duplicord.server.run import RunPhase, RunResult, RunState
from duplicord.server.snapshot import (
    CategorySnapshot,
    ChannelSnapshot,
    RoleSnapshot,
    Snapshot,
    SnapshotBuilder,
    is_copyable_role,
)

logger = logging.getLogger("duplicord.server.duplicator")

T = TypeVar("T")

DEFAULT_LOGIN_TIMEOUT = 30.0
DEFAULT_MIN_TOKEN_LENGTH = 10


class GuildDuplicator:
    """
    Copies the structure of one guild onto another, wiping the target first.

    The whole workflow runs as a single asyncio task; `start()` returns the
    future that carries its outcome (a RunResult, or a DuplicationError).
    Cancellation is cooperative: the flag is checked at the top of every
    phase and every item, and the pause after each mutating call ends as
    soon as it is set. A cancelled or failed run leaves the target partially
    modified; nothing is rolled back.
    """

    def __init__(
        self,
        token: str,
        source_guild_id: str,
        target_guild_id: str,
        *,
        client: DirectoryClient,
        sink: Optional[EventSink] = None,
        run_id: Optional[str] = None,
        delays: Optional[Dict[ActionType, float]] = None,
        login_timeout: float = DEFAULT_LOGIN_TIMEOUT,
        min_token_length: int = DEFAULT_MIN_TOKEN_LENGTH,
    ):
        self.token = (token or "").strip()
        self.source_guild_id = str(source_guild_id or "").strip()
        self.target_guild_id = str(target_guild_id or "").strip()
        self.client = client
        self.run_id = run_id or uuid.uuid4().hex[:12]
        self.state = RunState(self.run_id, sink)
        self.ratelimit = RateLimitManager(delays)
        self.login_timeout = login_timeout
        self.min_token_length = min_token_length
        self.snapshot: Optional[Snapshot] = None
        self._task: Optional[asyncio.Task] = None
        self._outcome: Optional[asyncio.Future] = None
        self._started_at: Optional[float] = None
        self._connected = False
        self._target_channel_ids: Set[str] = set()

    # ---------- public contract ----------
    def start(self) -> asyncio.Future:
        """Schedule the workflow; must be called from a running event loop."""
        if self._outcome is not None:
            return self._outcome
        loop = asyncio.get_running_loop()
        self._outcome = loop.create_future()
        # failures are already in the run log; don't warn about unread ones
        self._outcome.add_done_callback(lambda f: f.cancelled() or f.exception())
        self._started_at = time.monotonic()
        self._task = loop.create_task(self._run(), name=f"duplicate:{self.run_id}")
        return self._outcome

    @property
    def outcome(self) -> Optional[asyncio.Future]:
        return self._outcome

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    @property
    def finished(self) -> bool:
        return self.state.phase.terminal

    def cancel(self) -> bool:
        """
        Idempotent. Sets the cancellation flag and resolves a pending outcome
        to Cancelled; the running task stops at its next checkpoint and tears
        the connection down on the way out. No-op once the run has ended.
        """
        if self.finished or (self._outcome is not None and self._outcome.done()):
            return False
        if not self.state.request_cancel():
            return False
        self.state.warn("Process cancelled by user")
        self._reject(Cancelled())
        return True

    # ---------- outcome plumbing ----------
    def _elapsed(self) -> float:
        if self._started_at is None:
            return 0.0
        return time.monotonic() - self._started_at

    def _resolve(self, result: RunResult) -> None:
        if self._outcome is not None and not self._outcome.done():
            self._outcome.set_result(result)

    def _reject(self, error: DuplicationError) -> None:
        if self._outcome is not None and not self._outcome.done():
            self._outcome.set_exception(error)

    async def _run(self) -> None:
        st = self.state
        error: Optional[DuplicationError] = None
        discord_hooks.watch(self._on_rate_limited, owns=self._owns_bucket)
        try:
            await self._workflow()
            if not st.cancelled:
                st.log("Duplication completed successfully")
                st.enter(RunPhase.COMPLETED)
                st.log(f"Total process time: {round(self._elapsed())} seconds")
                if st.item_failures:
                    st.warn(f"{st.item_failures} item(s) could not be processed; see warnings above")
        except asyncio.CancelledError:
            st.request_cancel()
            raise
        except DuplicationError as e:
            error = e
        except Exception as e:
            logger.exception("[%s] Unexpected error in duplication workflow", self.run_id)
            error = Unexpected(str(e) or e.__class__.__name__)
            error.__cause__ = e
        finally:
            discord_hooks.unwatch(self._on_rate_limited)
            await self._teardown()
            self._conclude(error)

    def _conclude(self, error: Optional[DuplicationError]) -> None:
        st = self.state
        duration = self._elapsed()
        if st.cancelled:
            st.enter(RunPhase.CANCELLED)
            st.finish(False, duration, reason=Cancelled.reason, error="Process cancelled by user")
            self._reject(Cancelled())
        elif error is not None:
            st.error(f"Duplication failed: {error.message}")
            st.enter(RunPhase.FAILED)
            st.finish(False, duration, reason=error.reason, error=error.message)
            self._reject(error)
        else:
            st.finish(True, duration)
            self._resolve(
                RunResult(
                    run_id=self.run_id,
                    duration=duration,
                    logs=list(st.logs),
                    item_failures=st.item_failures,
                )
            )

    async def _teardown(self) -> None:
        if not self._connected:
            return
        self._connected = False
        try:
            await self.client.close()
            self.state.log("Discord client disconnected")
        except Exception as e:
            self.state.warn(f"Error during disconnect: {e}")

    def _owns_bucket(self, channel_id: Optional[str], guild_id: Optional[str]) -> bool:
        if guild_id is not None:
            return guild_id in (self.source_guild_id, self.target_guild_id)
        return channel_id in self._target_channel_ids

    def _on_rate_limited(self, retry_after: float, bucket: str) -> None:
        actions = discord_hooks.actions_for_bucket(bucket) or (None,)
        for action in actions:
            self.ratelimit.penalize(action, retry_after)
        self.state.warn(f"Rate limited: {int(retry_after * 1000)}ms timeout")

    # ---------- phases ----------
    async def _workflow(self) -> None:
        st = self.state
        if st.cancelled:
            return
        st.enter(RunPhase.VALIDATING)
        st.log("Starting duplication process...")
        self._validate()

        if st.cancelled:
            return
        st.enter(RunPhase.CONNECTING)
        st.log("Connecting to Discord API...")
        user = await self._connect()

        if st.cancelled:
            return
        source, target = await self._locate()

        if st.cancelled:
            return
        st.enter(RunPhase.WIPING)
        await self._wipe(target)

        if st.cancelled:
            return
        st.enter(RunPhase.BACKING_UP)
        snapshot = await self._backup(source, user)

        if st.cancelled or snapshot is None:
            return
        st.enter(RunPhase.DUPLICATING)
        await self._duplicate(target, snapshot)

        if st.cancelled:
            return
        st.enter(RunPhase.FINALIZING)

    def _validate(self) -> None:
        if not self.token or len(self.token) < self.min_token_length:
            raise InvalidInput("Invalid bot token provided")
        if not self.source_guild_id or not self.target_guild_id:
            raise InvalidInput("Guild IDs are required")

    async def _connect(self) -> str:
        st = self.state
        t0 = time.monotonic()
        self._connected = True
        login = asyncio.ensure_future(self.client.login(self.token))
        stop = asyncio.ensure_future(st.cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {login, stop},
                timeout=self.login_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            stop.cancel()

        if login not in done:
            login.cancel()
            await asyncio.gather(login, return_exceptions=True)
            if st.cancelled:
                return ""
            raise AuthTimeout(f"Discord login timeout ({self.login_timeout:g} seconds)")

        try:
            user = login.result()
        except Exception as e:
            raise AuthFailed(f"Connection failed: {e}") from e

        st.log(f"Logged in as {user} ({int((time.monotonic() - t0) * 1000)}ms)")
        return user

    async def _resolve_guild(self, which: str, guild_id: str) -> GuildInfo:
        try:
            guild = await self.client.fetch_guild(guild_id)
        except Exception:
            logger.debug("[%s] fetch_guild(%s) failed", self.run_id, guild_id, exc_info=True)
            guild = None
        if guild is None:
            raise ServerNotFound(which, guild_id)
        return guild

    async def _locate(self) -> Tuple[GuildInfo, GuildInfo]:
        st = self.state
        st.enter(RunPhase.LOCATING)
        st.log("Fetching server information...")

        source = await self._resolve_guild("source", self.source_guild_id)
        target = await self._resolve_guild("target", self.target_guild_id)
        st.log(f"Source server: {source.name} ({source.id})")
        st.log(f"Target server: {target.name} ({target.id})")

        if source.id == target.id:
            raise SameServer()

        try:
            admin = await self.client.bot_is_admin(target.id)
        except Exception:
            logger.debug("[%s] member lookup failed", self.run_id, exc_info=True)
            admin = None
        if admin is None:
            raise InsufficientPermissions("Bot is not a member of the target server")
        if not admin:
            raise InsufficientPermissions("Bot needs administrator permissions in target server")
        return source, target

    async def _each(
        self,
        items: Sequence[T],
        *,
        verb: str,
        kind: str,
        name: Callable[[T], str],
        op: Callable[[T], Awaitable[object]],
        action: ActionType,
    ) -> bool:
        """
        Run one mutating call per item, fault-tolerant per item, pausing after
        each call. Returns False when the loop stopped on cancellation.
        """
        st = self.state
        gerund = {"delete": "Deleting", "create": "Creating"}[verb]
        st.begin_items(len(items))
        for i, item in enumerate(items, start=1):
            if st.cancelled:
                return False
            label = f"{gerund} {kind}: {name(item)}"
            st.advance(i, label)
            st.log(label)
            try:
                await op(item)
            except Exception as e:
                st.item_failed(ItemOperationFailed(verb, kind, name(item), e).message)
            await self.ratelimit.pause(action, st.cancel_event)
        return not st.cancelled

    def _collect(
        self,
        items: Sequence[T],
        *,
        kind: str,
        name: Callable[[T], str],
        into: List,
        convert: Callable[[T], object],
    ) -> bool:
        st = self.state
        st.begin_items(len(items))
        for i, item in enumerate(items, start=1):
            if st.cancelled:
                return False
            st.advance(i, f"Backing up {kind}: {name(item)}")
            into.append(convert(item))
        return True

    async def _wipe(self, target: GuildInfo) -> None:
        st = self.state
        st.log(f"Starting to wipe target server: {target.name}")

        channels = await self.client.fetch_channels(target.id)
        roles = await self.client.fetch_roles(target.id)
        st.log(f"Found {len(channels)} channels and {len(roles)} roles to process")
        self._target_channel_ids.update(c.id for c in channels)

        # non-empty categories can't be removed on some backends: children first
        plain = [c for c in channels if c.kind is not ChannelKind.CATEGORY]
        categories = [c for c in channels if c.kind is ChannelKind.CATEGORY]
        deletable = [
            r for r in roles if not r.is_default and not r.managed and r.editable
        ]

        async def drop_channel(ch: ChannelInfo):
            await self.client.delete_channel(target.id, ch.id)

        async def drop_role(role: RoleInfo):
            await self.client.delete_role(target.id, role.id)

        if not await self._each(
            plain, verb="delete", kind="channel", name=lambda c: c.name,
            op=drop_channel, action=ActionType.DELETE_CHANNEL,
        ):
            return
        if not await self._each(
            categories, verb="delete", kind="category", name=lambda c: c.name,
            op=drop_channel, action=ActionType.DELETE_CHANNEL,
        ):
            return
        if not await self._each(
            deletable, verb="delete", kind="role", name=lambda r: r.name,
            op=drop_role, action=ActionType.DELETE_ROLE,
        ):
            return
        st.log("Target server wipe complete")

    async def _backup(self, source: GuildInfo, bot_user: str) -> Optional[Snapshot]:
        st = self.state
        st.log(f"Starting backup of source server: {source.name}")

        channels = await self.client.fetch_channels(source.id)
        roles = await self.client.fetch_roles(source.id)
        by_id = {c.id: c for c in channels}

        def parent_name(ch: ChannelInfo) -> Optional[str]:
            parent = by_id.get(ch.parent_id) if ch.parent_id else None
            return parent.name if parent else None

        def of_kind(kind: ChannelKind) -> List[ChannelInfo]:
            return sorted((c for c in channels if c.kind is kind), key=lambda c: c.position)

        builder = SnapshotBuilder.start(source.id, source.name, source.description, bot_user)
        steps = (
            ("category", of_kind(ChannelKind.CATEGORY), builder.categories,
             CategorySnapshot.from_info),
            ("text channel", of_kind(ChannelKind.TEXT), builder.channels,
             lambda c: ChannelSnapshot.from_info(c, parent_name(c))),
            ("voice channel", of_kind(ChannelKind.VOICE), builder.channels,
             lambda c: ChannelSnapshot.from_info(c, parent_name(c))),
            # highest-precedence role first
            ("role", sorted((r for r in roles if is_copyable_role(r)),
                            key=lambda r: r.position, reverse=True),
             builder.roles, RoleSnapshot.from_info),
        )
        for kind, items, into, convert in steps:
            if not self._collect(items, kind=kind, name=lambda x: x.name, into=into, convert=convert):
                return None

        snapshot = builder.build()
        self.snapshot = snapshot
        st.log(f"Backup complete: {snapshot.summary()}")
        return snapshot

    async def _duplicate(self, target: GuildInfo, snapshot: Snapshot) -> None:
        st = self.state
        st.log(f"Starting duplication to target server: {target.name}")

        # name -> new handle; duplicate names: the last one created wins
        role_map: Dict[str, str] = {}
        category_map: Dict[str, str] = {}

        async def make_role(role: RoleSnapshot):
            role_map[role.name] = await self.client.create_role(target.id, role)

        async def make_category(cat: CategorySnapshot):
            category_map[cat.name] = await self.client.create_category(target.id, cat)

        async def make_channel(ch: ChannelSnapshot):
            parent = category_map.get(ch.category_name) if ch.category_name else None
            await self.client.create_channel(target.id, ch, parent)

        if not await self._each(
            snapshot.roles, verb="create", kind="role", name=lambda r: r.name,
            op=make_role, action=ActionType.CREATE_ROLE,
        ):
            return
        if not await self._each(
            snapshot.categories, verb="create", kind="category", name=lambda c: c.name,
            op=make_category, action=ActionType.CREATE_CHANNEL,
        ):
            return
        channels = sorted(snapshot.channels, key=lambda c: c.position)
        if not await self._each(
            channels, verb="create", kind="channel",
            name=lambda c: f"{c.name} ({c.kind.value})",
            op=make_channel, action=ActionType.CREATE_CHANNEL,
        ):
            return
        st.log(
            f"Created {len(role_map)} roles and {len(category_map)} categories on target"
        )

        if st.cancelled:
            return
        settings = snapshot.server_settings
        try:
            st.log("Updating server settings...")
            await self.client.edit_guild(
                target.id, name=settings.name, description=settings.description
            )
            st.log("Server settings updated successfully")
        except Exception as e:
            st.item_failed(f"Could not update server settings: {e}")
        await self.ratelimit.pause(ActionType.EDIT_GUILD, st.cancel_event)

        st.log("Duplication to target server complete")
