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
from typing import Dict, List, Optional

import aiohttp
import discord
from discord import ChannelType
from discord.errors import HTTPException, NotFound, Forbidden

from duplicord.server.directory import (
    ChannelInfo,
    ChannelKind,
    DirectoryClient,
    GuildInfo,
    RoleInfo,
)
from duplicord.server.snapshot import CategorySnapshot, ChannelSnapshot, RoleSnapshot

logger = logging.getLogger("duplicord.server.discord_client")

AUDIT_REASON = "Duplicated from source server"
DEFAULT_VOICE_BITRATE = 64000

_KIND_MAP = {
    ChannelType.text: ChannelKind.TEXT,
    ChannelType.voice: ChannelKind.VOICE,
    ChannelType.category: ChannelKind.CATEGORY,
}


def normalize_token(token: str) -> str:
    token = (token or "").strip()
    if token.lower().startswith("bot "):
        token = token[4:].strip()
    return token


class DiscordDirectoryClient(DirectoryClient):
    """
    REST-only py-cord client: `login()` validates the token and loads the
    bot user, no gateway session is opened. Library objects are cached by id
    so later delete/create calls can reuse them.
    """

    def __init__(self, client: Optional[discord.Client] = None):
        self._client = client
        self._guilds: Dict[str, discord.Guild] = {}
        self._members: Dict[str, discord.Member] = {}
        self._channels: Dict[str, discord.abc.GuildChannel] = {}
        self._roles: Dict[str, discord.Role] = {}

    @property
    def client(self) -> discord.Client:
        if self._client is None:
            self._client = discord.Client(intents=discord.Intents.none())
        return self._client

    # ---------- session ----------
    def _bind_loop(self) -> None:
        # the library captures the current loop at construction and schedules
        # bucket releases on it; they must land on the loop running the requests
        loop = asyncio.get_running_loop()
        client = self.client
        client.loop = loop
        client.http.loop = loop
        client._connection.loop = loop

    async def login(self, token: str) -> str:
        self._bind_loop()
        try:
            await self.client.login(normalize_token(token))
        except aiohttp.ClientError as e:
            raise ConnectionError(f"Could not reach Discord: {e}") from e
        user = self.client.user
        return str(user) if user else "unknown user"

    async def close(self) -> None:
        self._guilds.clear()
        self._members.clear()
        self._channels.clear()
        self._roles.clear()
        if self._client is not None and not self._client.is_closed():
            await self._client.close()

    # ---------- lookups ----------
    def _guild(self, guild_id: str) -> discord.Guild:
        g = self._guilds.get(str(guild_id))
        if g is None:
            raise LookupError(f"guild {guild_id} was not fetched")
        return g

    async def fetch_guild(self, guild_id: str) -> Optional[GuildInfo]:
        try:
            g = await self.client.fetch_guild(int(guild_id))
        except (NotFound, Forbidden, ValueError) as e:
            logger.debug("fetch_guild(%s) failed: %s", guild_id, e)
            return None
        self._guilds[str(g.id)] = g
        return GuildInfo(
            id=str(g.id),
            name=g.name,
            description=g.description,
            max_bitrate=int(g.bitrate_limit),
        )

    async def _me(self, guild_id: str) -> Optional[discord.Member]:
        key = str(guild_id)
        if key in self._members:
            return self._members[key]
        g = self._guild(key)
        user = self.client.user
        if user is None:
            return None
        try:
            me = await g.fetch_member(user.id)
        except (NotFound, Forbidden):
            return None
        self._members[key] = me
        return me

    async def bot_is_admin(self, guild_id: str) -> Optional[bool]:
        me = await self._me(guild_id)
        if me is None:
            return None
        return bool(me.guild_permissions.administrator)

    async def fetch_channels(self, guild_id: str) -> List[ChannelInfo]:
        g = self._guild(guild_id)
        out: List[ChannelInfo] = []
        for ch in await g.fetch_channels():
            self._channels[str(ch.id)] = ch
            kind = _KIND_MAP.get(ch.type, ChannelKind.OTHER)
            parent_id = getattr(ch, "category_id", None)
            out.append(
                ChannelInfo(
                    id=str(ch.id),
                    name=ch.name,
                    kind=kind,
                    position=ch.position,
                    parent_id=str(parent_id) if parent_id else None,
                    bitrate=getattr(ch, "bitrate", None) if kind is ChannelKind.VOICE else None,
                    user_limit=getattr(ch, "user_limit", None) if kind is ChannelKind.VOICE else None,
                )
            )
        return out

    async def fetch_roles(self, guild_id: str) -> List[RoleInfo]:
        g = self._guild(guild_id)
        me = await self._me(guild_id)
        bot_top = me.top_role.position if me and me.top_role else 0
        out: List[RoleInfo] = []
        for r in await g.fetch_roles():
            self._roles[str(r.id)] = r
            out.append(
                RoleInfo(
                    id=str(r.id),
                    name=r.name,
                    color=r.colour.value,
                    permissions=r.permissions.value,
                    position=r.position,
                    hoist=r.hoist,
                    mentionable=r.mentionable,
                    managed=r.managed,
                    is_default=r.is_default(),
                    editable=r.position < bot_top,
                )
            )
        return out

    # ---------- mutations ----------
    async def delete_channel(self, guild_id: str, channel_id: str) -> None:
        ch = self._channels.pop(str(channel_id), None)
        if ch is None:
            raise LookupError(f"channel {channel_id} is unknown")
        await ch.delete(reason=AUDIT_REASON)

    async def delete_role(self, guild_id: str, role_id: str) -> None:
        r = self._roles.pop(str(role_id), None)
        if r is None:
            raise LookupError(f"role {role_id} is unknown")
        await r.delete(reason=AUDIT_REASON)

    async def create_role(self, guild_id: str, role: RoleSnapshot) -> str:
        g = self._guild(guild_id)
        kwargs = dict(
            name=role.name,
            permissions=discord.Permissions(role.permissions),
            hoist=role.hoist,
            mentionable=role.mentionable,
            reason=AUDIT_REASON,
        )
        if role.color:
            kwargs["colour"] = discord.Colour(role.color)
        created = await g.create_role(**kwargs)
        self._roles[str(created.id)] = created
        return str(created.id)

    async def create_category(self, guild_id: str, category: CategorySnapshot) -> str:
        g = self._guild(guild_id)
        created = await g.create_category(
            category.name, position=category.position, reason=AUDIT_REASON
        )
        self._channels[str(created.id)] = created
        return str(created.id)

    async def create_channel(
        self,
        guild_id: str,
        channel: ChannelSnapshot,
        parent_id: Optional[str],
    ) -> str:
        g = self._guild(guild_id)
        parent = self._channels.get(str(parent_id)) if parent_id else None
        if parent is not None and not isinstance(parent, discord.CategoryChannel):
            parent = None

        if channel.kind is ChannelKind.VOICE:
            bitrate = min(channel.bitrate or DEFAULT_VOICE_BITRATE, int(g.bitrate_limit))
            created = await g.create_voice_channel(
                channel.name,
                category=parent,
                position=channel.position,
                bitrate=bitrate,
                user_limit=channel.user_limit or 0,
                reason=AUDIT_REASON,
            )
        else:
            created = await g.create_text_channel(
                channel.name,
                category=parent,
                position=channel.position,
                reason=AUDIT_REASON,
            )
        self._channels[str(created.id)] = created
        return str(created.id)

    async def edit_guild(
        self, guild_id: str, *, name: str, description: Optional[str] = None
    ) -> None:
        g = self._guild(guild_id)
        await g.edit(name=name, reason=AUDIT_REASON)
        if description:
            try:
                await g.edit(description=description, reason=AUDIT_REASON)
            except HTTPException as e:
                # description is only accepted on community guilds
                raise RuntimeError(f"name updated, description rejected: {e.text or e}") from e
