# =============================================================================
#  Duplicord
#  Copyright (C) 2025 github.com/Duplicord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

"""
The remote directory capability consumed by the duplication workflow.

Implementations translate plain records to and from the remote API, so the
workflow never handles library objects. Handles returned by the create
calls are opaque ids valid for the lifetime of the client.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from duplicord.server.snapshot import CategorySnapshot, ChannelSnapshot, RoleSnapshot


class ChannelKind(str, Enum):
    TEXT = "text"
    VOICE = "voice"
    CATEGORY = "category"
    OTHER = "other"  # announcement, stage, forum, ... (deleted on wipe, never copied)


@dataclass(frozen=True)
class GuildInfo:
    id: str
    name: str
    description: Optional[str] = None
    max_bitrate: int = 96000


@dataclass(frozen=True)
class ChannelInfo:
    id: str
    name: str
    kind: ChannelKind
    position: int = 0
    parent_id: Optional[str] = None
    bitrate: Optional[int] = None
    user_limit: Optional[int] = None


@dataclass(frozen=True)
class RoleInfo:
    id: str
    name: str
    color: int = 0
    permissions: int = 0
    position: int = 0
    hoist: bool = False
    mentionable: bool = False
    managed: bool = False
    is_default: bool = False
    editable: bool = True  # below the bot's own highest role


class DirectoryClient(ABC):
    """One instance per run; `close()` tears the connection down."""

    @abstractmethod
    async def login(self, token: str) -> str:
        """Authenticate. Returns a label for the logged-in principal."""

    @abstractmethod
    async def fetch_guild(self, guild_id: str) -> Optional[GuildInfo]:
        """Resolve a guild id; None when it does not exist or is not visible."""

    @abstractmethod
    async def bot_is_admin(self, guild_id: str) -> Optional[bool]:
        """Administrator check for the principal. None when it is not a member."""

    @abstractmethod
    async def fetch_channels(self, guild_id: str) -> List[ChannelInfo]:
        ...

    @abstractmethod
    async def fetch_roles(self, guild_id: str) -> List[RoleInfo]:
        ...

    @abstractmethod
    async def delete_channel(self, guild_id: str, channel_id: str) -> None:
        ...

    @abstractmethod
    async def delete_role(self, guild_id: str, role_id: str) -> None:
        ...

    @abstractmethod
    async def create_role(self, guild_id: str, role: "RoleSnapshot") -> str:
        ...

    @abstractmethod
    async def create_category(self, guild_id: str, category: "CategorySnapshot") -> str:
        ...

    @abstractmethod
    async def create_channel(
        self,
        guild_id: str,
        channel: "ChannelSnapshot",
        parent_id: Optional[str],
    ) -> str:
        ...

    @abstractmethod
    async def edit_guild(
        self, guild_id: str, *, name: str, description: Optional[str] = None
    ) -> None:
        """Apply server-level settings; description is left alone when None."""

    @abstractmethod
    async def close(self) -> None:
        ...
