# =============================================================================
#  Duplicord
#  Copyright (C) 2025 github.com/Duplicord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

"""
Immutable in-memory copy of a source guild's structure.

Channels refer to their category by name, not id: ids mean nothing on the
destination, and the workflow remaps names to freshly created categories.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from duplicord.server.directory import ChannelInfo, ChannelKind, RoleInfo


@dataclass(frozen=True)
class ServerSettings:
    name: str
    description: Optional[str] = None


@dataclass(frozen=True)
class BackupInfo:
    timestamp: str
    source_server_id: str
    source_server_name: str
    bot_user: str = ""


@dataclass(frozen=True)
class CategorySnapshot:
    name: str
    position: int = 0

    @classmethod
    def from_info(cls, ch: ChannelInfo) -> "CategorySnapshot":
        return cls(name=ch.name, position=ch.position)


@dataclass(frozen=True)
class ChannelSnapshot:
    name: str
    kind: ChannelKind
    position: int = 0
    category_name: Optional[str] = None
    bitrate: Optional[int] = None  # voice only
    user_limit: Optional[int] = None  # voice only

    @classmethod
    def from_info(
        cls, ch: ChannelInfo, category_name: Optional[str]
    ) -> "ChannelSnapshot":
        if ch.kind is ChannelKind.VOICE:
            return cls(
                name=ch.name,
                kind=ChannelKind.VOICE,
                position=ch.position,
                category_name=category_name,
                bitrate=ch.bitrate,
                user_limit=ch.user_limit,
            )
        return cls(
            name=ch.name,
            kind=ChannelKind.TEXT,
            position=ch.position,
            category_name=category_name,
        )


@dataclass(frozen=True)
class RoleSnapshot:
    name: str
    color: int = 0
    permissions: int = 0
    position: int = 0
    hoist: bool = False
    mentionable: bool = False

    @classmethod
    def from_info(cls, r: RoleInfo) -> "RoleSnapshot":
        return cls(
            name=r.name,
            color=r.color,
            permissions=r.permissions,
            position=r.position,
            hoist=r.hoist,
            mentionable=r.mentionable,
        )

    @property
    def hex_color(self) -> str:
        return f"#{self.color:06x}"


def is_copyable_role(r: RoleInfo) -> bool:
    return not r.is_default and not r.managed


@dataclass(frozen=True)
class Snapshot:
    server_settings: ServerSettings
    categories: Tuple[CategorySnapshot, ...] = ()
    channels: Tuple[ChannelSnapshot, ...] = ()
    roles: Tuple[RoleSnapshot, ...] = ()
    backup_info: Optional[BackupInfo] = None

    def summary(self) -> str:
        return (
            f"{len(self.categories)} categories, "
            f"{len(self.channels)} channels, "
            f"{len(self.roles)} roles"
        )

    # ---------- serialization ----------
    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "server_settings": {
                "name": self.server_settings.name,
                "description": self.server_settings.description,
            },
            "categories": [
                {"name": c.name, "position": c.position} for c in self.categories
            ],
            "channels": [],
            "roles": [
                {
                    "name": r.name,
                    "color": r.hex_color,
                    # string keeps 64-bit permission sets exact in JSON consumers
                    "permissions": str(r.permissions),
                    "position": r.position,
                    "hoist": r.hoist,
                    "mentionable": r.mentionable,
                }
                for r in self.roles
            ],
        }
        for ch in self.channels:
            row: Dict[str, Any] = {
                "name": ch.name,
                "type": ch.kind.value,
                "position": ch.position,
                "category": ch.category_name,
            }
            if ch.kind is ChannelKind.VOICE:
                row["bitrate"] = ch.bitrate
                row["user_limit"] = ch.user_limit
            out["channels"].append(row)
        if self.backup_info:
            out["backup_info"] = {
                "timestamp": self.backup_info.timestamp,
                "source_server_id": self.backup_info.source_server_id,
                "source_server_name": self.backup_info.source_server_name,
                "bot_user": self.backup_info.bot_user,
            }
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Snapshot":
        def _color(v) -> int:
            if v is None:
                return 0
            if isinstance(v, int):
                return v
            s = str(v).strip().lstrip("#")
            if len(s) == 3:
                s = "".join(c * 2 for c in s)
            return int(s or "0", 16)

        settings = data.get("server_settings") or {}
        info = data.get("backup_info")
        return cls(
            server_settings=ServerSettings(
                name=settings.get("name", ""),
                description=settings.get("description") or None,
            ),
            categories=tuple(
                CategorySnapshot(name=c["name"], position=int(c.get("position", 0)))
                for c in data.get("categories", [])
            ),
            channels=tuple(
                ChannelSnapshot(
                    name=c["name"],
                    kind=ChannelKind(c.get("type", "text")),
                    position=int(c.get("position", 0)),
                    category_name=c.get("category"),
                    bitrate=c.get("bitrate"),
                    user_limit=c.get("user_limit"),
                )
                for c in data.get("channels", [])
            ),
            roles=tuple(
                RoleSnapshot(
                    name=r["name"],
                    color=_color(r.get("color")),
                    permissions=int(str(r.get("permissions", "0"))),
                    position=int(r.get("position", 0)),
                    hoist=bool(r.get("hoist", False)),
                    mentionable=bool(r.get("mentionable", False)),
                )
                for r in data.get("roles", [])
            ),
            backup_info=BackupInfo(**info) if info else None,
        )


@dataclass
class SnapshotBuilder:
    """Accumulates items during the backup phase; `build()` freezes them."""

    server_settings: ServerSettings
    backup_info: Optional[BackupInfo] = None
    categories: list = field(default_factory=list)
    channels: list = field(default_factory=list)
    roles: list = field(default_factory=list)

    @classmethod
    def start(
        cls,
        guild_id: str,
        name: str,
        description: Optional[str],
        bot_user: str = "",
    ) -> "SnapshotBuilder":
        return cls(
            server_settings=ServerSettings(name=name, description=description or None),
            backup_info=BackupInfo(
                timestamp=datetime.now(timezone.utc).isoformat(),
                source_server_id=str(guild_id),
                source_server_name=name,
                bot_user=bot_user,
            ),
        )

    def build(self) -> Snapshot:
        return Snapshot(
            server_settings=self.server_settings,
            categories=tuple(self.categories),
            channels=tuple(self.channels),
            roles=tuple(self.roles),
            backup_info=self.backup_info,
        )
