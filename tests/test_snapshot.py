from duplicord.server.directory import ChannelKind
from duplicord.server.snapshot import (
    CategorySnapshot,
    ChannelSnapshot,
    RoleSnapshot,
    ServerSettings,
    Snapshot,
    SnapshotBuilder,
    is_copyable_role,
)

from fakes import everyone, role, text, voice


def _snapshot():
    builder = SnapshotBuilder.start("100", "Source", "desc", "Duplicator#0001")
    builder.categories.append(CategorySnapshot("General", 0))
    builder.channels.append(ChannelSnapshot.from_info(text("t", "chat", 0, parent="c"), "General"))
    builder.channels.append(
        ChannelSnapshot.from_info(voice("v", "Lounge", 1, bitrate=96000, user_limit=5), None)
    )
    builder.roles.append(
        RoleSnapshot.from_info(role("r", "Mod", 2, permissions=1 << 40, color=0x3498DB))
    )
    return builder.build()


def test_builder_freezes_lists_into_tuples():
    snap = _snapshot()
    assert isinstance(snap.channels, tuple)
    assert snap.summary() == "1 categories, 2 channels, 1 roles"
    assert snap.backup_info.source_server_name == "Source"
    assert snap.backup_info.bot_user == "Duplicator#0001"


def test_text_channels_drop_voice_attributes():
    ch = ChannelSnapshot.from_info(text("t", "chat"), None)
    assert ch.kind is ChannelKind.TEXT
    assert ch.bitrate is None and ch.user_limit is None


def test_to_dict_wire_shape():
    data = _snapshot().to_dict()
    assert data["server_settings"] == {"name": "Source", "description": "desc"}
    assert data["channels"][0] == {
        "name": "chat", "type": "text", "position": 0, "category": "General",
    }
    assert data["channels"][1]["bitrate"] == 96000
    assert data["channels"][1]["user_limit"] == 5
    mod = data["roles"][0]
    assert mod["permissions"] == str(1 << 40)
    assert mod["color"] == "#3498db"
    assert data["backup_info"]["source_server_id"] == "100"


def test_from_dict_restores_the_same_snapshot():
    snap = _snapshot()
    assert Snapshot.from_dict(snap.to_dict()) == snap


def test_from_dict_accepts_short_hex_and_missing_fields():
    snap = Snapshot.from_dict(
        {
            "server_settings": {"name": "X"},
            "roles": [{"name": "Red", "color": "#f00", "permissions": "8"}],
        }
    )
    assert snap.server_settings == ServerSettings("X", None)
    assert snap.roles[0].color == 0xFF0000
    assert snap.roles[0].permissions == 8
    assert snap.channels == () and snap.backup_info is None


def test_default_and_managed_roles_are_not_copyable():
    assert not is_copyable_role(everyone("1"))
    assert not is_copyable_role(role("2", "Bot", managed=True))
    assert is_copyable_role(role("3", "Mod"))
