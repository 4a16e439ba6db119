import asyncio
import logging

import pytest

from duplicord.common.events import ItemProgressEvent, LogEvent, PhaseEvent, ResultEvent
from duplicord.common.rate_limiter import ActionType
from duplicord.server import discord_hooks
from duplicord.server.duplicator import GuildDuplicator
from duplicord.server.errors import (
    AuthFailed,
    AuthTimeout,
    Cancelled,
    InsufficientPermissions,
    InvalidInput,
    SameServer,
    ServerNotFound,
)
from duplicord.server.run import RunPhase, RunResult

from fakes import (
    NO_DELAYS,
    TOKEN,
    FakeDirectoryClient,
    category,
    everyone,
    role,
    run_duplication,
    standard_world,
    text,
)


def _messages(dup):
    return [e.message for e in dup.state.logs]


# ---------- happy path ----------
def test_full_run_wipes_then_recreates_in_order(world):
    dup, result = run_duplication(world)

    assert isinstance(result, RunResult)
    assert result.item_failures == 0
    assert dup.state.phase is RunPhase.COMPLETED
    assert [c[0] for c in world.mutations()] == [
        "delete_channel", "delete_channel",
        "delete_channel",
        "delete_role",
        "create_role", "create_role",
        "create_category",
        "create_channel", "create_channel", "create_channel",
        "edit_guild",
    ]
    # channels before categories, roles last
    assert [c[2] for c in world.mutations()[:4]] == ["old-chat", "old-voice", "Old", "Old Role"]
    assert world.mutations("edit_guild") == [
        ("edit_guild", "200", "Source", "Where it all started")
    ]
    assert world.calls[-1] == ("close",)


def test_wipe_skips_default_managed_and_unreachable_roles(world):
    run_duplication(world)
    deleted = [c[2] for c in world.mutations("delete_role")]
    assert deleted == ["Old Role"]
    remaining = {r.name for r in world.roles["200"]}
    assert remaining == {"@everyone", "Integration", "Above Bot"}


def test_snapshot_counts_match_source(world):
    dup, _ = run_duplication(world)
    snap = dup.snapshot
    # 2 text + 1 voice, 1 category, 2 non-default non-managed roles
    assert len(snap.channels) == 3
    assert len(snap.categories) == 1
    assert len(snap.roles) == 2
    assert [r.name for r in snap.roles] == ["Mod", "Member"]
    assert [c.name for c in snap.channels] == ["chat", "rules", "Lounge"]
    assert snap.server_settings.name == "Source"
    assert snap.backup_info.source_server_id == "100"
    assert snap.backup_info.bot_user == "Duplicator#0001"


def test_channels_are_recreated_under_new_category_handle(world):
    run_duplication(world)
    (gen_id,) = [cid for cid, name in world.created_categories.items() if name == "General"]
    parents = {ch.name: parent for ch, parent in world.created_channels}
    assert parents == {"chat": gen_id, "Lounge": gen_id, "rules": None}
    lounge = next(ch for ch, _ in world.created_channels if ch.name == "Lounge")
    assert lounge.bitrate == 96000
    assert lounge.user_limit == 5


def test_category_named_alpha_is_remapped():
    client = FakeDirectoryClient()
    client.add_guild(
        "1", "Src",
        channels=[category("a", "Alpha", 0), text("n", "news", 0, parent="a")],
        roles=[everyone("1")],
    )
    client.add_guild("2", "Dst", roles=[everyone("2")])

    _, result = run_duplication(client, source="1", target="2")

    assert isinstance(result, RunResult)
    (alpha_id,) = client.created_categories
    assert client.mutations("create_channel") == [("create_channel", "2", "news", alpha_id)]


def test_duplicate_category_names_last_created_wins():
    client = FakeDirectoryClient()
    client.add_guild(
        "1", "Src",
        channels=[
            category("a1", "Alpha", 0),
            category("a2", "Alpha", 1),
            text("n", "news", 0, parent="a1"),
        ],
        roles=[everyone("1")],
    )
    client.add_guild("2", "Dst", roles=[everyone("2")])

    run_duplication(client, source="1", target="2")

    first, second = list(client.created_categories)
    assert client.created_channels[0][1] == second != first


def test_end_to_end_mod_general_chat():
    client = FakeDirectoryClient()
    client.add_guild(
        "10", "Home",
        channels=[category("g", "General", 0), text("c", "chat", 0, parent="g")],
        roles=[everyone("10"), role("m", "Mod", 1, permissions=8)],
    )
    client.add_guild("20", "Copy", roles=[everyone("20")])

    _, result = run_duplication(client, source="10", target="20")

    assert isinstance(result, RunResult)
    assert [(r.name, r.permissions) for r in client.created_roles] == [("Mod", 8)]
    assert list(client.created_categories.values()) == ["General"]
    ((chat, parent),) = client.created_channels
    assert chat.name == "chat"
    assert client.created_categories[parent] == "General"


def test_run_log_contains_progress_milestones(world):
    dup, result = run_duplication(world)
    msgs = _messages(dup)
    assert msgs[0] == "Starting duplication process..."
    assert "Logged in as Duplicator#0001" in " ".join(msgs)
    assert "Found 3 channels and 4 roles to process" in msgs
    assert "Target server wipe complete" in msgs
    assert "Backup complete: 1 categories, 3 channels, 2 roles" in msgs
    assert "Server settings updated successfully" in msgs
    assert "Duplication completed successfully" in msgs
    assert any(m.startswith("Total process time:") for m in msgs)
    assert msgs[-1] == "Discord client disconnected"
    assert result.logs == dup.state.logs


# ---------- validation / phase-level failures ----------
@pytest.mark.parametrize(
    "token,source,target",
    [
        ("", "100", "200"),
        ("short", "100", "200"),
        (TOKEN, "", "200"),
        (TOKEN, "100", ""),
    ],
)
def test_invalid_input_fails_before_any_remote_call(world, token, source, target):
    dup, result = run_duplication(world, token=token, source=source, target=target)
    assert isinstance(result, InvalidInput)
    assert result.reason == "invalid_input"
    assert world.calls == []
    assert dup.state.phase is RunPhase.FAILED


def test_same_server_stops_before_wipe(world):
    dup, result = run_duplication(world, source="200", target="200")
    assert isinstance(result, SameServer)
    assert world.mutations() == []
    assert ("fetch_channels", "200") not in world.calls
    assert world.closed


@pytest.mark.parametrize("which,source,target", [("source", "404", "200"), ("target", "100", "404")])
def test_server_not_found_names_the_side(world, which, source, target):
    _, result = run_duplication(world, source=source, target=target)
    assert isinstance(result, ServerNotFound)
    assert result.which == which
    assert "404" in result.message
    assert world.mutations() == []


@pytest.mark.parametrize("admin,needle", [(False, "administrator"), (None, "not a member")])
def test_insufficient_permissions(admin, needle):
    client = standard_world(admin=admin)
    _, result = run_duplication(client)
    assert isinstance(result, InsufficientPermissions)
    assert needle in result.message
    assert client.mutations() == []


def test_login_timeout():
    client = standard_world(block_login=True)
    dup, result = run_duplication(client, login_timeout=0.05)
    assert isinstance(result, AuthTimeout)
    assert result.message == "Discord login timeout (0.05 seconds)"
    assert client.closed
    assert dup.state.phase is RunPhase.FAILED


def test_login_rejected():
    client = standard_world(login_error=RuntimeError("Improper token has been passed."))
    _, result = run_duplication(client)
    assert isinstance(result, AuthFailed)
    assert "Improper token" in result.message
    assert client.closed


# ---------- item-level failures ----------
def test_failed_role_create_does_not_stop_the_run():
    client = standard_world(fail={"Mod"})
    dup, result = run_duplication(client)

    assert isinstance(result, RunResult)
    assert result.item_failures == 1
    assert [r.name for r in client.created_roles] == ["Member"]
    assert len(client.created_channels) == 3
    warnings = [e.message for e in dup.state.logs if e.severity.value == "warning"]
    assert "Failed to create role Mod: Invalid Form Body" in warnings


def test_failed_delete_is_counted_and_skipped():
    client = standard_world(fail={"old-chat"})
    dup, result = run_duplication(client)
    assert isinstance(result, RunResult)
    assert dup.state.item_failures == 1
    assert [c[2] for c in client.mutations("delete_channel")] == ["old-chat", "old-voice", "Old"]


def test_settings_update_failure_is_a_warning():
    client = standard_world(fail={"Source"})
    dup, result = run_duplication(client)
    assert isinstance(result, RunResult)
    assert result.item_failures == 1
    assert any(m.startswith("Could not update server settings") for m in _messages(dup))


# ---------- cancellation ----------
def test_cancel_before_wipe_performs_no_deletions(world):
    def setup(dup):
        def hook(call):
            if call[0] == "bot_is_admin":
                dup.cancel()
        world.hook = hook

    dup, result = run_duplication(world, setup=setup)

    assert isinstance(result, Cancelled)
    assert world.mutations() == []
    assert dup.state.phase is RunPhase.CANCELLED
    assert world.closed


def test_cancel_mid_wipe_stops_the_loop_and_later_phases(world, events):
    def setup(dup):
        def hook(call):
            if call[0] == "delete_channel":
                dup.cancel()
        world.hook = hook

    dup, result = run_duplication(world, setup=setup, sink=events.append)

    assert isinstance(result, Cancelled)
    assert world.mutations() == [("delete_channel", "200", "old-chat")]
    assert dup.state.item.current < dup.state.item.total
    assert ("fetch_channels", "100") not in world.calls
    assert dup.snapshot is None

    items = [e for e in events if isinstance(e, ItemProgressEvent)]
    assert [(e.current, e.total) for e in items] == [(1, 2)]
    phases = [e.phase for e in events if isinstance(e, PhaseEvent)]
    assert phases[-1] == RunPhase.WIPING.label
    assert isinstance(events[-1], ResultEvent)
    assert events[-1].reason == "cancelled"


def test_cancel_before_start_runs_nothing(world):
    async def go():
        dup = GuildDuplicator(TOKEN, "100", "200", client=world, delays=NO_DELAYS)
        outcome = dup.start()
        assert dup.cancel() is True
        assert dup.cancel() is False
        with pytest.raises(Cancelled):
            await outcome
        await asyncio.gather(dup.task, return_exceptions=True)
        return dup

    dup = asyncio.run(go())
    assert world.calls == []
    assert "Process cancelled by user" in _messages(dup)


def test_cancel_interrupts_pause():
    client = standard_world()
    slow = {a: 30.0 for a in ActionType}

    async def go():
        dup = GuildDuplicator(TOKEN, "100", "200", client=client, delays=slow)

        def hook(call):
            if call[0] == "delete_channel":
                asyncio.get_running_loop().call_soon(dup.cancel)
        client.hook = hook

        outcome = dup.start()
        with pytest.raises(Cancelled):
            await asyncio.wait_for(outcome, 5)
        await asyncio.wait_for(dup.task, 5)

    asyncio.run(go())
    assert len(client.mutations()) == 1
    assert client.closed


def test_cancel_after_completion_is_a_noop(world):
    async def go():
        dup = GuildDuplicator(TOKEN, "100", "200", client=world, delays=NO_DELAYS)
        outcome = dup.start()
        assert dup.start() is outcome
        result = await outcome
        await dup.task
        assert dup.cancel() is False
        return dup, result, outcome

    dup, result, outcome = asyncio.run(go())
    assert outcome.result() is result
    assert "Process cancelled by user" not in _messages(dup)


# ---------- progress & events ----------
def test_phase_progress_is_monotonic_and_bounded(world, events):
    run_duplication(world, sink=events.append)

    phases = [e for e in events if isinstance(e, PhaseEvent)]
    pct = [e.percentage for e in phases]
    assert pct == sorted(pct)
    assert all(0 <= p <= 100 for p in pct)
    assert [e.phase for e in phases] == [
        "Validating inputs",
        "Connecting to Discord",
        "Locating servers",
        "Wiping target server",
        "Backing up source server",
        "Duplicating structure",
        "Finalizing",
        "Completed",
    ]
    assert pct[-1] == 100


def test_item_progress_percentage_formula(world, events):
    run_duplication(world, sink=events.append)
    items = [e for e in events if isinstance(e, ItemProgressEvent)]
    assert items
    for e in items:
        assert 1 <= e.current <= e.total
        assert e.percentage == (e.current * 100) // e.total


def test_every_log_line_reaches_the_sink(world, events):
    dup, _ = run_duplication(world, sink=events.append)
    logged = [e.message for e in events if isinstance(e, LogEvent)]
    assert logged == _messages(dup)
    assert events[-1].to_dict()["type"] == "result"
    assert events[-1].success is True


def test_broken_sink_does_not_break_the_run(world):
    def boom(_event):
        raise RuntimeError("observer went away")

    _, result = run_duplication(world, sink=boom)
    assert isinstance(result, RunResult)


# ---------- pacing ----------
class CountingLimiter:
    def __init__(self):
        self.pauses = []

    async def pause(self, action, stop):
        self.pauses.append(action)
        return not stop.is_set()

    def penalize(self, action, seconds):
        pass


def test_pause_follows_every_mutating_call():
    client = standard_world(fail={"Mod"})
    limiter = CountingLimiter()

    def setup(dup):
        dup.ratelimit = limiter

    run_duplication(client, setup=setup)

    assert len(limiter.pauses) == len(client.mutations())
    assert limiter.pauses.count(ActionType.DELETE_CHANNEL) == 3
    assert limiter.pauses.count(ActionType.DELETE_ROLE) == 1
    assert limiter.pauses.count(ActionType.CREATE_ROLE) == 2
    assert limiter.pauses.count(ActionType.CREATE_CHANNEL) == 4
    assert limiter.pauses.count(ActionType.EDIT_GUILD) == 1


def test_rate_limit_hint_stretches_matching_pauses():
    dup = GuildDuplicator(TOKEN, "1", "2", client=FakeDirectoryClient(), delays=NO_DELAYS)
    dup._on_rate_limited(1.5, "None:123:/guilds/{guild_id}/roles")

    assert dup.ratelimit.remaining(ActionType.CREATE_ROLE) > 1.0
    assert dup.ratelimit.remaining(ActionType.DELETE_ROLE) > 1.0
    assert dup.ratelimit.remaining(ActionType.DELETE_CHANNEL) == 0.0
    assert dup.state.logs[-1].message == "Rate limited: 1500ms timeout"


def test_rate_limit_on_another_guild_is_ignored():
    mine = GuildDuplicator(TOKEN, "1", "2", client=FakeDirectoryClient(), delays=NO_DELAYS)
    other = GuildDuplicator(TOKEN, "3", "4", client=FakeDirectoryClient(), delays=NO_DELAYS)
    for dup in (mine, other):
        discord_hooks.watch(dup._on_rate_limited, owns=dup._owns_bucket)
    try:
        logging.getLogger("discord.http").warning(
            'We are being rate limited. Retrying in %.2f seconds. Handled under the bucket "%s"',
            5.0,
            "None:2:/guilds/{guild_id}/roles",
        )
    finally:
        for dup in (mine, other):
            discord_hooks.unwatch(dup._on_rate_limited)

    assert mine.ratelimit.remaining(ActionType.CREATE_ROLE) > 4.0
    assert mine.state.logs[-1].message == "Rate limited: 5000ms timeout"
    assert other.ratelimit.remaining(ActionType.CREATE_ROLE) == 0.0
    assert other.state.logs == []


def test_bucket_ownership_covers_both_guilds_and_wiped_channels(world):
    dup, _ = run_duplication(world)
    assert dup._owns_bucket(None, "200")
    assert dup._owns_bucket(None, "100")
    assert not dup._owns_bucket(None, "999")
    assert dup._owns_bucket("tt1", None)
    assert not dup._owns_bucket("123456", None)
