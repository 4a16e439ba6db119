import asyncio
import json
import logging
from unittest import mock

from duplicord.common.config import Config
from duplicord.common.events import LogEvent, PhaseEvent, ResultEvent
from duplicord.server import sinks
from duplicord.server.__main__ import (
    EXIT_CANCELLED,
    EXIT_FAILED,
    EXIT_OK,
    DuplicationRunner,
    build_parser,
)

from fakes import TOKEN, standard_world

ENV = {"DISCORD_TOKEN": TOKEN, "DELETE_DELAY_SECONDS": "0", "CREATE_DELAY_SECONDS": "0"}


def test_parser_defaults():
    args = build_parser().parse_args(["--source", "1", "--snapshot-out", "out/s.json"])
    assert args.source == "1"
    assert args.target is None
    assert args.snapshot_out.name == "s.json"


def test_runner_success_writes_snapshot(tmp_path):
    out = tmp_path / "snap" / "source.json"
    client = standard_world()
    runner = DuplicationRunner(Config(env=ENV), "100", "200", snapshot_out=out, client=client)

    assert asyncio.run(runner.execute()) == EXIT_OK
    data = json.loads(out.read_text(encoding="utf-8"))
    assert data["server_settings"]["name"] == "Source"
    assert [r["name"] for r in data["roles"]] == ["Mod", "Member"]
    assert client.closed


def test_runner_failure_exit_code(tmp_path):
    client = standard_world()
    runner = DuplicationRunner(Config(env=ENV), "200", "200", snapshot_out=tmp_path / "s.json", client=client)
    assert asyncio.run(runner.execute()) == EXIT_FAILED
    assert not (tmp_path / "s.json").exists()


def test_default_runner_talks_to_discord_on_the_running_loop():
    runner = DuplicationRunner(Config(env=ENV), "1", "2")

    async def go():
        lib = runner.client.client
        with mock.patch.object(lib, "login", mock.AsyncMock()):
            await runner.client.login(TOKEN)
        fired = asyncio.Event()
        lib.http.loop.call_later(0.01, fired.set)
        await asyncio.wait_for(fired.wait(), 1.0)
        return lib.http.loop is asyncio.get_running_loop()

    assert asyncio.run(go()) is True


def test_runner_cancel_exit_code():
    client = standard_world()
    runner = DuplicationRunner(Config(env=ENV), "100", "200", client=client)

    def hook(call):
        if call[0] == "delete_channel":
            runner.cancel()
    client.hook = hook

    assert asyncio.run(runner.execute()) == EXIT_CANCELLED
    assert len(client.mutations()) == 1


def test_logging_sink_skips_log_events():
    logger = mock.Mock(spec=logging.Logger)
    sink = sinks.LoggingSink(logger)
    sink(LogEvent("r", "t", "hello"))
    logger.log.assert_not_called()
    logger.debug.assert_not_called()

    sink(PhaseEvent("r", "Finalizing", 95))
    logger.debug.assert_called_once()
    sink(ResultEvent("r", False, 1.0, reason="cancelled"))
    assert logger.log.call_args.args[0] == logging.WARNING


def test_bus_sink_publishes_every_event():
    with mock.patch.object(sinks, "AdminBus") as bus_cls:
        bus_cls.return_value.publish = mock.AsyncMock(return_value=True)
        bus_cls.return_value.close = mock.AsyncMock()

        async def go():
            sink = sinks.BusSink("ws://admin:8765/bus")
            sink(PhaseEvent("r", "Wiping target server", 25))
            sink(ResultEvent("r", True, 2.0))
            await sink.drain()
            return sink

        sink = asyncio.run(go())

    publish = bus_cls.return_value.publish
    assert publish.await_count == 2
    kinds = {c.args[0] for c in publish.await_args_list}
    assert kinds == {"duplicate"}
    assert publish.await_args_list[0].args[1]["type"] == "phase"
    assert sink.pending == 0
    bus_cls.return_value.close.assert_awaited_once()
