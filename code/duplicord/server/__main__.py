# =============================================================================
#  Duplicord
#  Copyright (C) 2025 github.com/Duplicord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
from pathlib import Path
from typing import List, Optional

from duplicord.admin.logging_setup import configure_app_logging, register_secret
from duplicord.common.config import CURRENT_VERSION, Config
from duplicord.common.events import FanoutSink
from duplicord.server.directory import DirectoryClient
from duplicord.server.discord_client import DiscordDirectoryClient
from duplicord.server.duplicator import GuildDuplicator
from duplicord.server.errors import Cancelled, DuplicationError
from duplicord.server.sinks import BusSink, LoggingSink

logger = logging.getLogger("duplicord.server")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 130


class DuplicationRunner:
    """One duplication from the command line, cancelled by SIGINT/SIGTERM."""

    def __init__(
        self,
        config: Config,
        source_id: str,
        target_id: str,
        *,
        snapshot_out: Optional[Path] = None,
        client: Optional[DirectoryClient] = None,
    ):
        self.config = config
        self.source_id = source_id
        self.target_id = target_id
        self.snapshot_out = snapshot_out
        self.client = client or DiscordDirectoryClient()
        self.bus = BusSink(config.EVENT_BUS_URL) if config.EVENT_BUS_URL else None
        self.run: Optional[GuildDuplicator] = None

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self.cancel)
            except (NotImplementedError, RuntimeError):
                # no loop signal support here; Ctrl+C falls back to KeyboardInterrupt
                pass

    def cancel(self) -> None:
        if self.run is not None and self.run.cancel():
            logger.warning("Cancellation requested, stopping at the next checkpoint")

    async def execute(self) -> int:
        logger.info("[✨] Starting Duplicord %s", CURRENT_VERSION)
        self.run = GuildDuplicator(
            self.config.DISCORD_TOKEN,
            self.source_id,
            self.target_id,
            client=self.client,
            sink=FanoutSink([LoggingSink(), self.bus]),
            delays=self.config.delays(),
            login_timeout=self.config.LOGIN_TIMEOUT_SECONDS,
            min_token_length=self.config.MIN_TOKEN_LENGTH,
        )
        self._install_signal_handlers()
        outcome = self.run.start()
        code = EXIT_OK
        try:
            result = await outcome
            logger.info(
                "Run %s completed in %.1fs with %d item failure(s)",
                result.run_id, result.duration, result.item_failures,
            )
        except Cancelled:
            code = EXIT_CANCELLED
        except DuplicationError as e:
            logger.error("Run failed (%s): %s", e.reason, e.message)
            code = EXIT_FAILED

        # outcome settles before teardown on cancel; let the task finish closing
        if self.run.task is not None:
            await asyncio.gather(self.run.task, return_exceptions=True)
        if self.bus is not None:
            await self.bus.drain()
        self._write_snapshot()
        return code

    def _write_snapshot(self) -> None:
        if not self.snapshot_out or self.run is None or self.run.snapshot is None:
            return
        self.snapshot_out.parent.mkdir(parents=True, exist_ok=True)
        self.snapshot_out.write_text(
            json.dumps(self.run.snapshot.to_dict(), indent=2), encoding="utf-8"
        )
        logger.info("Snapshot written to %s", self.snapshot_out)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m duplicord.server",
        description="Copy the channel, category and role structure of one Discord server onto another.",
    )
    parser.add_argument("--source", default=None, help="Source server id (default: SOURCE_GUILD_ID).")
    parser.add_argument("--target", default=None, help="Target server id (default: TARGET_GUILD_ID).")
    parser.add_argument(
        "--snapshot-out",
        default=None,
        type=Path,
        help="Write the source snapshot as JSON to this path.",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config = Config()
    configure_app_logging(config)
    register_secret(config.DISCORD_TOKEN)

    runner = DuplicationRunner(
        config,
        args.source or config.SOURCE_GUILD_ID,
        args.target or config.TARGET_GUILD_ID,
        snapshot_out=args.snapshot_out,
    )
    try:
        return asyncio.run(runner.execute())
    except KeyboardInterrupt:
        return EXIT_CANCELLED


if __name__ == "__main__":
    raise SystemExit(main())
