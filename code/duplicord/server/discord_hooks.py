# =============================================================================
#  Duplicord
#  Copyright (C) 2025 github.com/Duplicord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

import logging, re
from typing import Callable, Dict, Optional, Tuple
from duplicord.common.rate_limiter import ActionType

log = logging.getLogger("duplicord.discord_hooks")

RateLimitListener = Callable[[float, str], None]
# (channel_id, guild_id) -> does this bucket belong to the watcher
BucketOwner = Callable[[Optional[str], Optional[str]], bool]

_ROUTE_MAP: Tuple[Tuple[re.Pattern, Tuple[ActionType, ...]], ...] = (
    (
        re.compile(
            r"^/(?:api/v\d+/)?guilds/(?:\d+|\{guild_id\})/roles(?:/(?:\d+|\{role_id\}))?(?:\?.*)?$"
        ),
        (ActionType.CREATE_ROLE, ActionType.DELETE_ROLE),
    ),
    (re.compile(r"/guilds/\{guild_id\}/channels"), (ActionType.CREATE_CHANNEL,)),
    (re.compile(r"/channels/\{channel_id\}$"), (ActionType.DELETE_CHANNEL,)),
    (re.compile(r"^/guilds/\{guild_id\}$"), (ActionType.EDIT_GUILD,)),
)

_listeners: Dict[RateLimitListener, Optional[BucketOwner]] = {}


def watch(listener: RateLimitListener, owns: Optional[BucketOwner] = None) -> None:
    """
    Register a callback for rate limits the HTTP layer reports. With `owns`,
    only buckets it claims are delivered, plus buckets tied to no channel or
    guild (global limits); without it every bucket is.
    """
    install_discord_rl_probe()
    _listeners[listener] = owns


def unwatch(listener: RateLimitListener) -> None:
    _listeners.pop(listener, None)


def _snowflake(part: str) -> Optional[str]:
    return part if part.isdigit() else None


def bucket_scope(bucket: str) -> Tuple[Optional[str], Optional[str]]:
    """The (channel_id, guild_id) of a ``channel:guild:route`` bucket key."""
    parts = (bucket or "").split(":", 2)
    if len(parts) < 3:
        return None, None
    return _snowflake(parts[0]), _snowflake(parts[1])


def actions_for_bucket(bucket: str) -> Tuple[ActionType, ...]:
    """Map a library bucket key (``channel:guild:route``) to actions; empty = all."""
    route = (bucket or "").split(":")[-1]
    for pat, acts in _ROUTE_MAP:
        if pat.search(route):
            return acts
    return ()


def _recipients(bucket: str):
    channel_id, guild_id = bucket_scope(bucket)
    for fn, owns in list(_listeners.items()):
        if owns is None or (channel_id is None and guild_id is None):
            yield fn
            continue
        try:
            if owns(channel_id, guild_id):
                yield fn
        except Exception:
            log.debug("Bucket owner check failed", exc_info=True)


class DiscordHTTPRLHandler(logging.Handler):
    _rx = re.compile(r"Retrying in ([\d.]+) seconds(?:.*bucket \"([^\"]+)\")?")

    def __init__(self):
        super().__init__(level=logging.WARNING)

    def emit(self, record: logging.LogRecord):
        try:
            m = self._rx.search(record.getMessage())
            if not m:
                return
            retry_after = float(m.group(1))
            bucket = m.group(2) or ""
            targets = list(_recipients(bucket))
            log.debug("Rate limit seen: %.2fs bucket=%s listeners=%d/%d",
                      retry_after, bucket, len(targets), len(_listeners))
            for fn in targets:
                try:
                    fn(retry_after, bucket)
                except Exception:
                    log.debug("Rate limit listener failed", exc_info=True)
        except Exception as e:
            log.exception("Error in DiscordHTTPRLHandler.emit: %s", e)


def install_discord_rl_probe() -> None:
    http_log = logging.getLogger("discord.http")
    if not any(isinstance(h, DiscordHTTPRLHandler) for h in http_log.handlers):
        http_log.addHandler(DiscordHTTPRLHandler())
        log.debug("Installed DiscordHTTPRLHandler on 'discord.http' logger")
