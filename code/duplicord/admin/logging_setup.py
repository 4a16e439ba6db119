# =============================================================================
#  Duplicord
#  Copyright (C) 2025 github.com/Duplicord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations
import logging
import os
import re
import sys as _sys
import json as _json
import contextvars
from datetime import datetime, timezone
from collections import Counter
from typing import Any, Dict, Optional


REDACT_KEYS = {"DISCORD_TOKEN", "botToken", "token", "authorization"}
REDACTED = "***REDACTED***"

# anything shaped like a bot token, registered or not
TOKEN_RE = re.compile(r"[\w-]{23,28}\.[\w-]{6,7}\.[\w-]{27,}")

# secret -> number of holders; masked while any holder remains
_SECRETS: "Counter[str]" = Counter()

req_id_var = contextvars.ContextVar("req_id", default="-")
route_var = contextvars.ContextVar("route", default="-")
client_var = contextvars.ContextVar("client", default="-")
run_id_var = contextvars.ContextVar("run_id", default="-")

_CONTEXT = (("req_id", req_id_var), ("scope", route_var), ("client", client_var))

_EXTRA_KEYS = ("socket_id", "guild_id", "took_ms", "subscribers")


def register_secret(value: Optional[str]) -> None:
    """Mask `value` wherever it shows up in a log line from now on."""
    if value and len(value) >= 6:
        _SECRETS[value] += 1


def forget_secret(value: Optional[str]) -> None:
    """Drop one hold on `value`; it stays masked until every holder forgot it."""
    if not value or value not in _SECRETS:
        return
    _SECRETS[value] -= 1
    if _SECRETS[value] <= 0:
        del _SECRETS[value]


def _mask(text: str) -> str:
    secrets = set(_SECRETS)
    envv = os.getenv("DISCORD_TOKEN")
    if envv:
        secrets.add(envv)
    # longest first so a secret containing another is masked whole
    for secret in sorted(secrets, key=len, reverse=True):
        text = text.replace(secret, REDACTED)
    return TOKEN_RE.sub(REDACTED, text)


def _scrub(value: Any) -> Any:
    if isinstance(value, str):
        return _mask(value)
    if isinstance(value, dict):
        return {
            k: (REDACTED if str(k) in REDACT_KEYS and v else _scrub(v))
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return type(value)(_scrub(v) for v in value)
    return value


class RedactFilter(logging.Filter):
    """Stamps request/run context onto the record and masks tokens."""

    def filter(self, record: logging.LogRecord) -> bool:
        for attr, var in _CONTEXT:
            setattr(record, attr, var.get())
        if getattr(record, "run_id", None) in (None, "", "-"):
            record.run_id = run_id_var.get()
        try:
            if record.args:
                record.args = _scrub(record.args)
            if isinstance(record.msg, str):
                record.msg = _mask(record.msg)
        except Exception:
            record.msg, record.args = "<unprintable log record>", ()
        return True


def _now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _extras(record: logging.LogRecord) -> Dict[str, Any]:
    out = {}
    for k in _EXTRA_KEYS:
        v = getattr(record, k, None)
        if v not in (None, "", []):
            out[k] = v
    return out


LEVEL_MARK = {
    logging.DEBUG: "🧩",
    logging.INFO: "✅",
    logging.WARNING: "⚠️",
    logging.ERROR: "❌",
    logging.CRITICAL: "💥",
}


class HumanFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        head = "{ts} {mark} {lvl:<8} [{scope}] (rid={rid} run={run})".format(
            ts=_now_iso(),
            mark=LEVEL_MARK.get(record.levelno, "•"),
            lvl=record.levelname,
            scope=getattr(record, "scope", "-"),
            rid=getattr(record, "req_id", "-"),
            run=getattr(record, "run_id", "-"),
        )
        line = f"{head} {super().format(record)}"
        extras = _extras(record)
        if extras:
            line += " | " + " ".join(f"{k}={v}" for k, v in extras.items())
        return line


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        base = {
            "time": _now_iso(),
            "lvl": record.levelname,
            "logger": record.name,
            "msg": super().format(record),
        }
        for attr in ("scope", "req_id", "client", "run_id"):
            base[attr] = getattr(record, attr, "-")
        base.update(_extras(record))
        return _json.dumps(base, separators=(",", ":"), default=str)


class ContextAdapter(logging.LoggerAdapter):
    def process(self, msg, kwargs):
        extra = kwargs.setdefault("extra", {})
        for k, v in self.extra.items():
            extra.setdefault(k, v)
        return msg, kwargs


def get_logger(name="duplicord", **ctx):
    return ContextAdapter(logging.getLogger(name), dict(ctx))


# third-party loggers held at WARNING; discord.http warnings feed the rate-limit probe
_QUIET = ("uvicorn", "uvicorn.error", "uvicorn.access", "discord")


def configure_app_logging(config=None):
    """
    Point the `duplicord` logger tree at one handler set.

    LOG_FORMAT picks HUMAN (default) or JSON lines and LOG_LEVEL the threshold;
    both come from `config` when given, else from the environment. Under
    uvicorn its `uvicorn.error` handlers are reused so both streams interleave.
    """
    if config is not None:
        fmt, lvl = config.LOG_FORMAT, config.LOG_LEVEL
    else:
        fmt = os.getenv("LOG_FORMAT", "HUMAN").strip().upper()
        lvl = os.getenv("LOG_LEVEL", "INFO").strip().upper()

    formatter_cls = JSONFormatter if fmt == "JSON" else HumanFormatter
    root = logging.getLogger("duplicord")
    borrowed = logging.getLogger("uvicorn.error").handlers[:]
    handlers = borrowed or [logging.StreamHandler(stream=_sys.stdout)]
    for h in handlers:
        h.setFormatter(formatter_cls("%(message)s"))
        if not any(isinstance(f, RedactFilter) for f in h.filters):
            h.addFilter(RedactFilter())

    root.handlers = handlers
    root.propagate = False
    root.setLevel(getattr(logging, lvl, logging.INFO))

    for name in _QUIET:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(
        logging.WARNING if root.level > logging.DEBUG else logging.DEBUG
    )
    return get_logger("duplicord")
