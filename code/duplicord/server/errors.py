# =============================================================================
#  Duplicord
#  Copyright (C) 2025 github.com/Duplicord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations


class DuplicationError(Exception):
    """Base for every terminal failure of a run; `reason` is a stable code."""

    reason = "unexpected"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidInput(DuplicationError):
    reason = "invalid_input"


class AuthTimeout(DuplicationError):
    reason = "auth_timeout"


class AuthFailed(DuplicationError):
    reason = "auth_failed"


class ServerNotFound(DuplicationError):
    reason = "server_not_found"

    def __init__(self, which: str, guild_id: str):
        super().__init__(
            f"{which.capitalize()} server with ID {guild_id} not found or bot doesn't have access."
        )
        self.which = which
        self.guild_id = guild_id


class SameServer(DuplicationError):
    reason = "same_server"

    def __init__(self, message: str = "Source and target servers cannot be the same"):
        super().__init__(message)


class InsufficientPermissions(DuplicationError):
    reason = "insufficient_permissions"


class ItemOperationFailed(DuplicationError):
    """Describes one failed delete/create. Never raised: its message becomes the run's warning entry."""

    reason = "item_failed"

    def __init__(self, verb: str, item_kind: str, item_name: str, cause: BaseException):
        super().__init__(f"Failed to {verb} {item_kind} {item_name}: {cause}")
        self.verb = verb
        self.item_kind = item_kind
        self.item_name = item_name


class Cancelled(DuplicationError):
    reason = "cancelled"

    def __init__(self, message: str = "Process cancelled by user"):
        super().__init__(message)


class Unexpected(DuplicationError):
    reason = "unexpected"
