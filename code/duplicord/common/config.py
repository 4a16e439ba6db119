# =============================================================================
#  Duplicord
#  Copyright (C) 2025 github.com/Duplicord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

import os
import logging
from typing import Dict, Mapping, Optional

from duplicord.common.rate_limiter import ActionType

logger = logging.getLogger(__name__)
CURRENT_VERSION = "v1.0.0"


class Config:
    def __init__(
        self,
        env: Optional[Mapping[str, str]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        source = os.environ if env is None else env

        def _str(key: str, default: Optional[str] = None) -> Optional[str]:
            v = source.get(key)
            if v is None or v.strip() == "":
                return default
            return v.strip()

        def _int(key: str, default: str = "0") -> int:
            raw = _str(key, default)
            try:
                return int(str(raw).strip())
            except Exception:
                try:
                    return int(default)
                except Exception:
                    return 0

        def _float(key: str, default: str = "0") -> float:
            raw = _str(key, default)
            try:
                val = float(str(raw).strip())
            except Exception:
                val = float(default)
            return val if val >= 0 else float(default)

        # --- Credentials / IDs (CLI runner) ---
        self.DISCORD_TOKEN = _str("DISCORD_TOKEN", "") or ""
        self.SOURCE_GUILD_ID = _str("SOURCE_GUILD_ID", "") or ""
        self.TARGET_GUILD_ID = _str("TARGET_GUILD_ID", "") or ""

        # --- Workflow tuning ---
        self.LOGIN_TIMEOUT_SECONDS = _float("LOGIN_TIMEOUT_SECONDS", "30")
        self.DELETE_DELAY_SECONDS = _float("DELETE_DELAY_SECONDS", "0.8")
        self.CREATE_DELAY_SECONDS = _float("CREATE_DELAY_SECONDS", "1.0")
        self.MIN_TOKEN_LENGTH = _int("MIN_TOKEN_LENGTH", "10")

        # --- Admin service ---
        self.ADMIN_HOST = _str("ADMIN_HOST", "0.0.0.0")
        self.ADMIN_PORT = _int("ADMIN_PORT", "3001")
        self.CLIENT_URL = _str("CLIENT_URL", "http://localhost:5173")
        self.EVENT_BUS_URL = _str("EVENT_BUS_URL", "") or ""

        # --- Logging ---
        self.LOG_LEVEL = (_str("LOG_LEVEL", "INFO") or "INFO").upper()
        self.LOG_FORMAT = (_str("LOG_FORMAT", "HUMAN") or "HUMAN").upper()

        self.logger = (logger or logging.getLogger(__name__)).getChild(
            self.__class__.__name__
        )
        self.logger.debug(
            "Config loaded | login_timeout=%.1fs delete_delay=%.2fs create_delay=%.2fs",
            self.LOGIN_TIMEOUT_SECONDS,
            self.DELETE_DELAY_SECONDS,
            self.CREATE_DELAY_SECONDS,
        )

    def delays(self) -> Dict[ActionType, float]:
        """Pause applied after each mutating call, keyed by action."""
        return {
            ActionType.DELETE_CHANNEL: self.DELETE_DELAY_SECONDS,
            ActionType.DELETE_ROLE: self.DELETE_DELAY_SECONDS,
            ActionType.CREATE_ROLE: self.CREATE_DELAY_SECONDS,
            ActionType.CREATE_CHANNEL: self.CREATE_DELAY_SECONDS,
            ActionType.EDIT_GUILD: self.CREATE_DELAY_SECONDS,
        }
