# =============================================================================
#  Duplicord
#  Copyright (C) 2025 github.com/Duplicord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

import uvicorn

from duplicord.admin.logging_setup import configure_app_logging
from duplicord.common.config import Config


def main() -> None:
    config = Config()
    configure_app_logging(config)
    uvicorn.run(
        "duplicord.admin.app:app",
        host=config.ADMIN_HOST,
        port=config.ADMIN_PORT,
        log_level=config.LOG_LEVEL.lower(),
        proxy_headers=True,
    )


if __name__ == "__main__":
    main()
