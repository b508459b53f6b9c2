"""
Run the supervisor: `python -m respawn`.

Configuration comes from the environment; see `respawn.settings`.
"""

from __future__ import annotations

import sys

import structlog
import uvicorn

from respawn.errors import ConfigurationError
from respawn.logging import configure_logging
from respawn.settings import load_settings
from respawn.web import create_app

log = structlog.get_logger()


def main() -> int:
    try:
        settings = load_settings()
    except ConfigurationError as e:
        configure_logging()
        log.error("invalid configuration", error=str(e))
        return 1
    configure_logging(settings.logging_level)
    app = create_app(settings)
    uvicorn.run(
        app,
        host=settings.server_host,
        port=settings.server_port,
        log_config=None,
        timeout_graceful_shutdown=int(settings.shutdown_timeout),
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
