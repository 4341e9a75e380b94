import logging

import uvicorn

from ride_sync.api.app import create_app
from ride_sync.settings import get_settings
from ride_sync.sync_logging import setup_logging

logger = logging.getLogger(__name__)


def main() -> None:
    """Run the websocket bridge with a Redis-backed channel provider."""
    settings = get_settings()
    setup_logging(
        level=settings.logging.level,
        json_output=settings.logging.format == "json",
        environment=settings.logging.environment,
    )

    app = create_app()

    logger.info(f"Starting ride sync bridge on port {settings.api.port}")
    uvicorn.run(
        app,
        host=settings.api.host,
        port=settings.api.port,
        log_level=settings.logging.level.lower(),
    )


if __name__ == "__main__":
    main()
