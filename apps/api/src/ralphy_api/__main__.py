from __future__ import annotations

import logging

import uvicorn

from ralphy_api.config import load_settings
from ralphy_api.main import create_app

logger = logging.getLogger("ralphy_api")


def main() -> None:
    settings = load_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("Access ralphy at http://%s:%d/", settings.host, settings.port)
    logger.info("Watching %s and %s", settings.tasks_file, settings.progress_file)
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
