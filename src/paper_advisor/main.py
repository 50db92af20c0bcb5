from __future__ import annotations

import threading

from loguru import logger
import uvicorn

from .api import create_app
from .logging_config import configure_logging
from .scheduler import AdvisorScheduler
from .service import AdvisorService
from .settings import settings


def run_service(with_api: bool = False) -> None:
    configure_logging(settings.log_level, settings.log_file)

    service = AdvisorService()
    scheduler = AdvisorScheduler(service)
    scheduler.start()

    if with_api:
        app = create_app(service)
        server = threading.Thread(
            target=uvicorn.run,
            kwargs={"app": app, "host": settings.api_host, "port": settings.api_port, "log_level": "warning"},
            name="api",
            daemon=True,
        )
        server.start()
        logger.info("API listening on http://{}:{}", settings.api_host, settings.api_port)

    logger.info("Paper advisor running for portfolio '{}'", service.portfolio_id)
    logger.info("Press Ctrl+C to stop")

    stop = threading.Event()
    try:
        while not stop.wait(settings.service_heartbeat_seconds):
            pass
    except KeyboardInterrupt:
        logger.info("Shutdown requested by user")
    finally:
        scheduler.stop(wait=False)
        if not service.shutdown():
            logger.warning("Exiting with executions still in flight")
        logger.info("Paper advisor stopped")


if __name__ == "__main__":
    run_service()
