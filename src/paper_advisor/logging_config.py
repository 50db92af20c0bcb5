import sys
from pathlib import Path

from loguru import logger


CONSOLE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <7} | {name}:{function}:{line} | {message}"
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level} | {thread.name} | {name}:{line} | {message}"


def configure_logging(level: str = "INFO", log_file: Path | None = None) -> None:
    """Route loguru output to stdout and, optionally, a rotating file.

    Stages run on scheduler worker threads, so both sinks are enqueued.
    """
    logger.remove()
    logger.add(sys.stdout, level=level.upper(), format=CONSOLE_FORMAT, enqueue=True)
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            level="DEBUG",
            format=FILE_FORMAT,
            rotation="10 MB",
            retention=5,
            enqueue=True,
        )
