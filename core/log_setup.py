# core/log_setup.py
import sys

from loguru import logger

LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level} | {name}:{line} | {message}"


def setup_logging(settings, file_sink: bool = True):
    """Configure loguru sinks: stdout at LOG_LEVEL plus a rotating file."""
    logger.remove()
    logger.add(sys.stdout, format=LOG_FORMAT, level=settings.LOG_LEVEL)
    if file_sink and settings.LOG_FILE_PATH:
        logger.add(
            settings.LOG_FILE_PATH,
            rotation="500 MB",
            format=LOG_FORMAT,
            level=settings.LOG_LEVEL,
        )
    return logger
