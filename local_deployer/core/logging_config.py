"""
Logging setup for processes embedding the deployer.

The deployer itself only ever logs through ``logging.getLogger(__name__)`` or
through a logger handed to the supervisor; configuring handlers is left to the
embedding process, which can call ``setup_logging`` once at startup.
"""
import logging
from typing import Optional

PACKAGE_LOGGER = "local_deployer"

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def setup_logging(level: Optional[str] = None) -> logging.Logger:
    """
    Configure the package logger.

    Args:
        level: Level name such as "info" or "DEBUG" (default from settings)

    Returns:
        The configured package logger
    """
    if level is None:
        from local_deployer.core.config import settings
        level = settings.LOG_LEVEL

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(level.upper())

    if not package_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        package_logger.addHandler(handler)

    return package_logger
