import logging

from config.settings import DEBUG, LOG_FILE

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"

# LOG_DIR is created by config.settings
logging.basicConfig(
    filename=str(LOG_FILE),
    level=logging.DEBUG if DEBUG else logging.INFO,
    format=LOG_FORMAT,
)

logger = logging.getLogger("vtool-manager")


def log_event(message: str) -> None:
    """
    Write a single line event to vtool-manager.log.
    """
    logger.info(message)


def log_error(message: str) -> None:
    """
    Diagnostics (failed connections, unreachable hosts) go to ERROR level.
    """
    logger.error(message)


def log_debug(message: str) -> None:
    logger.debug(message)
