import logging
import sys
from config import Settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = Settings.LOG_LEVEL) -> logging.Logger:
    """Configure the service logger once and return it.

    Calling this again only adjusts the level; handlers are never duplicated.
    """
    log = logging.getLogger("webcuts")
    log.setLevel(getattr(logging, level, logging.INFO))
    if not log.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        log.addHandler(handler)
    log.propagate = False
    return log


logger = configure_logging()
