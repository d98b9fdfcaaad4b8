"""
Logging configuration utilities.

Console output goes through the root handler set up by basicConfig. An
unattended deployment can additionally keep a full debug log on disk.
"""
import logging
from typing import Optional

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def setup_logging(debug: bool = False, log_file: Optional[str] = None) -> None:
    """
    Configure logging for the application.

    Args:
        debug: Whether to enable debug logging on the console
        log_file: Optional path receiving every record at debug level
    """
    level = logging.DEBUG if debug else logging.INFO

    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=DATE_FORMAT)

    logger = logging.getLogger('cryptlayout')
    logger.setLevel(logging.DEBUG if log_file else level)

    if log_file:
        handler = logging.FileHandler(log_file)
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
        logger.addHandler(handler)
        # Console stays at the requested level
        for root_handler in logging.getLogger().handlers:
            root_handler.setLevel(level)
