"""Logging helpers for the SubWallet SDK.

All SDK loggers live under the ``subwallet`` namespace. The SDK never installs
handlers on import; applications call ``configure_logging`` once (or set up
logging themselves) to see output.

Usage:
    >>> from subwallet.logger import get_logger
    >>> logger = get_logger(__name__)
    >>> logger.info("Connected")
"""

import logging
import threading
from typing import Optional, Union

from rich.console import Console
from rich.logging import RichHandler


ROOT_LOGGER_NAME = "subwallet"

_configured = False
_lock = threading.Lock()


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Return a logger inside the ``subwallet`` namespace.

    Module names that already start with ``subwallet`` are used as-is.
    """
    if not name or name == ROOT_LOGGER_NAME:
        return logging.getLogger(ROOT_LOGGER_NAME)
    if name.startswith(ROOT_LOGGER_NAME + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


def configure_logging(level: Union[int, str] = "INFO",
                      console: Optional[Console] = None) -> logging.Logger:
    """Attach a rich console handler to the ``subwallet`` logger.

    Safe to call more than once; the handler is installed a single time and
    later calls only change the level.

    Args:
        level: Log level name or number
        console: Optional rich Console (defaults to stderr)

    Returns:
        logging.Logger: The configured root SDK logger
    """
    global _configured

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    with _lock:
        if not _configured:
            handler = RichHandler(
                console=console or Console(stderr=True),
                show_path=False,
                rich_tracebacks=True,
                markup=False,
            )
            handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
            logger.addHandler(handler)
            logger.propagate = False
            _configured = True

    logger.setLevel(level)
    return logger
