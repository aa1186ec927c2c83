import logging
import sys
from typing import Optional

from ndgrad.config import get_config


class ColorFormatter(logging.Formatter):
    """
    A logging formatter that colors each record by severity.

    Examples:
        >>> import logging
        >>> from ndgrad.logger import ColorFormatter
        >>> handler = logging.StreamHandler()
        >>> handler.setFormatter(ColorFormatter())
        >>> logging.getLogger("ndgrad").addHandler(handler)
    """

    grey = "\x1b[38;20m"
    yellow = "\x1b[33;20m"
    red = "\x1b[31;20m"
    bold_red = "\x1b[31;1m"
    cyan = "\x1b[36;20m"
    green = "\x1b[32;20m"
    reset = "\x1b[0m"

    FORMATS = {
        logging.DEBUG: cyan,
        logging.INFO: green,
        logging.WARNING: yellow,
        logging.ERROR: red,
        logging.CRITICAL: bold_red,
    }

    def format(self, record):
        color = self.FORMATS.get(record.levelno, self.grey)
        formatter = logging.Formatter(
            f"{color}%(asctime)s - %(name)s - %(levelname)s - %(message)s{self.reset}"
        )
        return formatter.format(record)


def setup_logger(name: Optional[str] = None) -> logging.Logger:
    """
    Set up a logger with colored console output.

    The level is DEBUG when the active :class:`~ndgrad.config.EngineConfig` has
    ``debug`` set (the ``DEBUG`` environment variable), otherwise INFO. Calling
    this twice for the same name does not attach a second handler.

    Args:
        name (str, optional): The name of the logger. Defaults to the root logger.

    Returns:
        logging.Logger: The configured logger instance.

    Examples:
        >>> from ndgrad.logger import setup_logger
        >>> logger = setup_logger("ndgrad")
        >>> logger.info("engine ready")
    """
    logger = logging.getLogger(name)
    level = logging.DEBUG if get_config().debug else logging.INFO
    logger.setLevel(level)

    if not any(getattr(h, "_ndgrad_console", False) for h in logger.handlers):
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(ColorFormatter())
        console_handler._ndgrad_console = True
        logger.addHandler(console_handler)

    return logger
