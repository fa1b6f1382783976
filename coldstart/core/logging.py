"""
Logging configuration for the proxy host and the backend supervisor.
"""

import logging
import re
import sys
from typing import Iterable, Optional

from coldstart.shared import ADMIN_PATH_PREFIX

# Custom Log Level
NOTICE = 25
logging.addLevelName(NOTICE, "NOTICE")

# ANSI Color Codes
BLUE = "\033[0;34m"
CYAN = "\033[0;36m"
GREEN = "\033[0;32m"
YELLOW = "\033[1;33m"
RED = "\033[0;31m"
BOLD_RED = "\033[1;31m"
RESET = "\033[0m"

LEVEL_COLORS = {
    logging.DEBUG: BLUE,
    logging.INFO: RESET,
    NOTICE: RESET,
    logging.WARNING: YELLOW,
    logging.ERROR: RED,
    logging.CRITICAL: BOLD_RED,
}

# Backend lifecycle states as they appear in transition messages
STATE_COLORS = {
    "starting": CYAN,
    "ready": GREEN,
    "stopping": YELLOW,
    "stopped": BLUE,
}

_STATE_PATTERN = re.compile(r"\b(" + "|".join(STATE_COLORS) + r")\b")
_FAILURE_PATTERN = re.compile(r"\b(failed|Failed|FAILED|unavailable|Exception)\b")


class ColoredFormatter(logging.Formatter):
    """Formatter that colors records by level and highlights backend states."""

    FMT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
    DATE_FMT = "%Y-%m-%d %H:%M:%S"

    def __init__(self, use_color: bool = True) -> None:
        super().__init__(self.FMT, datefmt=self.DATE_FMT)
        self.use_color = use_color
        self._notice_formatter = logging.Formatter("%(message)s")

    def format(self, record: logging.LogRecord) -> str:
        if record.levelno == NOTICE:
            return self._notice_formatter.format(record)
        formatted_message = super().format(record)
        if not self.use_color:
            return formatted_message

        level_color = self.get_level_color(record.levelno)
        formatted_message = _STATE_PATTERN.sub(
            lambda match: f"{STATE_COLORS[match.group(1)]}{match.group(1)}{RESET}{level_color}",
            formatted_message,
        )
        if record.levelno < logging.ERROR:
            formatted_message = _FAILURE_PATTERN.sub(
                lambda match: f"{RED}{match.group(1)}{RESET}{level_color}",
                formatted_message,
            )
        return f"{level_color}{formatted_message}{RESET}"

    def get_level_color(self, levelno: int) -> str:
        for threshold in sorted(LEVEL_COLORS, reverse=True):
            if levelno >= threshold:
                return LEVEL_COLORS[threshold]
        return RESET


class UvicornAccessFilter(logging.Filter):
    """
    Filter to downgrade polling of the operational endpoints to DEBUG level.
    Proxied requests keep INFO level.
    """

    def __init__(self, quiet_prefixes: Iterable[str] = (ADMIN_PATH_PREFIX,)) -> None:
        super().__init__()
        self.quiet_prefixes = tuple(quiet_prefixes)

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        if '"GET ' in message and any(
            f"GET {prefix}" in message for prefix in self.quiet_prefixes
        ):
            record.levelno = logging.DEBUG
            record.levelname = "DEBUG"
        return True


def setup_logging(name: Optional[str] = None, debug: bool = False) -> logging.Logger:
    """
    Set up and configure logging for the proxy host.

    Safe to call more than once; every call replaces the previous handlers.

    Args:
        name: Logger name. If None, returns the "coldstart" logger.
        debug: Log at DEBUG level instead of INFO.

    Returns:
        Configured logger instance.
    """
    log_level = logging.DEBUG if debug else logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ColoredFormatter(use_color=sys.stdout.isatty()))

    logging.basicConfig(
        level=log_level,
        handlers=[handler],
        force=True,
    )
    # Uvicorn logs through the same handler as the proxy itself
    for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        log_obj = logging.getLogger(logger_name)
        log_obj.handlers = [handler]
        log_obj.propagate = False

    access_logger = logging.getLogger("uvicorn.access")
    for existing in list(access_logger.filters):
        if isinstance(existing, UvicornAccessFilter):
            access_logger.removeFilter(existing)
    access_logger.addFilter(UvicornAccessFilter())

    # HTTP and Docker client libraries log every request at INFO/DEBUG
    for noisy in ("httpx", "httpcore", "urllib3", "docker"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return logging.getLogger(name or "coldstart")


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance with the given name.

    Args:
        name: Logger name (typically __name__ of the module).

    Returns:
        Logger instance.
    """
    return logging.getLogger(name)
