"""
Logging setup for the payments service.

Two streams go to stdout:
- application logs (module loggers), prefixed with logger name and level,
  and with a timestamp only outside containers since the runtime adds one;
- the ``payments`` event stream from fsm.logger, one JSON document per
  line with no prefix so log shippers can parse it as-is.

The level comes from ``LOG_LEVEL`` unless passed explicitly.
"""
import os
import sys
import logging
from typing import Optional, Union

PAYMENT_EVENT_LOGGER = "payments"

CONTAINER_FORMAT = "[%(name)s] %(levelname)s: %(message)s"
LOCAL_FORMAT = "[%(asctime)s] [%(name)s] %(levelname)s: %(message)s"
LOCAL_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

NOISY_LOGGERS = ("httpx", "httpcore", "urllib3", "stripe", "apscheduler")


def running_in_container() -> bool:
    return bool(
        os.environ.get("FLY_APP_NAME")
        or os.environ.get("KUBERNETES_SERVICE_HOST")
        or os.path.exists("/.dockerenv")
    )


def _stdout_handler(level: int, fmt: str, datefmt: Optional[str] = None) -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt, datefmt=datefmt))
    return handler


def _reset(logger: logging.Logger) -> None:
    for existing in list(logger.handlers):
        logger.removeHandler(existing)


def resolve_level(level: Union[int, str, None]) -> int:
    """Accept a logging constant, a level name, or fall back to LOG_LEVEL."""
    if level is None:
        level = os.environ.get("LOG_LEVEL", "INFO")
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def configure_logging(level: Union[int, str, None] = None, force: bool = False) -> None:
    """
    Install stdout handlers for application logs and payment events.

    Args:
        level: Logging level or level name (default: LOG_LEVEL env, else INFO)
        force: Replace handlers that are already installed
    """
    root = logging.getLogger()
    if root.handlers and not force:
        return

    level = resolve_level(level)
    _reset(root)
    if running_in_container():
        root.addHandler(_stdout_handler(level, CONTAINER_FORMAT))
    else:
        root.addHandler(_stdout_handler(level, LOCAL_FORMAT, LOCAL_DATE_FORMAT))
    root.setLevel(level)

    events = logging.getLogger(PAYMENT_EVENT_LOGGER)
    _reset(events)
    events.addHandler(_stdout_handler(level, "%(message)s"))
    events.setLevel(level)
    events.propagate = False

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
