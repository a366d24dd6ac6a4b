"""
Logging setup shared by the API and the precompute script.

    from kbchat.utils.logger import get_logger
    logger = get_logger(__name__)
"""
import logging
import sys
from typing import Optional

_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"

_ENV_LEVEL_MAP = {
    "dev": logging.DEBUG,
    "prod": logging.WARNING,
}

ROOT_LOGGER = "kbchat"


def resolve_level(env: str = "dev", log_level: str = "") -> int:
    """Explicit ``LOG_LEVEL`` wins; otherwise the level follows ``ENV``."""
    if log_level:
        return getattr(logging, log_level.upper(), logging.INFO)
    return _ENV_LEVEL_MAP.get(env, logging.INFO)


def configure_logging(level: int = logging.INFO) -> logging.Logger:
    """Attach a stdout handler to the package logger once."""
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(fmt=_FORMAT, datefmt=_DATEFMT))
        logger.addHandler(handler)
    for handler in logger.handlers:
        handler.setLevel(level)

    # Third-party clients are chatty at DEBUG
    for noisy in ("httpx", "httpcore", "openai", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    return logger


def get_logger(name: str, level: Optional[int] = None) -> logging.Logger:
    """
    Return a logger under the ``kbchat`` hierarchy.

    Module names already start with ``kbchat.``; script names get prefixed so
    they share the handler installed by :func:`configure_logging`.
    """
    if name != ROOT_LOGGER and not name.startswith(ROOT_LOGGER + "."):
        name = f"{ROOT_LOGGER}.{name}"
    logger = logging.getLogger(name)
    if level is not None:
        logger.setLevel(level)
    return logger
