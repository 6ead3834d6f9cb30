"""
Logging setup for applications embedding buffersync.

Every buffersync module logs through ``logging.getLogger(__name__)``, so all
records flow through the ``buffersync`` package logger. setup_logging()
attaches handlers there and leaves the root logger, and whatever the host
application installed on it, untouched.
"""

import logging
import sys
from pathlib import Path
from typing import Optional

from .config import LoggingConfig
from .errors import ConfigurationError

PACKAGE_LOGGER = "buffersync"
DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Marks handlers installed by setup_logging so a second call replaces only those
_HANDLER_TAG = "_buffersync_handler"


def _resolve_level(level: str) -> int:
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        raise ConfigurationError(f"Unknown logging level {level!r}")
    return numeric_level


def setup_logging(config: Optional[LoggingConfig] = None,
                  format_string: Optional[str] = None) -> logging.Logger:
    """
    Configure the ``buffersync`` logger from a LoggingConfig.

    Installs a console handler and, if ``config.log_file`` is set, a file
    handler (parent directories are created). Calling it again swaps the
    handlers of the previous call instead of stacking new ones. With
    ``config.propagate`` false, clock resets and forced polls stay out of
    the application's root handlers.

    Args:
        config: Logging section of the configuration (defaults if None)
        format_string: Optional custom format string

    Returns:
        The configured package logger
    """
    config = config or LoggingConfig()
    numeric_level = _resolve_level(config.level)
    formatter = logging.Formatter(format_string or DEFAULT_FORMAT)

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(numeric_level)
    package_logger.propagate = config.propagate

    for handler in package_logger.handlers[:]:
        if getattr(handler, _HANDLER_TAG, False):
            package_logger.removeHandler(handler)
            handler.close()

    handlers = [logging.StreamHandler(sys.stdout)]
    if config.log_file:
        log_path = Path(config.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))

    for handler in handlers:
        handler.setLevel(numeric_level)
        handler.setFormatter(formatter)
        setattr(handler, _HANDLER_TAG, True)
        package_logger.addHandler(handler)

    package_logger.info(f"[LOGGING] level={logging.getLevelName(numeric_level)}, "
                        f"file={config.log_file}, propagate={config.propagate}")
    return package_logger
