"""
Logging for srepl.

Two audiences read srepl's log records. The operator watching the terminal
gets warnings and errors as short `srepl: ...` lines on stderr. A developer
chasing a bug turns on `-l DEBUG` and gets every record, timestamped, in a
file and optionally on the console.

Both the watcher and each runner child call setup_logging once at startup;
everything else only asks for a logger:

    logger = get_logger(__name__)
    logger.warning("position mapping disabled: ...")
"""

import logging
import sys
from typing import Optional

DEFAULT_LOG_FILE = '/tmp/srepl_debug.log'

ROOT_LOGGER = 'srepl'
STATUS_FORMAT = 'srepl: %(message)s'
DETAIL_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def _status_handler() -> logging.Handler:
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(logging.WARNING)
    handler.setFormatter(logging.Formatter(STATUS_FORMAT))
    return handler


def setup_logging(
    level: str = 'WARNING',
    log_file: Optional[str] = None,
    console: bool = False
) -> logging.Logger:
    """
    Configure the srepl logger tree.

    Args:
        level: Log level ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')
        log_file: Detail log path, only opened when level is DEBUG or INFO
        console: Send detail records to stderr instead of the short
            operator lines

    Returns:
        The configured 'srepl' logger
    """
    numeric_level = getattr(logging, level.upper(), logging.WARNING)

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(numeric_level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    detail = logging.Formatter(DETAIL_FORMAT)

    if numeric_level <= logging.INFO and log_file:
        file_handler = logging.FileHandler(log_file, mode='w')
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(detail)
        logger.addHandler(file_handler)

    if console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(numeric_level)
        console_handler.setFormatter(detail)
        logger.addHandler(console_handler)
    else:
        logger.addHandler(_status_handler())

    logger.debug(f"Logging configured: level={level}, log_file={log_file}, console={console}")
    return logger


def get_logger(name: str) -> logging.Logger:
    """Return a logger under the 'srepl' tree for a module name."""
    if name == ROOT_LOGGER or name.startswith(ROOT_LOGGER + '.'):
        return logging.getLogger(name)
    return logging.getLogger(f'{ROOT_LOGGER}.{name}')
