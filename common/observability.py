"""
Common observability utilities for the power control service
"""

import logging
import os
from logging.handlers import RotatingFileHandler

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

# <repo>/logs, independent of the working directory
DEFAULT_LOG_DIR = os.path.abspath(os.path.join(os.path.dirname(os.path.abspath(__file__)), '..', 'logs'))


def get_log_dir() -> str:
    """Directory for rotating log files; ``POWER_CONTROL_LOG_DIR`` overrides the default."""
    return os.path.abspath(os.environ.get("POWER_CONTROL_LOG_DIR", DEFAULT_LOG_DIR))


def _file_handler(log_file_name: str) -> RotatingFileHandler | None:
    log_dir = get_log_dir()
    try:
        os.makedirs(log_dir, exist_ok=True)
        handler = RotatingFileHandler(
            os.path.join(log_dir, f'{log_file_name}.log'),
            maxBytes=10 * 1024 * 1024,  # 10 MB
            backupCount=5,
            encoding="utf-8",
        )
    except OSError as exc:
        logging.getLogger(__name__).debug("File logging disabled for %s: %s", log_file_name, exc)
        return None
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
    return handler


def get_logger(name: str) -> logging.Logger:
    """
    Get a configured logger instance for the given name.
    The logger writes to a dedicated rotating file and propagates to the
    root logger, which ``setup_logging`` points at the console. When the log
    directory cannot be created or written, only the console output remains.

    Args:
        name: Logger name (typically __name__)
    Returns:
        Configured logger instance
    """
    # "agents.power_control.engine" logs to "engine.log"
    log_file_name = name.split('.')[-1] if name else 'app'

    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG)

    has_file = any(isinstance(h, RotatingFileHandler) for h in logger.handlers)
    if not has_file:
        file_handler = _file_handler(log_file_name)
        if file_handler is not None:
            logger.addHandler(file_handler)

    return logger


def setup_logging(level: int = logging.INFO, format_string: str | None = None) -> None:
    """
    Point the root logger at the console. Loggers from get_logger propagate here.

    Args:
        level: Logging level (default: INFO)
        format_string: Custom format string (optional)
    """
    if format_string is None:
        format_string = LOG_FORMAT

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    if not root_logger.handlers:
        logging.basicConfig(
            level=level,
            format=format_string,
            datefmt=LOG_DATEFMT,
            handlers=[logging.StreamHandler()],
        )


def bootstrap_observability(service_name: str, *, level: int | str = logging.INFO) -> logging.Logger:
    """Configure logging for a service entry point and return its logger."""
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    setup_logging(level=level)
    return get_logger(service_name)
