"""
Logging Configuration for delta_index.

Provides centralized logger setup for the indexing and retrieval services.
All loggers share one debug trace written to the state directory and to stderr.
"""

import logging
import os
import sys
from pathlib import Path
from typing import Optional

DEBUG_TRACE_LOGGER_NAME = "delta_index.debug_trace"
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


# State directory priority (same as the embedding cache snapshot):
# 1. DELTA_INDEX_STATE_DIR (explicit)
# 2. DELTA_INDEX_PROJECT_ROOT/.delta_index (if set)
# 3. CWD/.delta_index (fallback)
def get_state_directory() -> Path:
    """Get the directory used for logs and the embedding cache snapshot."""
    state_dir = os.getenv("DELTA_INDEX_STATE_DIR")
    if not state_dir:
        project_root = os.getenv("DELTA_INDEX_PROJECT_ROOT")
        if project_root:
            state_dir = str(Path(project_root) / ".delta_index")
        else:
            state_dir = str(Path.cwd() / ".delta_index")
    return Path(state_dir)


def _debug_log_enabled() -> bool:
    # Set DELTA_INDEX_DEBUG_LOG="" to disable the file handler
    debug_log_env = os.getenv("DELTA_INDEX_DEBUG_LOG")
    return debug_log_env is None or debug_log_env != ""


def _create_file_handler(log_filename: str) -> Optional[logging.FileHandler]:
    """
    Create a file handler for the specified log file.

    Args:
        log_filename: Name of the log file (e.g., 'debug_trace.log')

    Returns:
        Configured FileHandler, or None if file logging is disabled or unavailable
    """
    if not _debug_log_enabled():
        return None

    try:
        log_dir = get_state_directory()
        log_dir.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_dir / log_filename, mode='a', encoding='utf-8')
    except OSError:
        return None
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    return handler


class FlushingStreamHandler(logging.StreamHandler):
    """StreamHandler that flushes after every emit.

    ::: This is-in-layer Infrastructure-Layer.
    ::: This is a handler.
    ::: This is stateless.
    """
    def emit(self, record):
        super().emit(record)
        self.flush()


def _create_stderr_handler() -> logging.StreamHandler:
    """Create a stderr handler for console output with auto-flush."""
    handler = FlushingStreamHandler(sys.stderr)
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    return handler


_stderr_suppressed = False


def get_debug_trace_logger() -> logging.Logger:
    """
    Get the debug trace logger shared by all delta_index modules.

    Output goes to <state dir>/debug_trace.log and stderr.

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(DEBUG_TRACE_LOGGER_NAME)

    # Only configure once
    if not logger.handlers:
        logger.setLevel(logging.DEBUG)
        logger.propagate = False

        file_handler = _create_file_handler("debug_trace.log")
        if file_handler:
            logger.addHandler(file_handler)

        logger.addHandler(_create_stderr_handler())

    return logger


def configure_logger_for_debug_trace(logger_name: str) -> logging.Logger:
    """
    Configure a logger to also write to debug_trace.log.

    Args:
        logger_name: Name of the logger to configure (e.g., __name__)

    Returns:
        Configured logger instance
    """
    trace_logger = get_debug_trace_logger()
    logger = logging.getLogger(logger_name)
    logger.setLevel(logging.DEBUG)
    for handler in trace_logger.handlers:
        if handler not in logger.handlers:
            logger.addHandler(handler)
    return logger


def is_stderr_suppressed() -> bool:
    """Check whether console logging is currently suppressed."""
    return _stderr_suppressed


def suppress_stderr_logging() -> None:
    """
    Suppress stderr logging for the debug trace.

    File logging continues to work normally.
    """
    global _stderr_suppressed
    _stderr_suppressed = True
    for handler in get_debug_trace_logger().handlers:
        if isinstance(handler, logging.StreamHandler) and not isinstance(handler, logging.FileHandler):
            handler.setLevel(logging.CRITICAL + 1)  # Effectively disable


def restore_stderr_logging() -> None:
    """Restore stderr logging after suppress_stderr_logging()."""
    global _stderr_suppressed
    _stderr_suppressed = False
    for handler in get_debug_trace_logger().handlers:
        if isinstance(handler, logging.StreamHandler) and not isinstance(handler, logging.FileHandler):
            handler.setLevel(logging.INFO)
