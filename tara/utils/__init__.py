"""Utility functions for TARA.

The ``logging_system`` module provides the logging setup used by every
module; it honours ``LOG_LEVEL`` and ``NO_COLOR`` and renders through Rich on
a terminal.
"""

from .logging_system import get_logger, quiet_loggers, setup_log_system  # noqa: F401

__all__ = ["setup_log_system", "get_logger", "quiet_loggers"]
