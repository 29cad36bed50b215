"""
Logging setup shared by every TARA module.

Each module asks for its own named logger; all of them live under the
``tara`` namespace so one ``LOG_LEVEL`` governs the whole engine.  Console
output goes through Rich when stdout is a terminal and colour has not been
disabled (``NO_COLOR``), and through a plain stream handler otherwise.  The
plain format carries the module name, since voice mode interleaves records
from the recogniser, the synthesiser and the coordinator threads.

Third-party libraries that log every request or model load (werkzeug,
faster-whisper) are turned down with :func:`quiet_loggers`.
"""
import logging
import os
import sys
from typing import Optional

from rich.logging import RichHandler

NAMESPACE = "tara"
PLAIN_FORMAT = "[%(asctime)s] [%(levelname)s] [%(module_name)s] %(message)s"


class _ModuleNameFilter(logging.Filter):
    """Adds ``module_name``: the logger name without the package prefix."""

    def filter(self, record: logging.LogRecord) -> bool:
        name = record.name
        if name.startswith(NAMESPACE + "."):
            name = name[len(NAMESPACE) + 1:]
        record.module_name = name
        return True


def _level_from(value: Optional[str]) -> int:
    level_str = (value or os.getenv("LOG_LEVEL", "INFO")).strip().upper()
    if level_str.isdigit():
        return int(level_str)
    return getattr(logging, level_str, logging.INFO)


def _console_handler() -> logging.Handler:
    if os.getenv("NO_COLOR") is None and sys.stdout.isatty():
        handler: logging.Handler = RichHandler(
            rich_tracebacks=True,
            show_time=True,
            show_level=True,
            show_path=False,
            markup=False,
        )
        handler.setFormatter(logging.Formatter("[%(module_name)s] %(message)s"))
    else:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(PLAIN_FORMAT, datefmt="%H:%M:%S"))
    handler.addFilter(_ModuleNameFilter())
    return handler


def setup_log_system(name: str, *, level: Optional[str] = None) -> logging.Logger:
    """
    Return the logger for ``name`` (a module name such as ``"chat_pipeline"``).

    The console handler is attached once, to the ``tara`` namespace logger;
    module loggers propagate to it, and on to the root logger so that host
    applications (the web service, tests) still see every record.
    """
    log_level = _level_from(level)

    base = logging.getLogger(NAMESPACE)
    if not base.handlers:
        base.addHandler(_console_handler())
    base.setLevel(min(base.level or log_level, log_level))

    logger = base if name == NAMESPACE else logging.getLogger(f"{NAMESPACE}.{name}")
    logger.setLevel(log_level)
    logger.propagate = True
    return logger


def quiet_loggers(*names: str, level: int = logging.WARNING) -> None:
    """Raise the threshold of chatty third-party loggers."""
    for name in names:
        logging.getLogger(name).setLevel(level)


get_logger = setup_log_system
