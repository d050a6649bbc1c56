"""
Diagnostic logging for provisionctl.

Two logs exist side by side:

    run log         NDJSON, one line per engine decision (Reporter)
    diagnostic log  this module; human text on stderr and, optionally, a file

The diagnostic file carries the id of the run in progress on every line,
so ``grep <run_id>`` finds both logs' view of the same run.

Level precedence:
    --debug / -v / -q  >  PROVISIONCTL_LOG_LEVEL  >  WARNING
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

ENV_LEVEL = "PROVISIONCTL_LOG_LEVEL"
ENV_FILE = "PROVISIONCTL_LOG_FILE"
ENV_FILE_LEVEL = "PROVISIONCTL_LOG_FILE_LEVEL"

_CONSOLE_FORMATS = {
    logging.DEBUG: ("%(asctime)s %(levelname)-5s %(name)s:%(lineno)d %(message)s", "%H:%M:%S"),
    logging.INFO: ("%(asctime)s %(message)s", "%H:%M:%S"),
}
_CONSOLE_DEFAULT = ("%(message)s", None)

_FILE_FORMAT = "%(asctime)s %(levelname)-5s [%(run_id)s] %(name)s:%(lineno)d %(message)s"
_FILE_DATEFMT = "%Y-%m-%d %H:%M:%S"

_NO_RUN = "-"
_current_run_id = _NO_RUN


class _RunIdFilter(logging.Filter):
    """Stamps ``record.run_id`` with the run in progress."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.run_id = _current_run_id
        return True


def bind_run_id(run_id: str | None) -> None:
    """Tag subsequent diagnostic lines with ``run_id`` (``None`` clears it)."""
    global _current_run_id
    _current_run_id = run_id or _NO_RUN


def level_from_flags(verbose: bool = False, quiet: bool = False, debug: bool = False) -> str:
    """Map the global CLI flags to a level name; flags beat the environment."""
    if debug:
        return "DEBUG"
    if verbose:
        return "INFO"
    if quiet:
        return "ERROR"
    return os.environ.get(ENV_LEVEL, "WARNING")


def setup_logging(
    level: str = "WARNING",
    log_file: str | None = None,
    log_file_level: str | None = None,
) -> None:
    """Install the console handler and, if asked, the diagnostic file handler.

    Safe to call more than once; previous root handlers are replaced.
    ``log_file`` and ``log_file_level`` fall back to the
    ``PROVISIONCTL_LOG_FILE`` and ``PROVISIONCTL_LOG_FILE_LEVEL`` variables.
    """
    numeric_level = _parse_level(level)
    fmt, datefmt = _CONSOLE_FORMATS.get(numeric_level, _CONSOLE_DEFAULT)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(numeric_level)
    console.setFormatter(logging.Formatter(fmt, datefmt=datefmt))

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    root.addHandler(console)

    effective_level = numeric_level
    log_file = log_file or os.environ.get(ENV_FILE)
    if log_file:
        file_level = _parse_level(log_file_level or os.environ.get(ENV_FILE_LEVEL) or level)
        effective_level = min(effective_level, file_level)

        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(log_file, encoding="utf-8")
        fh.setLevel(file_level)
        fh.addFilter(_RunIdFilter())
        fh.setFormatter(logging.Formatter(_FILE_FORMAT, datefmt=_FILE_DATEFMT))
        root.addHandler(fh)

    root.setLevel(effective_level)
    logging.raiseExceptions = False


def _parse_level(level: str | None) -> int:
    """Level name to number; anything unknown means WARNING."""
    if not level:
        return logging.WARNING
    numeric = getattr(logging, level.upper(), None)
    if not isinstance(numeric, int):
        return logging.WARNING
    return numeric
