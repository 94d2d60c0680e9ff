"""Logging configuration for the command-line runner and the service.

Library modules only call ``logging.getLogger(__name__)``; handlers are
installed once by the entry point.
"""

from __future__ import annotations

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

FILE_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


class StructuredFormatter(logging.Formatter):
    """Console formatter with UTC timestamps and level colors."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
        "RESET": "\033[0m",
    }

    def __init__(self, use_color: bool = True) -> None:
        super().__init__()
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()
        msg = f"[{ts}] {record.levelname:8} [{record.name}] {record.getMessage()}"
        if self.use_color:
            color = self.COLORS.get(record.levelname, self.COLORS["RESET"])
            msg = f"{color}{msg}{self.COLORS['RESET']}"
        if record.exc_info:
            msg += "\n" + self.formatException(record.exc_info)
        return msg


def setup_logging(
    level: str = "INFO",
    log_file: Optional[Union[str, Path]] = None,
    use_color: Optional[bool] = None,
) -> None:
    """Configure the root logger.

    Args:
        level: logging level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_file: optional path; parent directories are created.
        use_color: force ANSI colors on/off; defaults to ``isatty`` of stdout.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()

    if use_color is None:
        use_color = bool(getattr(sys.stdout, "isatty", lambda: False)())
    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(StructuredFormatter(use_color=use_color))
    root.addHandler(console)

    if log_file is not None:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(path, encoding="utf-8")
        fh.setFormatter(logging.Formatter(FILE_FORMAT))
        root.addHandler(fh)