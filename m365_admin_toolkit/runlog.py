"""
Append-only run log.

One line per event: `<timestamp>\\t<message>`. The file is created on first
use, always opened for append, and never rotated or truncated here.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

RUN_LOG_FORMAT = "%(asctime)s\t%(message)s"
RUN_LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"
FATAL_MARKER = "FATAL:"


class RunLog:
    """
    Wraps a dedicated logger writing to the run-log file.

    Usage:
        with RunLog("./sync.log") as runlog:
            runlog.event("Started")
    """

    def __init__(self, path: str, name: str = "m365_admin_toolkit.runlog"):
        self.path = Path(path).expanduser()
        self.logger = logging.getLogger(f"{name}.{id(self)}")
        self.logger.setLevel(logging.INFO)
        self.logger.propagate = False
        self._handler: Optional[logging.FileHandler] = None

    def __enter__(self) -> "RunLog":
        self.open()
        return self

    def __exit__(self, *args):
        self.close()

    def open(self):
        if self._handler:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(str(self.path), mode="a", encoding="utf-8")
        handler.setFormatter(logging.Formatter(RUN_LOG_FORMAT, datefmt=RUN_LOG_DATEFMT))
        self.logger.addHandler(handler)
        self._handler = handler

    def close(self):
        if self._handler:
            self.logger.removeHandler(self._handler)
            self._handler.close()
            self._handler = None

    def event(self, message: str):
        self.logger.info(_one_line(message))

    def error(self, message: str):
        self.logger.error(_one_line(f"ERROR: {message}"))

    def fatal(self, message: str):
        self.logger.critical(_one_line(f"{FATAL_MARKER} {message}"))


def _one_line(message: str) -> str:
    """Tabs and newlines would break the one-event-per-line format."""
    return " ".join(str(message).split())
