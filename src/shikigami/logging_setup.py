"""Console logging for the ``shiki`` CLI."""

from __future__ import annotations

import logging
import sys


class _ConsoleNoiseFilter(logging.Filter):
    """Pass shikigami records at the configured level; third-party ones only at ERROR+."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.name == "shikigami" or record.name.startswith("shikigami."):
            return True
        return record.levelno >= logging.ERROR


def setup_logging(level: int | str = logging.WARNING) -> None:
    """Configure the root logger with one stderr handler.

    Safe to call more than once; previous handlers are replaced.
    """

    root = logging.getLogger()
    root.setLevel(level)

    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ),
    )
    handler.addFilter(_ConsoleNoiseFilter())
    root.addHandler(handler)
    logging.captureWarnings(True)
