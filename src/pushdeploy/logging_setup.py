"""Console and deploy log file handlers."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(log_file: Path | None = None, level: int | str = logging.INFO) -> None:
    """Install the console handler and, if given, the append-only deploy log.

    Safe to call more than once; previously installed handlers are replaced.
    """
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    root = logging.getLogger("pushdeploy")
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    root.addHandler(console)

    if log_file is not None:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        except OSError as exc:
            root.warning("Cannot write deploy log %s, logging to console only: %s", log_file, exc)
        else:
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)

    root.setLevel(level)
