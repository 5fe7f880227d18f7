"""Logging helpers shared by the chat relay entry points."""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Union

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
LOG_FILENAME = "chat_relay.log"


def setup_logging(log_dir: Union[str, Path], level: int = logging.INFO) -> Path:
    """Configure file and console logging, returning the log file path.

    Calling this more than once replaces previously installed handlers so
    repeated app creation (e.g. in tests) does not duplicate output.
    """
    directory = Path(log_dir)
    directory.mkdir(parents=True, exist_ok=True)
    log_path = directory / LOG_FILENAME

    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_chat_relay", False):
            root.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(LOG_FORMAT)
    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    console_handler = logging.StreamHandler(sys.stdout)
    for handler in (file_handler, console_handler):
        handler.setFormatter(formatter)
        handler._chat_relay = True  # type: ignore[attr-defined]
        root.addHandler(handler)

    root.setLevel(level)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger(__name__).debug("Logging configured at %s", log_path)
    return log_path


def preview(text: str, limit: int = 60) -> str:
    """Single-line excerpt used in log messages."""
    flat = text.replace("\n", " ").strip()
    return flat if len(flat) <= limit else flat[:limit] + "..."
