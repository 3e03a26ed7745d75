from __future__ import annotations

import logging
import logging.handlers
import sys
from pathlib import Path

LOG_FILENAME = "supervisor.log"
LOG_MAX_BYTES = 1_000_000
LOG_BACKUP_COUNT = 5

_HANDLER_NAME = "ralph"


def setup_logging(log_dir: Path | None, level: str | int = "INFO") -> None:
    """Console logging plus a size-rotated file under ``log_dir``.

    Calling this again replaces the handlers installed by a previous call.
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    fmt = logging.Formatter(
        "%(asctime)s %(levelname)-8s %(name)-20s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    root = logging.getLogger()
    for handler in list(root.handlers):
        if handler.get_name() == _HANDLER_NAME:
            root.removeHandler(handler)
            handler.close()

    console = logging.StreamHandler(sys.stderr)
    console.set_name(_HANDLER_NAME)
    console.setFormatter(fmt)
    console.setLevel(level)
    root.addHandler(console)

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        fh = logging.handlers.RotatingFileHandler(
            log_dir / LOG_FILENAME,
            maxBytes=LOG_MAX_BYTES,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        fh.set_name(_HANDLER_NAME)
        fh.setFormatter(fmt)
        fh.setLevel(logging.DEBUG)
        root.addHandler(fh)

    root.setLevel(logging.DEBUG)
