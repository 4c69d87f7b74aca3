# presence_sync/debug.py
import logging
import os
from pathlib import Path
from typing import Optional

from .config import data_dir

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

_TRUTHY = {"1", "true", "yes", "on"}


def _flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in _TRUTHY


def debug_enabled() -> bool:
    return _flag("RMP_DEBUG")


def art_debug_enabled() -> bool:
    return _flag("RMP_ART_DEBUG")


def configure_logging(log_dir: Optional[Path] = None) -> logging.Logger:
    """
    Set up the package logger.

    Console output is always on. With RMP_DEBUG=1 everything down to DEBUG is
    logged and also appended to rmp_debug.log; RMP_ART_DEBUG=1 only raises the
    artwork modules to DEBUG.
    """
    root = logging.getLogger("presence_sync")
    debug = debug_enabled()
    root.setLevel(logging.DEBUG if debug else logging.INFO)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)

    if not any(getattr(h, "_rmp_console", False) for h in root.handlers):
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        console._rmp_console = True
        root.addHandler(console)

    if debug and not any(isinstance(h, logging.FileHandler) for h in root.handlers):
        log_path = (log_dir or data_dir()) / "rmp_debug.log"
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_path, encoding="utf-8")
        except OSError as e:
            root.warning("Debug log file unavailable (%s): %s", log_path, e)
        else:
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)

    if art_debug_enabled():
        for name in ("presence_sync.artwork", "presence_sync.itunes_lookup", "presence_sync.art_cache"):
            logging.getLogger(name).setLevel(logging.DEBUG)

    return root
