"""Logging setup for botpanel.

Every module logs through a named standard library logger under the
``botpanel`` namespace. `configure_logging` attaches the single stream
handler once at process start; `get_logger` is safe to call from anywhere.
"""
import logging
from typing import Optional

FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO", logfile: Optional[str] = None) -> logging.Logger:
    root = logging.getLogger("botpanel")
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(FORMAT))
        root.addHandler(handler)
        if logfile:
            fh = logging.FileHandler(logfile)
            fh.setFormatter(logging.Formatter(FORMAT))
            root.addHandler(fh)
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    return root


def get_logger(name: str = "botpanel") -> logging.Logger:
    if name != "botpanel" and not name.startswith("botpanel."):
        name = f"botpanel.{name}"
    return logging.getLogger(name)
