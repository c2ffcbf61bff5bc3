"""Process-wide logging setup for the ``fxengine`` logger hierarchy.

Every module logs through ``logging.getLogger(__name__)``; this module only
decides what is reported and where it goes. The default reportable level is
WARNING so that fidelity warnings are visible and per-pass chatter is not.
"""

from __future__ import annotations

import logging
from typing import Optional, Union

LOGGER_NAME = "fxengine"
DEFAULT_FORMAT = "%(levelname)s: [fxengine] %(message)s"

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

_root = logging.getLogger(LOGGER_NAME)
_root.addHandler(logging.NullHandler())
_root.setLevel(logging.WARNING)


def set_log_level(level: Union[int, str]) -> None:
    if isinstance(level, str):
        try:
            level = _LEVELS[level.lower()]
        except KeyError:
            raise ValueError(f"Unknown log level {level!r}, options are {sorted(_LEVELS)}") from None
    _root.setLevel(level)


def get_log_level() -> int:
    return _root.level


def enable_console_logging(level: Optional[Union[int, str]] = None, fmt: str = DEFAULT_FORMAT) -> logging.Handler:
    """Attach a stream handler to the ``fxengine`` logger and return it."""

    if level is not None:
        set_log_level(level)
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(fmt))
    _root.addHandler(handler)
    return handler
