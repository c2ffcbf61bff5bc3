"""Process-wide accelerator selection.

The device index is chosen once, before compilation starts. Changing it while
a compilation is running is refused.
"""

from __future__ import annotations

import contextlib
import logging
import threading
from typing import Iterator

import torch

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

_lock = threading.Lock()
_device_index = 0
_active_compilations = 0


def set_device(index: int) -> None:
    global _device_index
    if index < 0:
        raise ConfigurationError("device index must be >= 0")
    with _lock:
        if _active_compilations:
            raise ConfigurationError("The accelerator device cannot be changed while a compilation is running")
        if torch.cuda.is_available():
            if index >= torch.cuda.device_count():
                raise ConfigurationError(
                    f"device index {index} out of range, {torch.cuda.device_count()} device(s) available"
                )
            torch.cuda.set_device(index)
        _device_index = index
    logger.debug("selected accelerator device %d", index)


def current_device_index() -> int:
    return _device_index


def compilation_active() -> bool:
    return _active_compilations > 0


@contextlib.contextmanager
def compilation_guard() -> Iterator[None]:
    """Mark a compilation as running for the duration of the block."""

    global _active_compilations
    with _lock:
        _active_compilations += 1
    try:
        yield
    finally:
        with _lock:
            _active_compilations -= 1
