"""
Gapless playback scheduling.

Decoded buffers are placed back to back on the output device clock. A buffer
never starts before the previous one ends, and never starts in the past.
"""

from __future__ import annotations

import threading
from typing import Protocol

import numpy as np

from logging_setup import Component, get_logger

logger = get_logger(Component.AUDIO)


class OutputDevice(Protocol):
    """Audio sink with its own monotonic clock (seconds)."""

    def start(self) -> None: ...

    def stop(self) -> None: ...

    def current_time(self) -> float: ...

    def play_at(self, samples: np.ndarray, start_at: float) -> None: ...


class PlaybackScheduler:
    """
    Sequences buffers onto one output device.

    One scheduler per session; `reset()` rewinds the cursor when a new
    session starts.
    """

    def __init__(self, output: OutputDevice):
        self._output = output
        self._next_start_time = 0.0
        self._lock = threading.Lock()

    @property
    def next_start_time(self) -> float:
        with self._lock:
            return self._next_start_time

    def schedule(self, buffer: np.ndarray, duration: float, now: float | None = None) -> float:
        """
        Queue `buffer` to start at max(now, next_start_time).

        Returns the start time handed to the device.
        """
        if now is None:
            now = self._output.current_time()
        with self._lock:
            start_at = max(now, self._next_start_time)
            self._next_start_time = start_at + duration
        self._output.play_at(buffer, start_at)
        return start_at

    def reset(self) -> None:
        with self._lock:
            self._next_start_time = 0.0
        logger.debug("Playback cursor reset")
