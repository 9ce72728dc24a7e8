# Copyright (c) 2025 Akita Engineering <https://www.akitaengineering.com>
# SPDX-License-Identifier: GPL-3.0-or-later

import logging
import time
from typing import Callable, Optional

# Basic Logging Setup
def setup_logging(level: int = logging.INFO):
    """Configures basic stream logging with timestamps and module info."""
    logging.basicConfig(
        level=level,
        format='%(asctime)s.%(msecs)03d - %(levelname)-7s - %(name)-15s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        force=True # Replace any handler installed before the config was read
    )
    # Silence overly verbose libraries - adjust levels as needed
    logging.getLogger("pubsub").setLevel(logging.WARNING)


def monotonic_ms() -> int:
    """Milliseconds from the monotonic clock. Only differences are meaningful."""
    return int(time.monotonic() * 1000)


def format_id(device_id: int) -> str:
    """Formats a device identifier the way it appears in every log line."""
    return f"0x{device_id:08X}"


class Timer:
    """A simple monotonic timer, in milliseconds."""
    def __init__(self, duration_ms: int, clock: Callable[[], int] = monotonic_ms):
        """
        Initializes the timer.
        Args:
            duration_ms: The duration for the timer in milliseconds.
            clock: Source of monotonic milliseconds (injectable for tests).
        Raises:
            ValueError: If duration is negative.
        """
        if duration_ms < 0:
            raise ValueError("Timer duration cannot be negative")
        self.duration = duration_ms
        self._clock = clock
        self.start_time: Optional[int] = None

    def start(self):
        """Starts (or restarts) the timer."""
        self.start_time = self._clock()

    def stop(self):
        """Stops the timer. It can be restarted."""
        self.start_time = None

    def reset(self):
        """Resets the timer to its full duration by restarting it."""
        self.start()

    def expired(self) -> bool:
        """Checks if the timer has run for its full duration since starting."""
        if self.start_time is None or self.duration <= 0: # Timer must have a positive duration
            return False
        return (self._clock() - self.start_time) >= self.duration

    def due(self) -> bool:
        """True when a periodic task should run: never started yet, or expired."""
        return self.start_time is None or self.expired()

    def remaining(self) -> int:
        """Gets the remaining time in ms. Returns duration if not started."""
        if self.start_time is None:
            return self.duration
        elapsed = self._clock() - self.start_time
        return max(0, self.duration - elapsed)
