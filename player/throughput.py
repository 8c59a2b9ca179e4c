"""
Download speed estimate derived from buffer growth.

The playback element only reports seconds buffered, not bytes, so growth is
converted to bytes with an assumed bitrate. Samples go into a fixed-size
window and the reading is the window's mean.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Deque, Optional


class SpeedState(Enum):
    IDLE = "idle"
    MEASURING = "measuring"
    COMPLETE = "complete"
    WAITING = "waiting"


def format_speed(bytes_per_second: float) -> str:
    if bytes_per_second >= 1000000:
        return f"{bytes_per_second / 1000000:.1f} MB/s"
    if bytes_per_second >= 1000:
        return f"{bytes_per_second / 1000:.0f} KB/s"
    if bytes_per_second > 0:
        return f"{round(bytes_per_second)} B/s"
    return ""


@dataclass(frozen=True)
class SpeedReading:
    state: SpeedState
    bytes_per_second: Optional[float] = None

    @property
    def label(self) -> str:
        if self.state == SpeedState.MEASURING and self.bytes_per_second is not None:
            return format_speed(self.bytes_per_second)
        if self.state == SpeedState.COMPLETE:
            return "Complete"
        if self.state == SpeedState.WAITING:
            return "Waiting..."
        return ""


class ThroughputEstimator:
    def __init__(
        self,
        assumed_bitrate_bps: float = 5000000,
        window_size: int = 10,
        min_interval: float = 0.3,
        stall_after: float = 2.0,
        min_growth: float = 0.1,
        complete_tolerance: float = 1.0,
    ):
        self.assumed_bitrate_bps = float(assumed_bitrate_bps)
        self.min_interval = float(min_interval)
        self.stall_after = float(stall_after)
        self.min_growth = float(min_growth)
        self.complete_tolerance = float(complete_tolerance)
        self.samples: Deque[float] = deque(maxlen=max(1, int(window_size)))
        self.reset()

    def reset(self) -> None:
        self.samples.clear()
        self._last_time: Optional[float] = None
        self._last_buffered = 0.0
        self._last_growth_at: Optional[float] = None

    @property
    def average(self) -> Optional[float]:
        if not self.samples:
            return None
        return sum(self.samples) / len(self.samples)

    def add_sample(self, bytes_per_second: float) -> float:
        self.samples.append(float(bytes_per_second))
        return self.average

    def observe(self, total_buffered: float, now: float, duration: Optional[float] = None) -> Optional[SpeedReading]:
        """Feed a progress event. Returns a fresh reading, or None inside the sampling interval."""
        if self._last_time is None:
            self._last_time = now
            self._last_buffered = total_buffered
            self._last_growth_at = now
            return None

        elapsed = now - self._last_time
        if elapsed <= self.min_interval:
            return None

        growth = total_buffered - self._last_buffered
        reading = None
        if growth > self.min_growth:
            bytes_loaded = growth * (self.assumed_bitrate_bps / 8)
            self.add_sample(bytes_loaded / elapsed)
            self._last_growth_at = now
            reading = SpeedReading(SpeedState.MEASURING, self.average)
        else:
            reading = self.stalled_reading(now, total_buffered, duration)

        self._last_time = now
        self._last_buffered = total_buffered
        return reading

    def stalled_reading(self, now: float, total_buffered: float, duration: Optional[float]) -> Optional[SpeedReading]:
        """Complete/Waiting once growth has stopped for longer than stall_after."""
        if self._last_growth_at is None or now - self._last_growth_at <= self.stall_after:
            return None
        if duration and total_buffered >= duration - self.complete_tolerance:
            return SpeedReading(SpeedState.COMPLETE)
        return SpeedReading(SpeedState.WAITING)

    def current(self, now: float, total_buffered: float, duration: Optional[float] = None) -> SpeedReading:
        stalled = self.stalled_reading(now, total_buffered, duration)
        if stalled is not None:
            return stalled
        if self.samples:
            return SpeedReading(SpeedState.MEASURING, self.average)
        return SpeedReading(SpeedState.IDLE)
