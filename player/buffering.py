from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Sequence, Tuple

Range = Tuple[float, float]


class BufferHealth(Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


def classify_health(ahead: float, healthy_at: float = 30.0, warning_at: float = 10.0) -> BufferHealth:
    if ahead >= healthy_at:
        return BufferHealth.HEALTHY
    if ahead >= warning_at:
        return BufferHealth.WARNING
    return BufferHealth.CRITICAL


def normalize_ranges(ranges: Iterable[Sequence[float]]) -> List[Range]:
    """Sort buffered ranges by start and merge any that overlap."""
    cleaned: List[Range] = []
    for r in ranges or []:
        try:
            s, e = float(r[0]), float(r[1])
        except (TypeError, ValueError, IndexError):
            continue
        if e < s:
            continue
        cleaned.append((s, e))
    if not cleaned:
        return []
    cleaned.sort()
    out: List[Range] = []
    cs, ce = cleaned[0]
    for s, e in cleaned[1:]:
        if s <= ce:
            ce = max(ce, e)
        else:
            out.append((cs, ce))
            cs, ce = s, e
    out.append((cs, ce))
    return out


@dataclass(frozen=True)
class BufferSnapshot:
    """Point-in-time view of what the playback element has downloaded."""

    ranges: Tuple[Range, ...]
    position: float
    max_watched: float
    duration: Optional[float] = None

    @classmethod
    def capture(cls, ranges, position: float, max_watched: float, duration: Optional[float] = None) -> "BufferSnapshot":
        return cls(tuple(normalize_ranges(ranges)), float(position or 0.0), float(max_watched or 0.0), duration)

    def containing_range(self, t: Optional[float] = None) -> Optional[Range]:
        t = self.position if t is None else t
        for s, e in self.ranges:
            if s <= t <= e:
                return (s, e)
        return None

    @property
    def buffer_ahead(self) -> float:
        r = self.containing_range()
        return r[1] - self.position if r else 0.0

    @property
    def buffer_behind(self) -> float:
        r = self.containing_range()
        return self.position - r[0] if r else 0.0

    @property
    def total_buffered(self) -> float:
        return sum(e - s for s, e in self.ranges)

    def is_time_buffered(self, t: float) -> bool:
        return self.containing_range(t) is not None

    def is_fully_buffered(self, tolerance: float = 0.5) -> bool:
        if not self.duration:
            return False
        return self.total_buffered >= self.duration - tolerance

    @property
    def percent_loaded(self) -> int:
        if not self.duration:
            return 0
        return int(round(self.total_buffered / self.duration * 100))
