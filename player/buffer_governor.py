"""
Client-side buffer governor.

Runs alongside the player UI and watches the playback element's buffered
ranges. On each tick it classifies buffer health, keeps pre-fetching enabled
while playback is paused, and reports a rolling download-speed estimate.

The element and the clock are injected, so everything here can be driven from
tests without a real media backend:

    governor = BufferGovernor(element, clock=fake_clock)
    governor.load("https://example.com/movie.mp4")
    governor.on_metadata()
    status = governor.tick()

States: IDLE -> LOADING (source set) -> TRACKING (metadata known) -> IDLE
(unload or a new source).
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Sequence, Tuple

from player.buffering import BufferHealth, BufferSnapshot, classify_health
from player.throughput import SpeedReading, SpeedState, ThroughputEstimator

LOG = logging.getLogger(__name__)


class PlaybackElement(ABC):
    """The bits of a media element the governor reads or nudges."""

    @abstractmethod
    def buffered_ranges(self) -> Sequence[Tuple[float, float]]:
        ...

    @abstractmethod
    def current_time(self) -> float:
        ...

    @abstractmethod
    def duration(self) -> Optional[float]:
        ...

    @abstractmethod
    def is_paused(self) -> bool:
        ...

    @abstractmethod
    def encourage_buffering(self) -> None:
        """Keep aggressive pre-fetch enabled (e.g. preload=auto)."""


class GovernorState(Enum):
    IDLE = "idle"
    LOADING = "loading"
    TRACKING = "tracking"


@dataclass(frozen=True)
class GovernorSettings:
    tick_interval: float = 0.5
    target_ahead: float = 60.0
    history_ratio: float = 0.10
    healthy_ahead: float = 30.0
    warning_ahead: float = 10.0
    assumed_bitrate_bps: float = 5000000
    sample_interval: float = 0.3
    stall_after: float = 2.0
    window_size: int = 10
    full_tolerance: float = 0.5

    @classmethod
    def from_config(cls, cfg: Optional[dict]) -> "GovernorSettings":
        cfg = cfg or {}
        return cls(
            tick_interval=float(cfg.get("tick_interval_seconds", cls.tick_interval)),
            target_ahead=float(cfg.get("target_buffer_ahead_seconds", cls.target_ahead)),
            history_ratio=float(cfg.get("history_buffer_ratio", cls.history_ratio)),
            healthy_ahead=float(cfg.get("healthy_ahead_seconds", cls.healthy_ahead)),
            warning_ahead=float(cfg.get("warning_ahead_seconds", cls.warning_ahead)),
            assumed_bitrate_bps=float(cfg.get("assumed_bitrate_bps", cls.assumed_bitrate_bps)),
            sample_interval=float(cfg.get("speed_sample_interval_seconds", cls.sample_interval)),
            stall_after=float(cfg.get("speed_stall_seconds", cls.stall_after)),
            window_size=int(cfg.get("speed_window_size", cls.window_size)),
        )


@dataclass(frozen=True)
class GovernorStatus:
    snapshot: BufferSnapshot
    health: BufferHealth
    buffer_ahead: float
    buffer_behind: float
    required_history: float
    encouraging: bool
    speed: SpeedReading

    @property
    def speed_label(self) -> str:
        if self.snapshot.is_fully_buffered(1.0):
            return "Complete"
        if self.speed.state == SpeedState.IDLE:
            return f"{self.snapshot.percent_loaded}% loaded"
        return self.speed.label


class BufferGovernor:
    def __init__(
        self,
        element: PlaybackElement,
        settings: Optional[GovernorSettings] = None,
        clock: Callable[[], float] = time.monotonic,
        on_status: Optional[Callable[[GovernorStatus], None]] = None,
        dispatch: Optional[Callable[[Callable[[], None]], None]] = None,
    ):
        """
        on_status and the element methods are called from whichever thread runs
        tick(). The periodic ticker runs on its own thread; a UI that needs those
        calls on its main thread passes dispatch (e.g. wx.CallAfter) and each
        periodic tick is handed to it instead of being run directly.
        """
        self.element = element
        self.settings = settings or GovernorSettings()
        self.clock = clock
        self.on_status = on_status
        self.dispatch = dispatch
        self.estimator = ThroughputEstimator(
            assumed_bitrate_bps=self.settings.assumed_bitrate_bps,
            window_size=self.settings.window_size,
            min_interval=self.settings.sample_interval,
            stall_after=self.settings.stall_after,
        )
        self.state = GovernorState.IDLE
        self.source: Optional[str] = None
        self.max_watched = 0.0
        self.last_status: Optional[GovernorStatus] = None

        self._lock = threading.RLock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def load(self, source: str) -> None:
        self.stop()
        with self._lock:
            self.source = source
            self.max_watched = 0.0
            self.last_status = None
            self.estimator.reset()
            self.state = GovernorState.LOADING
        LOG.debug("Governor loading %s", source)

    def on_metadata(self, start_ticking: bool = False) -> None:
        with self._lock:
            if self.state != GovernorState.LOADING:
                return
            self.state = GovernorState.TRACKING
        if start_ticking:
            self.start()

    def unload(self) -> None:
        self.stop()
        with self._lock:
            self.state = GovernorState.IDLE
            self.source = None
            self.max_watched = 0.0

    # ------------------------------------------------------------------
    # Element events
    # ------------------------------------------------------------------

    def on_time_update(self) -> None:
        with self._lock:
            pos = float(self.element.current_time() or 0.0)
            if pos > self.max_watched:
                self.max_watched = pos

    def on_progress(self) -> Optional[SpeedReading]:
        """Buffered data grew (or may have); feed the speed estimator."""
        with self._lock:
            if self.state != GovernorState.TRACKING:
                return None
            snap = self.snapshot()
            return self.estimator.observe(snap.total_buffered, self.clock(), snap.duration)

    def snapshot(self) -> BufferSnapshot:
        with self._lock:
            self.on_time_update()
            return BufferSnapshot.capture(
                self.element.buffered_ranges(),
                self.element.current_time(),
                self.max_watched,
                self.element.duration(),
            )

    def is_time_buffered(self, t: float) -> bool:
        return self.snapshot().is_time_buffered(t)

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    def tick(self) -> Optional[GovernorStatus]:
        with self._lock:
            if self.state != GovernorState.TRACKING or not self.element.duration():
                return None
            snap = self.snapshot()
            ahead = snap.buffer_ahead
            health = classify_health(ahead, self.settings.healthy_ahead, self.settings.warning_ahead)

            encouraging = (
                self.element.is_paused()
                and ahead < self.settings.target_ahead
                and not snap.is_fully_buffered(self.settings.full_tolerance)
            )
            if encouraging:
                self.element.encourage_buffering()

            status = GovernorStatus(
                snapshot=snap,
                health=health,
                buffer_ahead=ahead,
                buffer_behind=snap.buffer_behind,
                required_history=snap.max_watched * self.settings.history_ratio,
                encouraging=encouraging,
                speed=self.estimator.current(self.clock(), snap.total_buffered, snap.duration),
            )
            self.last_status = status
        if self.on_status is not None:
            try:
                self.on_status(status)
            except Exception as e:
                LOG.warning("Buffer status callback failed: %s", e)
        return status

    # ------------------------------------------------------------------
    # Periodic timer
    # ------------------------------------------------------------------

    def start(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._stop.clear()
            self._thread = threading.Thread(target=self._run, name="BufferGovernor", daemon=True)
            self._thread.start()

    def stop(self) -> None:
        with self._lock:
            thread = self._thread
            self._thread = None
            self._stop.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=max(1.0, self.settings.tick_interval * 2))

    def _run(self) -> None:
        while not self._stop.wait(self.settings.tick_interval):
            if self.dispatch is None:
                self._safe_tick()
                continue
            try:
                self.dispatch(self._safe_tick)
            except Exception as e:
                LOG.warning("Buffer governor dispatch failed: %s", e)

    def _safe_tick(self) -> None:
        if self._stop.is_set():
            return
        try:
            self.tick()
        except Exception as e:
            LOG.warning("Buffer governor tick failed: %s", e)
