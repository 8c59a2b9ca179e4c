"""
Media stream inventory via ffprobe.

Analysis is best-effort: a missing prober, a timeout, oversized output or
unparseable JSON all produce an "unavailable" payload instead of an error.
"""

from __future__ import annotations

import json
import logging
import subprocess
from dataclasses import asdict, dataclass, field
from fractions import Fraction
from typing import Any, Dict, List, Optional, Tuple

from relay import media_tools
from relay.config import RelaySettings
from relay.errors import ProberUnavailable

LOG = logging.getLogger(__name__)

UNAVAILABLE_MESSAGE = "Install ffmpeg to enable automatic audio/subtitle detection"


def _int(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _float(value) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def parse_frame_rate(value) -> Optional[float]:
    """ffprobe reports rates as 'num/den' strings, e.g. '30000/1001'."""
    if not value:
        return None
    try:
        rate = Fraction(str(value))
    except (ValueError, ZeroDivisionError):
        return None
    return float(rate)


@dataclass(frozen=True)
class AudioTrack:
    index: int
    streamIndex: Optional[int]
    codec: Optional[str]
    language: str
    title: str
    channels: Optional[int]
    channelLayout: Optional[str]
    sampleRate: Optional[int]
    bitrate: Optional[int]


@dataclass(frozen=True)
class SubtitleTrack:
    index: int
    streamIndex: Optional[int]
    codec: Optional[str]
    language: str
    title: str
    forced: bool


@dataclass(frozen=True)
class VideoStream:
    index: int
    streamIndex: Optional[int]
    codec: Optional[str]
    profile: Optional[str]
    width: Optional[int]
    height: Optional[int]
    fps: Optional[float]
    bitrate: Optional[int]


@dataclass(frozen=True)
class MediaStreamInventory:
    format: Optional[str]
    duration: Optional[float]
    size: Optional[int]
    bitrate: Optional[int]
    audioTracks: Tuple[AudioTrack, ...] = field(default_factory=tuple)
    subtitleTracks: Tuple[SubtitleTrack, ...] = field(default_factory=tuple)
    videoStreams: Tuple[VideoStream, ...] = field(default_factory=tuple)

    @property
    def has_multiple_audio(self) -> bool:
        return len(self.audioTracks) > 1

    @property
    def has_embedded_subtitles(self) -> bool:
        return len(self.subtitleTracks) > 0

    def to_payload(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["ffprobeAvailable"] = True
        payload["hasMultipleAudio"] = self.has_multiple_audio
        payload["hasEmbeddedSubtitles"] = self.has_embedded_subtitles
        return payload


def unavailable_payload(error: str = "ffprobe not available") -> Dict[str, Any]:
    return {"ffprobeAvailable": False, "error": error, "message": UNAVAILABLE_MESSAGE}


def parse_probe_output(data: Dict[str, Any]) -> MediaStreamInventory:
    """Partition ffprobe's -show_streams/-show_format JSON into typed tracks."""
    if not isinstance(data, dict):
        raise ValueError("ffprobe output is not an object")
    streams = data.get("streams") or []
    fmt = data.get("format") or {}

    audio: List[AudioTrack] = []
    subs: List[SubtitleTrack] = []
    video: List[VideoStream] = []
    for stream in streams:
        if not isinstance(stream, dict):
            continue
        tags = stream.get("tags") or {}
        kind = stream.get("codec_type")
        if kind == "audio":
            n = len(audio)
            audio.append(AudioTrack(
                index=n,
                streamIndex=_int(stream.get("index")),
                codec=stream.get("codec_name"),
                language=tags.get("language") or "unknown",
                title=tags.get("title") or f"Audio {n + 1}",
                channels=_int(stream.get("channels")),
                channelLayout=stream.get("channel_layout"),
                sampleRate=_int(stream.get("sample_rate")),
                bitrate=_int(stream.get("bit_rate")),
            ))
        elif kind == "subtitle":
            n = len(subs)
            disposition = stream.get("disposition") or {}
            subs.append(SubtitleTrack(
                index=n,
                streamIndex=_int(stream.get("index")),
                codec=stream.get("codec_name"),
                language=tags.get("language") or "unknown",
                title=tags.get("title") or f"Subtitle {n + 1}",
                forced=disposition.get("forced") == 1,
            ))
        elif kind == "video":
            video.append(VideoStream(
                index=len(video),
                streamIndex=_int(stream.get("index")),
                codec=stream.get("codec_name"),
                profile=stream.get("profile"),
                width=_int(stream.get("width")),
                height=_int(stream.get("height")),
                fps=parse_frame_rate(stream.get("r_frame_rate")),
                bitrate=_int(stream.get("bit_rate")),
            ))

    return MediaStreamInventory(
        format=fmt.get("format_name"),
        duration=_float(fmt.get("duration")),
        size=_int(fmt.get("size")),
        bitrate=_int(fmt.get("bit_rate")),
        audioTracks=tuple(audio),
        subtitleTracks=tuple(subs),
        videoStreams=tuple(video),
    )


class MediaProber:
    def __init__(self, settings: RelaySettings):
        self.settings = settings

    def probe(self, locator: str) -> MediaStreamInventory:
        """Run the prober. Raises ProberUnavailable on any failure."""
        if not media_tools.tool_available(self.settings.prober_bin):
            raise ProberUnavailable("ffprobe not available")
        cmd = [
            self.settings.prober_bin,
            "-v", "quiet",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            locator,
        ]
        try:
            returncode, output = media_tools.run_tool_capped(
                cmd,
                timeout=self.settings.prober_timeout,
                max_output=self.settings.prober_max_output_bytes,
            )
        except subprocess.TimeoutExpired as e:
            raise ProberUnavailable(f"ffprobe timed out after {self.settings.prober_timeout}s") from e
        except media_tools.OutputLimitExceeded as e:
            raise ProberUnavailable("ffprobe output exceeded size limit") from e
        except OSError as e:
            raise ProberUnavailable(f"ffprobe failed to start: {e}") from e
        if returncode != 0:
            raise ProberUnavailable(f"ffprobe exited with code {returncode}")
        try:
            return parse_probe_output(json.loads(output))
        except (ValueError, TypeError, AttributeError) as e:
            raise ProberUnavailable(f"Unreadable ffprobe output: {e}") from e

    def analyze(self, locator: str) -> Dict[str, Any]:
        """Inventory payload for /analyze; never raises."""
        try:
            return self.probe(locator).to_payload()
        except ProberUnavailable as e:
            LOG.info("Analysis unavailable for %s: %s", locator, e)
            return unavailable_payload(str(e))
        except Exception as e:
            LOG.warning("Analysis error for %s: %s", locator, e)
            return unavailable_payload(str(e))
