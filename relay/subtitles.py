"""
Streaming subtitle normalization into WebVTT.

Input arrives as raw byte chunks straight off the upstream response; output is
a lazy sequence of encoded WebVTT blocks. Nothing is buffered beyond the line
currently being parsed, so a cue reaches the client as soon as its line has
been read. Running the same input through twice yields identical output.

Malformed lines are skipped, never fatal.
"""

from __future__ import annotations

import codecs
import logging
import re
from dataclasses import dataclass
from typing import Iterable, Iterator, Optional

from relay.errors import NormalizationError

LOG = logging.getLogger(__name__)

FORMAT_ASS = "ass"
FORMAT_SRT = "srt"
SUPPORTED_FORMATS = (FORMAT_ASS, FORMAT_SRT)

VTT_HEADER = "WEBVTT\n\n"

# Layer, Start, End, Style, Name, MarginL, MarginR, MarginV, Effect, Text
_ASS_MIN_FIELDS = 10
_ASS_TIME_RE = re.compile(r"^(\d+):(\d{1,2}):(\d{1,2})(?:[.,](\d+))?$")
_ASS_OVERRIDE_RE = re.compile(r"\{[^}]*\}")
_SRT_TIMING_RE = re.compile(
    r"^\s*(\d+:\d{1,2}:\d{1,2}(?:[.,]\d+)?)\s*-->\s*(\d+:\d{1,2}:\d{1,2}(?:[.,]\d+)?)"
)


@dataclass(frozen=True)
class Cue:
    start: str
    end: str
    text: str

    def render(self) -> str:
        return f"{self.start} --> {self.end}\n{self.text}\n\n"


def to_vtt_timestamp(value: str) -> Optional[str]:
    """'H:MM:SS.ff' (or SubRip 'HH:MM:SS,mmm') -> 'HH:MM:SS.mmm'."""
    m = _ASS_TIME_RE.match((value or "").strip())
    if not m:
        return None
    hours, minutes, seconds, frac = m.groups()
    # Fractions are decimal: ASS centiseconds '50' mean 500 ms.
    millis = (frac or "0")[:3].ljust(3, "0")
    return f"{hours.zfill(2)}:{minutes.zfill(2)}:{seconds.zfill(2)}.{millis}"


def clean_ass_text(text: str) -> str:
    text = _ASS_OVERRIDE_RE.sub("", text)
    return text.replace("\\N", "\n").replace("\\n", "\n").replace("\\h", " ")


def iter_text_lines(chunks: Iterable[bytes], encoding: str = "utf-8-sig") -> Iterator[str]:
    """Decode byte chunks incrementally and yield complete lines without terminators."""
    decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
    pending = ""
    for chunk in chunks:
        pending += decoder.decode(chunk)
        *lines, pending = pending.split("\n")
        for line in lines:
            yield line.rstrip("\r")
    pending += decoder.decode(b"", final=True)
    if pending:
        yield pending.rstrip("\r")


def iter_ass_cues(lines: Iterable[str]) -> Iterator[Cue]:
    in_events = False
    for raw in lines:
        line = raw.strip()
        if line.startswith("[") and line.endswith("]"):
            in_events = line.lower() == "[events]"
            continue
        if not in_events or not line.startswith("Dialogue:"):
            continue
        parts = line.split(",")
        if len(parts) < _ASS_MIN_FIELDS:
            LOG.debug("Skipping short dialogue line: %r", line[:80])
            continue
        start = to_vtt_timestamp(parts[1])
        end = to_vtt_timestamp(parts[2])
        if start is None or end is None:
            LOG.debug("Skipping dialogue line with bad timestamps: %r", line[:80])
            continue
        yield Cue(start, end, clean_ass_text(",".join(parts[_ASS_MIN_FIELDS - 1:])))


def iter_srt_cues(lines: Iterable[str]) -> Iterator[Cue]:
    start = end = None
    text = []
    for raw in lines:
        line = raw.strip()
        if start is None:
            m = _SRT_TIMING_RE.match(line)
            if m:
                start = to_vtt_timestamp(m.group(1))
                end = to_vtt_timestamp(m.group(2))
                if start is None or end is None:
                    start = end = None
            continue
        if line:
            text.append(line)
            continue
        if text:
            yield Cue(start, end, "\n".join(text))
        start = end = None
        text = []
    if start is not None and text:
        yield Cue(start, end, "\n".join(text))


def detect_format(path: str = "", explicit: Optional[str] = None) -> str:
    if explicit:
        fmt = explicit.strip().lower()
        if fmt == "ssa":
            fmt = FORMAT_ASS
        if fmt not in SUPPORTED_FORMATS:
            raise NormalizationError(f"Unsupported subtitle format: {explicit}", status=400)
        return fmt
    lower = (path or "").lower()
    if lower.endswith(".srt"):
        return FORMAT_SRT
    return FORMAT_ASS


def iter_cues(chunks: Iterable[bytes], fmt: str = FORMAT_ASS) -> Iterator[Cue]:
    lines = iter_text_lines(chunks)
    if fmt == FORMAT_SRT:
        return iter_srt_cues(lines)
    if fmt == FORMAT_ASS:
        return iter_ass_cues(lines)
    raise NormalizationError(f"Unsupported subtitle format: {fmt}", status=400)


def render_vtt(cues: Iterable[Cue]) -> Iterator[bytes]:
    yield VTT_HEADER.encode("utf-8")
    for cue in cues:
        yield cue.render().encode("utf-8")


def normalize(chunks: Iterable[bytes], fmt: str = FORMAT_ASS) -> Iterator[bytes]:
    """Single-pass conversion of a subtitle byte stream to WebVTT bytes."""
    return render_vtt(iter_cues(chunks, fmt))
