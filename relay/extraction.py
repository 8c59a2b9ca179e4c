from __future__ import annotations

import contextlib
import logging
import os
import subprocess
import uuid
from typing import Iterator

from relay import media_tools
from relay.config import RelaySettings
from relay.errors import ExtractionFailed, ExtractorUnavailable

LOG = logging.getLogger(__name__)


@contextlib.contextmanager
def scratch_file(directory: str, suffix: str = ".vtt", prefix: str = "subtitle_") -> Iterator[str]:
    """Yield a unique, not-yet-created path; remove it on every exit path."""
    path = os.path.join(directory, f"{prefix}{uuid.uuid4().hex}{suffix}")
    try:
        yield path
    finally:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            LOG.warning("Failed to delete temp file %s: %s", path, e)


class SubtitleExtractor:
    def __init__(self, settings: RelaySettings):
        self.settings = settings

    def extract(self, locator: str, index: int = 0) -> bytes:
        """Pull subtitle stream `index` (per-type) out of the container as WebVTT."""
        if index < 0:
            raise ExtractionFailed(f"Invalid subtitle index: {index}", status=400)
        if not media_tools.tool_available(self.settings.remuxer_bin):
            raise ExtractorUnavailable("ffmpeg not available")

        with scratch_file(self.settings.scratch_dir) as out_path:
            cmd = [
                self.settings.remuxer_bin,
                "-nostdin",
                "-hide_banner",
                "-loglevel", "error",
                "-i", locator,
                "-map", f"0:s:{int(index)}",
                "-f", "webvtt",
                "-y",
                out_path,
            ]
            try:
                proc = media_tools.run_tool(cmd, timeout=self.settings.remuxer_timeout)
            except subprocess.TimeoutExpired as e:
                raise ExtractionFailed(f"ffmpeg timed out after {self.settings.remuxer_timeout}s") from e
            except OSError as e:
                raise ExtractionFailed(f"ffmpeg failed to start: {e}") from e

            if proc.returncode != 0:
                details = (proc.stderr or b"").decode("utf-8", "replace").strip()
                if details:
                    raise ExtractionFailed(f"ffmpeg exited with code {proc.returncode}: {details}")
                raise ExtractionFailed(f"ffmpeg exited with code {proc.returncode}")

            try:
                with open(out_path, "rb") as f:
                    data = f.read()
            except OSError as e:
                raise ExtractionFailed("Failed to read extracted subtitle") from e

        LOG.debug("Extracted subtitle %d from %s (%d bytes)", index, locator, len(data))
        return data
