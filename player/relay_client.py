import logging
import os
import threading
from typing import Callable, Optional
from urllib.parse import quote, unquote, urlencode, urlparse

import requests

LOG = logging.getLogger(__name__)

UNTITLED = "Untitled Video"
DEFAULT_BASE_URL = "http://localhost:4000"
_CONVERT_EXTENSIONS = (".ass", ".ssa")


def filename_from_url(url: str) -> str:
    """Last non-empty path segment of the URL, or UNTITLED."""
    try:
        path = urlparse(url).path
    except ValueError:
        return UNTITLED
    segments = [s for s in path.split("/") if s]
    if not segments:
        return UNTITLED
    return unquote(segments[-1]) or UNTITLED


class RelayClient:
    """Builds relay URLs for the player and makes the few calls it needs."""

    def __init__(self, base_url: str, timeout: float = 10, session: Optional[requests.Session] = None):
        self.base_url = str(base_url or "").rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls, player_cfg: Optional[dict], timeout: float = 10, session: Optional[requests.Session] = None) -> "RelayClient":
        """Client for the relay named by the player section's relay_base_url."""
        cfg = player_cfg or {}
        return cls(cfg.get("relay_base_url") or DEFAULT_BASE_URL, timeout=timeout, session=session)

    def _url(self, path: str, **params) -> str:
        query = urlencode({k: v for k, v in params.items() if v is not None}, quote_via=quote)
        return f"{self.base_url}{path}?{query}"

    def stream_url(self, url: str) -> str:
        return self._url("/proxy", url=url)

    def download_url(self, url: str, filename: Optional[str] = None) -> str:
        return self._url("/download", url=url, filename=filename)

    def subtitle_url(self, url: str) -> str:
        path = urlparse(url).path.lower()
        if os.path.splitext(path)[1] in _CONVERT_EXTENSIONS:
            return self._url("/subtitle/convert", url=url)
        return self._url("/subtitle/proxy", url=url)

    def extract_subtitle_url(self, url: str, index: int = 0) -> str:
        return self._url("/extract-subtitle", url=url, index=int(index))

    def analyze_url(self, url: str) -> str:
        return self._url("/analyze", url=url)

    def original_filename(self, url: str) -> str:
        """Ask the relay for the upstream filename; fall back to the URL's last segment."""
        try:
            resp = self.session.head(self.stream_url(url), timeout=self.timeout)
            try:
                name = resp.headers.get("X-Original-Filename")
            finally:
                resp.close()
            if name:
                return unquote(name)
        except requests.RequestException as e:
            LOG.debug("Filename lookup failed for %s: %s", url, e)
        return filename_from_url(url)

    def analyze(self, url: str) -> Optional[dict]:
        """Media inventory for `url`, or None when analysis is unavailable or fails."""
        try:
            resp = self.session.get(self.analyze_url(url), timeout=self.timeout)
            try:
                if resp.status_code != 200:
                    LOG.debug("Analyze returned HTTP %s for %s", resp.status_code, url)
                    return None
                data = resp.json()
            finally:
                resp.close()
        except (requests.RequestException, ValueError) as e:
            LOG.debug("Analyze failed for %s: %s", url, e)
            return None
        if not isinstance(data, dict) or not data.get("ffprobeAvailable"):
            return None
        return data

    def analyze_in_background(self, url: str, callback: Callable[[Optional[dict]], None]) -> threading.Thread:
        def run():
            result = self.analyze(url)
            try:
                callback(result)
            except Exception as e:
                LOG.warning("Analyze callback failed: %s", e)

        t = threading.Thread(target=run, name="RelayAnalyze", daemon=True)
        t.start()
        return t

    def close(self) -> None:
        try:
            self.session.close()
        except Exception as e:
            LOG.debug("Session close failed: %s", e)
