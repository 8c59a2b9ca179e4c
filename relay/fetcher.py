"""
Single outbound request to an upstream origin.

The fetcher never follows redirects and never retries; both belong to the
caller. Each relay session owns its own fetcher (and so its own
requests.Session), so nothing here is shared between requests.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterator, Mapping, Optional, Tuple

import requests
from urllib3.exceptions import ReadTimeoutError

from relay.errors import UpstreamConnectionError, UpstreamTimeout
from relay.locator import TargetLocator

LOG = logging.getLogger(__name__)


class UpstreamResponse:
    """Live upstream response: status, headers and a lazily read body."""

    def __init__(self, response: requests.Response, locator: TargetLocator):
        self._response = response
        self.locator = locator
        self.status = int(response.status_code)
        self.headers = response.headers

    @property
    def is_redirect(self) -> bool:
        return 300 <= self.status < 400 and bool(self.headers.get("Location"))

    def iter_body(self, chunk_size: int = 64 * 1024) -> Iterator[bytes]:
        try:
            for chunk in self._response.iter_content(chunk_size=chunk_size):
                if chunk:
                    yield chunk
        except requests.exceptions.Timeout as e:
            raise UpstreamTimeout(f"Upstream read timed out: {e}") from e
        except requests.exceptions.ConnectionError as e:
            # iter_content reports a stalled body as ConnectionError(ReadTimeoutError).
            if any(isinstance(arg, ReadTimeoutError) for arg in e.args):
                raise UpstreamTimeout(f"Upstream read timed out: {e}") from e
            raise UpstreamConnectionError(f"Upstream stream error: {e}") from e
        except requests.exceptions.RequestException as e:
            raise UpstreamConnectionError(f"Upstream stream error: {e}") from e

    def close(self) -> None:
        try:
            self._response.close()
        except Exception as e:
            LOG.debug("Error closing upstream response: %s", e)


class UpstreamFetcher:
    def __init__(self, timeout: Tuple[float, float] = (10, 30), session: Optional[requests.Session] = None):
        self.timeout = timeout
        self.session = session or requests.Session()

    def fetch(
        self,
        locator: TargetLocator,
        method: str = "GET",
        headers: Optional[Mapping[str, str]] = None,
    ) -> UpstreamResponse:
        hdrs: Dict[str, str] = dict(headers or {})
        try:
            r = self.session.request(
                method.upper(),
                locator.url,
                headers=hdrs,
                stream=True,
                timeout=self.timeout,
                allow_redirects=False,
            )
        except requests.exceptions.Timeout as e:
            raise UpstreamTimeout(f"Request timeout: {locator.url}") from e
        except requests.exceptions.RequestException as e:
            raise UpstreamConnectionError(f"Origin fetch failed: {e}") from e
        LOG.debug("Upstream %s %s -> %s", method.upper(), locator.url, r.status_code)
        return UpstreamResponse(r, locator)

    def close(self) -> None:
        try:
            self.session.close()
        except Exception as e:
            LOG.debug("Error closing upstream session: %s", e)

    def __enter__(self) -> "UpstreamFetcher":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
