"""Exception types raised by the relay and its media adapters."""

from typing import Optional


class RelayError(Exception):
    """Base class for failures that map onto an HTTP error response."""

    status = 500

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        if status is not None:
            self.status = int(status)


class InvalidLocator(RelayError):
    status = 400


class UpstreamTimeout(RelayError):
    status = 504


class UpstreamConnectionError(RelayError):
    status = 502


class UpstreamStatusError(RelayError):
    status = 502

    def __init__(self, upstream_status: int):
        super().__init__(f"HTTP {int(upstream_status)}")
        self.upstream_status = int(upstream_status)


class TooManyRedirects(RelayError):
    status = 502

    def __init__(self, hops: int, last_location: str = ""):
        super().__init__(f"Too many redirects ({hops})")
        self.hops = hops
        self.last_location = last_location


class InvalidRedirect(RelayError):
    """Upstream answered with a Location the relay cannot follow."""

    status = 502


class ExtractorUnavailable(RelayError):
    status = 503


class ExtractionFailed(RelayError):
    status = 500


class NormalizationError(RelayError):
    status = 500


class ProberUnavailable(Exception):
    """Soft failure: analysis degrades to an "unavailable" payload."""


class ClientDisconnected(Exception):
    """The client went away mid-response. Normal early termination."""
