from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

from relay.errors import InvalidLocator, InvalidRedirect, TooManyRedirects
from relay.fetcher import UpstreamFetcher, UpstreamResponse
from relay.locator import TargetLocator

LOG = logging.getLogger(__name__)


@dataclass
class RelaySession:
    """One inbound request's upstream state. Owned by a single handler."""

    origin: TargetLocator
    method: str = "GET"
    headers: Dict[str, str] = field(default_factory=dict)
    target: Optional[TargetLocator] = None
    redirects: int = 0

    def __post_init__(self) -> None:
        if self.target is None:
            self.target = self.origin

    @property
    def range(self) -> str:
        return self.headers.get("Range", "")


class RedirectResolver:
    def __init__(self, fetcher: UpstreamFetcher, max_redirects: int = 10):
        self.fetcher = fetcher
        self.max_redirects = int(max_redirects)

    def resolve(self, session: RelaySession) -> UpstreamResponse:
        """Fetch until a non-redirect response; session.target ends on the final locator."""
        while True:
            resp = self.fetcher.fetch(session.target, session.method, session.headers)
            if not resp.is_redirect:
                return resp
            location = resp.headers.get("Location", "")
            resp.close()
            if session.redirects >= self.max_redirects:
                LOG.warning("Redirect limit hit after %d hops at %s", session.redirects, session.target)
                raise TooManyRedirects(session.redirects + 1, location)
            try:
                next_target = session.target.resolve(location)
            except InvalidLocator as e:
                LOG.warning("Unfollowable redirect from %s to %r", session.target, location)
                raise InvalidRedirect(f"Invalid redirect location: {location}") from e
            session.redirects += 1
            LOG.debug("Redirect %d: %s -> %s", session.redirects, session.target, next_target)
            session.target = next_target
