from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import urljoin, urlsplit, urlunsplit

from relay.errors import InvalidLocator

_SCHEMES = ("http", "https")


@dataclass(frozen=True)
class TargetLocator:
    """An absolute upstream address. Never relative once constructed."""

    scheme: str
    host: str
    port: int
    path: str
    query: str = ""

    @classmethod
    def parse(cls, raw: str) -> "TargetLocator":
        value = (raw or "").strip()
        if not value:
            raise InvalidLocator("Missing url parameter")
        try:
            parts = urlsplit(value)
            port = parts.port
        except ValueError as e:
            raise InvalidLocator(f"Invalid url: {e}") from e
        scheme = (parts.scheme or "").lower()
        if scheme not in _SCHEMES or not parts.hostname:
            raise InvalidLocator(f"Unsupported url: {value}")
        if port is None:
            port = 443 if scheme == "https" else 80
        return cls(
            scheme=scheme,
            host=parts.hostname,
            port=int(port),
            path=parts.path or "/",
            query=parts.query,
        )

    @property
    def netloc(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        default = 443 if self.scheme == "https" else 80
        if self.port == default:
            return host
        return f"{host}:{self.port}"

    @property
    def origin(self) -> str:
        return f"{self.scheme}://{self.netloc}"

    @property
    def url(self) -> str:
        return urlunsplit((self.scheme, self.netloc, self.path, self.query, ""))

    def resolve(self, location: str) -> "TargetLocator":
        """Resolve a redirect Location against this target."""
        return TargetLocator.parse(urljoin(self.url, (location or "").strip()))

    def __str__(self) -> str:
        return self.url
