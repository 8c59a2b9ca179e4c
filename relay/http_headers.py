"""Shared helpers for building request and response header sets for the relay."""

import re
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Tuple
from urllib.parse import quote, unquote

from relay.locator import TargetLocator

FILENAME_PLACEHOLDER = "video"

CORS_HEADERS: Tuple[Tuple[str, str], ...] = (
    ("Access-Control-Allow-Origin", "*"),
    ("Access-Control-Allow-Methods", "GET, HEAD, OPTIONS"),
    ("Access-Control-Allow-Headers", "Range, Content-Type"),
    ("Access-Control-Expose-Headers", "Content-Length, Content-Range, Accept-Ranges, X-Original-Filename"),
)

_FILENAME_STAR_RE = re.compile(r"filename\*\s*=\s*([^']*)'[^']*'([^;]+)", re.IGNORECASE)
_FILENAME_RE = re.compile(r"filename\s*=\s*(\"[^\"]*\"|'[^']*'|[^;]*)", re.IGNORECASE)


def upstream_request_headers(
    locator: TargetLocator,
    user_agent: str,
    range_value: Optional[str] = None,
    with_referer: bool = True,
) -> Dict[str, str]:
    """Browser-like headers for an outbound fetch."""
    headers: Dict[str, str] = {
        "User-Agent": user_agent,
        "Accept": "*/*",
        # Byte ranges must map 1:1 onto the original file.
        "Accept-Encoding": "identity",
    }
    if with_referer:
        headers["Referer"] = f"{locator.origin}/"
    if range_value:
        headers["Range"] = range_value
    return headers


def parse_disposition_filename(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    m = _FILENAME_STAR_RE.search(value)
    if m:
        charset = (m.group(1) or "utf-8").strip() or "utf-8"
        try:
            name = unquote(m.group(2).strip().strip('"'), encoding=charset)
        except LookupError:
            name = unquote(m.group(2).strip().strip('"'))
        if name:
            return name
    m = _FILENAME_RE.search(value)
    if m:
        name = m.group(1).strip().strip("\"'").strip()
        if name:
            return name
    return None


def filename_from_locator(locator: Optional[TargetLocator]) -> Optional[str]:
    if locator is None:
        return None
    segments = [s for s in locator.path.split("/") if s]
    if not segments:
        return None
    name = unquote(segments[-1]).split("?", 1)[0].strip()
    return name or None


def derive_filename(
    headers: Mapping[str, str],
    original: Optional[TargetLocator],
    final: Optional[TargetLocator] = None,
) -> str:
    """Disposition name, else the pre-redirect path segment, else the final one."""
    return (
        parse_disposition_filename(headers.get("Content-Disposition"))
        or filename_from_locator(original)
        or filename_from_locator(final)
        or FILENAME_PLACEHOLDER
    )


def attachment_disposition(filename: str) -> str:
    safe = quote(filename or FILENAME_PLACEHOLDER, safe="")
    return f"attachment; filename=\"{safe}\"; filename*=UTF-8''{safe}"


def media_type(content_type: Optional[str]) -> str:
    return (content_type or "").split(";", 1)[0].strip().lower()


def is_allowed_subtitle_type(content_type: Optional[str], allowed) -> bool:
    return bool(content_type) and media_type(content_type) in allowed


@dataclass(frozen=True)
class RelayResponseHeaders:
    content_type: str
    filename: str
    content_length: Optional[str] = None
    content_range: Optional[str] = None
    accept_ranges: bool = True

    @classmethod
    def from_upstream(
        cls,
        headers: Mapping[str, str],
        original: Optional[TargetLocator],
        final: Optional[TargetLocator] = None,
        default_type: str = "video/mp4",
    ) -> "RelayResponseHeaders":
        return cls(
            content_type=headers.get("Content-Type") or default_type,
            filename=derive_filename(headers, original, final),
            content_length=headers.get("Content-Length"),
            content_range=headers.get("Content-Range"),
        )

    def items(self) -> List[Tuple[str, str]]:
        out = [("Content-Type", self.content_type)]
        if self.accept_ranges:
            # Advertised regardless of upstream; a missing Content-Range tells
            # the client to fall back to full reads.
            out.append(("Accept-Ranges", "bytes"))
        out.append(("Cache-Control", "no-cache"))
        # Header values must stay latin-1 encodable.
        out.append(("X-Original-Filename", quote(self.filename, safe=" !#$&'()+,;=@[]^`{}~")))
        if self.content_length is not None:
            out.append(("Content-Length", str(self.content_length)))
        if self.content_range:
            out.append(("Content-Range", self.content_range))
        return out
