"""
Relay HTTP server.

Lets a browser-based player fetch media that it cannot reach directly
(cross-origin or hotlink restrictions) by relaying requests through this
process.

Design notes:
- One thread per inbound request (ThreadingMixIn). Each request builds its own
  RelaySession and UpstreamFetcher; only the frozen RelaySettings and the
  stateless prober/extractor are shared.
- Bodies are copied chunk by chunk. A blocking write to the client throttles how
  fast the upstream body is read, so memory stays constant per session.
- A failed client write ends the session and closes the upstream response.
- Errors before headers are sent become a JSON {"error": ...} response; after
  that the connection is simply closed.
"""

from __future__ import annotations

import contextlib
import http.client
import itertools
import json
import logging
import threading
import time
import traceback
from http.server import BaseHTTPRequestHandler, HTTPServer
from socketserver import ThreadingMixIn
from typing import Dict, Iterable, Iterator, List, Optional, Tuple
from urllib.parse import parse_qs, urlparse

from relay.config import RelaySettings
from relay.errors import (
    ClientDisconnected,
    RelayError,
    UpstreamStatusError,
)
from relay.extraction import SubtitleExtractor
from relay.fetcher import UpstreamFetcher, UpstreamResponse
from relay.http_headers import (
    CORS_HEADERS,
    RelayResponseHeaders,
    attachment_disposition,
    derive_filename,
    is_allowed_subtitle_type,
    upstream_request_headers,
)
from relay.introspection import MediaProber
from relay.locator import TargetLocator
from relay.redirects import RedirectResolver, RelaySession
from relay.subtitles import detect_format, iter_cues, render_vtt

LOG = logging.getLogger(__name__)

_SUBTITLE_CACHE_CONTROL = "public, max-age=3600"
_CLIENT_GONE = (BrokenPipeError, ConnectionResetError, ConnectionAbortedError)


def _param(query: Dict[str, List[str]], name: str, default: Optional[str] = None) -> Optional[str]:
    values = query.get(name)
    if not values or not values[0]:
        return default
    return values[0]


class _ThreadingHTTPServer(ThreadingMixIn, HTTPServer):
    daemon_threads = True
    allow_reuse_address = True
    request_queue_size = 256


class RelayRequestHandler(BaseHTTPRequestHandler):
    protocol_version = "HTTP/1.1"
    server_version = "StreamFlowRelay/1.0"

    def setup(self) -> None:
        super().setup()
        self._headers_committed = False

    @property
    def relay(self) -> "RelayServer":
        return self.server.relay

    @property
    def settings(self) -> RelaySettings:
        return self.relay.settings

    def log_message(self, fmt: str, *args) -> None:
        LOG.debug("%s - " + fmt, self.address_string(), *args)

    # ------------------------------------------------------------------
    # Response plumbing
    # ------------------------------------------------------------------

    def send_response(self, code: int, message: Optional[str] = None) -> None:
        self._headers_committed = True
        super().send_response(code, message)

    def end_headers(self) -> None:
        for name, value in CORS_HEADERS:
            self.send_header(name, value)
        super().end_headers()

    def _start_response(self, status: int, headers: Iterable[Tuple[str, str]], has_body: bool = True) -> bool:
        """Write status and headers once. Returns False if already written."""
        if self._headers_committed:
            LOG.debug("Response headers already sent; not writing them twice")
            return False
        headers = list(headers)
        self.send_response(status)
        for name, value in headers:
            self.send_header(name, value)
        if has_body and not any(name.lower() == "content-length" for name, _ in headers):
            # Unknown length: delimit the body by closing the connection.
            self.send_header("Connection", "close")
            self.close_connection = True
        self.end_headers()
        return True

    def _write(self, data: bytes) -> None:
        try:
            self.wfile.write(data)
        except _CLIENT_GONE as e:
            raise ClientDisconnected(str(e)) from e

    def _write_all(self, chunks: Iterable[bytes]) -> None:
        for chunk in chunks:
            self._write(chunk)

    def _send_json(self, data: dict, status: int = 200) -> None:
        body = json.dumps(data).encode("utf-8")
        self._start_response(status, [
            ("Content-Type", "application/json"),
            ("Content-Length", str(len(body))),
        ])
        if self.command != "HEAD":
            self._write(body)

    def _send_bytes(self, data: bytes, content_type: str, cache_control: Optional[str] = None) -> None:
        headers = [("Content-Type", content_type), ("Content-Length", str(len(data)))]
        if cache_control:
            headers.append(("Cache-Control", cache_control))
        self._start_response(200, headers)
        if self.command != "HEAD":
            self._write(data)

    def _fail(self, message: str, status: int) -> None:
        if self._headers_committed:
            # Nothing more can be said to the client; just end the stream.
            self.close_connection = True
            return
        try:
            self._send_json({"error": message}, status)
        except ClientDisconnected:
            self.close_connection = True

    @contextlib.contextmanager
    def _upstream(self, session: RelaySession) -> Iterator[UpstreamResponse]:
        """Resolve a session to its final response; always tears the upstream down."""
        fetcher = UpstreamFetcher(timeout=self.settings.timeout)
        response = None
        try:
            response = RedirectResolver(fetcher, self.settings.max_redirects).resolve(session)
            yield response
        finally:
            if response is not None:
                response.close()
            fetcher.close()

    def _relay_body(self, upstream: UpstreamResponse) -> None:
        self._write_all(upstream.iter_body(self.settings.chunk_bytes))

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def do_OPTIONS(self) -> None:
        self._headers_committed = False
        self.send_response(200)
        self.send_header("Content-Length", "0")
        self.end_headers()

    def do_HEAD(self) -> None:
        self._dispatch()

    def do_GET(self) -> None:
        self._dispatch()

    def _dispatch(self) -> None:
        # Keep-alive connections reuse this handler for several requests.
        self._headers_committed = False
        parsed = urlparse(self.path)
        route = _ROUTES.get((self.command, parsed.path))
        if route is None:
            self._fail("Not Found", 404)
            return
        query = parse_qs(parsed.query)
        try:
            route(self, query)
        except ClientDisconnected:
            LOG.debug("Client disconnected from %s", parsed.path)
            self.close_connection = True
        except RelayError as e:
            LOG.warning("%s failed: %s", parsed.path, e)
            self._fail(str(e), e.status)
        except Exception as e:
            LOG.error("Unhandled error on %s: %s\n%s", parsed.path, e, traceback.format_exc())
            self._fail(str(e) or e.__class__.__name__, 500)

    # ------------------------------------------------------------------
    # Routes
    # ------------------------------------------------------------------

    def handle_health(self, query) -> None:
        self._send_bytes(b"ok", "text/plain; charset=utf-8")

    def handle_stream(self, query) -> None:
        target = TargetLocator.parse(_param(query, "url"))
        range_value = self.headers.get("Range")
        LOG.info("Proxying: %s", target)
        if range_value:
            LOG.debug("Range: %s", range_value)
        session = RelaySession(
            origin=target,
            method=self.command,
            headers=upstream_request_headers(target, self.settings.user_agent, range_value),
        )
        with self._upstream(session) as upstream:
            headers = RelayResponseHeaders.from_upstream(upstream.headers, session.origin, session.target)
            has_body = self.command != "HEAD"
            if not self._start_response(upstream.status, headers.items(), has_body=has_body):
                return
            if has_body:
                self._relay_body(upstream)
        LOG.debug("Stream done: %s", target)

    def handle_download(self, query) -> None:
        target = TargetLocator.parse(_param(query, "url"))
        LOG.info("Download: %s", target)
        # Whole-file semantics: an inbound Range is deliberately not forwarded.
        session = RelaySession(
            origin=target,
            method="GET",
            headers=upstream_request_headers(target, self.settings.user_agent, with_referer=False),
        )
        with self._upstream(session) as upstream:
            if upstream.status >= 400:
                raise UpstreamStatusError(upstream.status)
            filename = _param(query, "filename") or derive_filename(upstream.headers, session.origin, session.target)
            headers = [
                ("Content-Type", upstream.headers.get("Content-Type") or "application/octet-stream"),
                ("Content-Disposition", attachment_disposition(filename)),
            ]
            if upstream.headers.get("Content-Length"):
                headers.append(("Content-Length", upstream.headers["Content-Length"]))
            if self._start_response(200, headers):
                self._relay_body(upstream)
        LOG.debug("Download complete: %s", target)

    def _subtitle_session(self, target: TargetLocator) -> RelaySession:
        return RelaySession(
            origin=target,
            method="GET",
            headers=upstream_request_headers(target, self.settings.user_agent, with_referer=False),
        )

    def handle_subtitle_proxy(self, query) -> None:
        target = TargetLocator.parse(_param(query, "url"))
        LOG.info("Proxying subtitle: %s", target)
        with self._upstream(self._subtitle_session(target)) as upstream:
            if upstream.status != 200:
                raise UpstreamStatusError(upstream.status)
            content_type = upstream.headers.get("Content-Type")
            if not is_allowed_subtitle_type(content_type, self.settings.subtitle_allowed_types):
                content_type = self.settings.subtitle_content_type
            headers = [("Content-Type", content_type), ("Cache-Control", _SUBTITLE_CACHE_CONTROL)]
            if upstream.headers.get("Content-Length"):
                headers.append(("Content-Length", upstream.headers["Content-Length"]))
            if self._start_response(200, headers):
                self._relay_body(upstream)

    def handle_subtitle_convert(self, query) -> None:
        target = TargetLocator.parse(_param(query, "url"))
        fmt = detect_format(target.path, _param(query, "format"))
        LOG.info("Converting subtitle (%s): %s", fmt, target)
        with self._upstream(self._subtitle_session(target)) as upstream:
            if upstream.status != 200:
                raise UpstreamStatusError(upstream.status)
            cues = iter_cues(upstream.iter_body(self.settings.chunk_bytes), fmt)
            # Pull the first cue before committing headers so an early failure
            # can still be reported as an error status.
            first = next(cues, None)
            if first is not None:
                cues = itertools.chain([first], cues)
            headers = [
                ("Content-Type", self.settings.subtitle_content_type),
                ("Cache-Control", _SUBTITLE_CACHE_CONTROL),
            ]
            if self._start_response(200, headers):
                self._write_all(render_vtt(cues))
        LOG.debug("Subtitle converted and sent: %s", target)

    def handle_analyze(self, query) -> None:
        target = TargetLocator.parse(_param(query, "url"))
        LOG.info("Analyzing: %s", target)
        self._send_json(self.relay.prober.analyze(target.url))

    def handle_extract_subtitle(self, query) -> None:
        target = TargetLocator.parse(_param(query, "url"))
        raw_index = _param(query, "index", "0")
        try:
            index = int(raw_index)
        except ValueError:
            raise RelayError(f"Invalid index parameter: {raw_index}", status=400) from None
        LOG.info("Extracting subtitle %d from: %s", index, target)
        data = self.relay.extractor.extract(target.url, index)
        self._send_bytes(data, self.settings.subtitle_content_type, _SUBTITLE_CACHE_CONTROL)


_ROUTES = {
    ("GET", "/health"): RelayRequestHandler.handle_health,
    ("HEAD", "/health"): RelayRequestHandler.handle_health,
    ("GET", "/proxy"): RelayRequestHandler.handle_stream,
    ("HEAD", "/proxy"): RelayRequestHandler.handle_stream,
    ("GET", "/download"): RelayRequestHandler.handle_download,
    ("GET", "/subtitle/proxy"): RelayRequestHandler.handle_subtitle_proxy,
    ("GET", "/subtitle/convert"): RelayRequestHandler.handle_subtitle_convert,
    ("GET", "/analyze"): RelayRequestHandler.handle_analyze,
    ("GET", "/extract-subtitle"): RelayRequestHandler.handle_extract_subtitle,
}


class RelayServer:
    def __init__(
        self,
        settings: Optional[RelaySettings] = None,
        prober: Optional[MediaProber] = None,
        extractor: Optional[SubtitleExtractor] = None,
    ):
        self.settings = settings or RelaySettings()
        self.prober = prober or MediaProber(self.settings)
        self.extractor = extractor or SubtitleExtractor(self.settings)

        self._server: Optional[_ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.RLock()

    def _bind(self) -> _ThreadingHTTPServer:
        server = _ThreadingHTTPServer((self.settings.host, int(self.settings.port)), RelayRequestHandler)
        server.relay = self
        return server

    @property
    def port(self) -> Optional[int]:
        with self._lock:
            if self._server is None:
                return None
            return self._server.server_address[1]

    @property
    def local_host(self) -> str:
        host = self.settings.host
        if host in ("", "0.0.0.0", "::"):
            return "127.0.0.1"
        return host

    @property
    def base_url(self) -> str:
        port = self.port
        if port is None:
            raise RuntimeError("RelayServer not started")
        return f"http://{self.local_host}:{port}"

    def serve_forever(self) -> None:
        """Run in the calling thread until interrupted."""
        with self._lock:
            self._server = self._bind()
        LOG.info("Relay listening on %s", self.base_url)
        try:
            self._server.serve_forever(poll_interval=0.25)
        finally:
            self.stop()

    def start(self) -> None:
        """Serve from a daemon thread (tests, embedding)."""
        with self._lock:
            if self._server is not None and self._thread is not None and self._thread.is_alive():
                return
            self._server = self._bind()
            server = self._server

            def run() -> None:
                try:
                    server.serve_forever(poll_interval=0.25)
                except Exception as e:
                    LOG.warning("Relay server error: %s\n%s", e, traceback.format_exc())

            self._thread = threading.Thread(target=run, name="RelayServer", daemon=True)
            self._thread.start()
        self._wait_ready(timeout=2.0)
        LOG.info("Relay started at %s", self.base_url)

    def stop(self) -> None:
        with self._lock:
            if self._server is None:
                return
            server = self._server
            self._server = None
            thread = self._thread
            self._thread = None
        if thread is not None:
            server.shutdown()
        server.server_close()

    def _wait_ready(self, timeout: float = 2.0) -> bool:
        deadline = time.time() + max(0.1, float(timeout))
        while time.time() < deadline:
            port = self.port
            if port is None:
                time.sleep(0.05)
                continue
            conn = http.client.HTTPConnection(self.local_host, port, timeout=0.5)
            try:
                conn.request("GET", "/health")
                resp = conn.getresponse()
                resp.read()
                if resp.status == 200:
                    return True
            except OSError:
                pass
            finally:
                conn.close()
            time.sleep(0.05)
        return False

    def is_ready(self) -> bool:
        return self._wait_ready(timeout=0.25)
