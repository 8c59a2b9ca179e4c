import http.client
import socket
import sys
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from urllib.parse import quote, unquote

import pytest
import requests

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from relay.config import RelaySettings
from relay.errors import ExtractionFailed
from relay.introspection import unavailable_payload
from relay.server import RelayServer
from player.relay_client import RelayClient

VIDEO = b"0123456789abcdefghij"
SLOW_BLOCK = 64 * 1024
SLOW_BLOCKS = 400
ASS = (
    "[Script Info]\nTitle: t\n\n[Events]\n"
    "Format: Layer, Start, End, Style, Name, MarginL, MarginR, MarginV, Effect, Text\n"
    "Dialogue: 0,0:00:01.00,0:00:02.50,Default,,0,0,0,,Hello\\Nworld\n"
).encode("utf-8")


class _Origin(BaseHTTPRequestHandler):
    """Stand-in upstream origin. Records request headers per path."""

    seen = {}
    slow_write_failed = threading.Event()

    def log_message(self, fmt, *args):
        pass

    def _video(self, with_body):
        rng = self.headers.get("Range")
        if rng and rng.startswith("bytes="):
            start_s, end_s = rng[6:].split("-", 1)
            start = int(start_s)
            end = int(end_s) if end_s else len(VIDEO) - 1
            chunk = VIDEO[start:end + 1]
            self.send_response(206)
            self.send_header("Content-Range", f"bytes {start}-{end}/{len(VIDEO)}")
        else:
            chunk = VIDEO
            self.send_response(200)
        self.send_header("Content-Type", "video/mp4")
        self.send_header("Accept-Ranges", "bytes")
        self.send_header("Content-Length", str(len(chunk)))
        self.end_headers()
        if with_body:
            self.wfile.write(chunk)

    def _slow(self, with_body):
        block = b"s" * SLOW_BLOCK
        self.send_response(200)
        self.send_header("Content-Type", "video/mp4")
        self.send_header("Content-Length", str(SLOW_BLOCK * SLOW_BLOCKS))
        self.end_headers()
        if not with_body:
            return
        try:
            for _ in range(SLOW_BLOCKS):
                self.wfile.write(block)
                self.wfile.flush()
                time.sleep(0.02)
        except OSError:
            _Origin.slow_write_failed.set()
        self.close_connection = True

    def _handle(self, with_body):
        _Origin.seen[self.path] = dict(self.headers.items())
        path = self.path.split("?", 1)[0]
        if path in ("/media/Clip%20One.mp4", "/cdn/abc123"):
            self._video(with_body)
        elif path == "/redirect/show.mp4":
            self.send_response(302)
            self.send_header("Location", "../cdn/abc123")
            self.send_header("Content-Length", "0")
            self.end_headers()
        elif path == "/redirect/ftp":
            self.send_response(302)
            self.send_header("Location", "ftp://files.example.com/show.mp4")
            self.send_header("Content-Length", "0")
            self.end_headers()
        elif path == "/truncated.mp4":
            # Promises the whole clip, sends a quarter of it, then hangs up.
            self.send_response(200)
            self.send_header("Content-Type", "video/mp4")
            self.send_header("Content-Length", str(len(VIDEO)))
            self.end_headers()
            if with_body:
                self.wfile.write(VIDEO[:5])
                self.wfile.flush()
            self.close_connection = True
        elif path == "/slow.mp4":
            self._slow(with_body)
        elif path == "/loop":
            self.send_response(302)
            self.send_header("Location", "/loop")
            self.send_header("Content-Length", "0")
            self.end_headers()
        elif path == "/named":
            self.send_response(200)
            self.send_header("Content-Type", "video/x-matroska")
            self.send_header("Content-Disposition", 'attachment; filename="movie.mkv"')
            self.send_header("Content-Length", str(len(VIDEO)))
            self.end_headers()
            if with_body:
                self.wfile.write(VIDEO)
        elif path == "/subs/plain.vtt":
            body = b"WEBVTT\n\n00:00:01.000 --> 00:00:02.000\nhi\n\n"
            self.send_response(200)
            self.send_header("Content-Type", "text/plain")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            if with_body:
                self.wfile.write(body)
        elif path == "/subs/episode.ass":
            self.send_response(200)
            self.send_header("Content-Type", "application/octet-stream")
            self.send_header("Content-Length", str(len(ASS)))
            self.end_headers()
            if with_body:
                self.wfile.write(ASS)
        else:
            body = b"not found"
            self.send_response(404)
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            if with_body:
                self.wfile.write(body)

    def do_GET(self):
        self._handle(True)

    def do_HEAD(self):
        self._handle(False)


class _StubProber:
    def __init__(self):
        self.payload = unavailable_payload()

    def analyze(self, locator):
        return self.payload


class _StubExtractor:
    def extract(self, locator, index=0):
        if index > 3:
            raise ExtractionFailed("Stream map matches no streams")
        return b"WEBVTT\n\n"


def _free_port():
    s = socket.socket()
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    return port


@pytest.fixture(scope="module")
def origin():
    httpd = ThreadingHTTPServer(("127.0.0.1", 0), _Origin)
    httpd.daemon_threads = True
    t = threading.Thread(target=httpd.serve_forever, daemon=True)
    t.start()
    try:
        yield f"http://127.0.0.1:{httpd.server_address[1]}"
    finally:
        httpd.shutdown()
        httpd.server_close()


@pytest.fixture(scope="module")
def relay():
    settings = RelaySettings(host="127.0.0.1", port=0, connect_timeout=2, read_timeout=5, max_redirects=10)
    server = RelayServer(settings, prober=_StubProber(), extractor=_StubExtractor())
    server.start()
    try:
        yield server
    finally:
        server.stop()


def _get(relay, path, **kwargs):
    return requests.get(relay.base_url + path, timeout=5, **kwargs)


def test_health(relay):
    r = _get(relay, "/health")
    assert r.status_code == 200
    assert r.text == "ok"
    assert relay.is_ready()


def test_stream_forwards_range_and_echoes_partial_content(relay, origin):
    url = origin + "/media/Clip%20One.mp4"
    r = _get(relay, "/proxy", params={"url": url}, headers={"Range": "bytes=5-9"})
    assert r.status_code == 206
    assert r.content == b"56789"
    assert r.headers["Content-Range"] == "bytes 5-9/20"
    assert r.headers["Accept-Ranges"] == "bytes"
    assert r.headers["Cache-Control"] == "no-cache"
    assert r.headers["Access-Control-Allow-Origin"] == "*"
    assert unquote(r.headers["X-Original-Filename"]) == "Clip One.mp4"

    upstream_headers = _Origin.seen["/media/Clip%20One.mp4"]
    assert upstream_headers["Range"] == "bytes=5-9"
    assert upstream_headers["Referer"] == origin + "/"
    assert upstream_headers["Accept-Encoding"] == "identity"


def test_stream_without_range_is_full_body(relay, origin):
    r = _get(relay, "/proxy", params={"url": origin + "/media/Clip%20One.mp4"})
    assert r.status_code == 200
    assert r.content == VIDEO
    assert r.headers["Content-Length"] == str(len(VIDEO))
    assert "Content-Range" not in r.headers


def test_stream_head_has_no_body(relay, origin):
    r = requests.head(relay.base_url + "/proxy", params={"url": origin + "/media/Clip%20One.mp4"}, timeout=5)
    assert r.status_code == 200
    assert r.content == b""
    assert r.headers["Content-Length"] == str(len(VIDEO))


def test_stream_follows_redirects_and_names_from_original(relay, origin):
    r = _get(relay, "/proxy", params={"url": origin + "/redirect/show.mp4"}, headers={"Range": "bytes=0-3"})
    assert r.status_code == 206
    assert r.content == b"0123"
    assert r.headers["X-Original-Filename"] == "show.mp4"
    # The range is re-issued to the redirect target.
    assert _Origin.seen["/cdn/abc123"]["Range"] == "bytes=0-3"


def test_redirect_loop_is_bounded(relay, origin):
    r = _get(relay, "/proxy", params={"url": origin + "/loop"})
    assert r.status_code == 502
    assert "redirect" in r.json()["error"].lower()


def test_redirect_to_unsupported_scheme_is_bad_gateway(relay, origin):
    r = _get(relay, "/proxy", params={"url": origin + "/redirect/ftp"})
    assert r.status_code == 502
    assert "ftp://" in r.json()["error"]


def _open_stream(relay, upstream_url):
    conn = http.client.HTTPConnection("127.0.0.1", relay.port, timeout=5)
    conn.request("GET", "/proxy?url=" + quote(upstream_url, safe=""))
    return conn, conn.getresponse()


def test_upstream_failure_after_headers_just_ends_the_stream(relay, origin):
    conn, resp = _open_stream(relay, origin + "/truncated.mp4")
    try:
        assert resp.status == 200
        assert resp.getheader("Content-Length") == str(len(VIDEO))
        with pytest.raises(http.client.IncompleteRead) as exc:
            resp.read()
        partial = exc.value.partial
        # Only upstream bytes reached the client; no error body was appended.
        assert VIDEO.startswith(partial)
        assert b"error" not in partial
        assert b"{" not in partial
    finally:
        conn.close()


def test_client_disconnect_closes_upstream_promptly(relay, origin):
    _Origin.slow_write_failed.clear()
    conn, resp = _open_stream(relay, origin + "/slow.mp4")
    assert resp.status == 200
    assert resp.read(1000) == b"s" * 1000
    resp.close()
    conn.close()
    # Untouched, the origin would keep writing for about eight seconds.
    assert _Origin.slow_write_failed.wait(5)


def test_missing_url_is_rejected(relay):
    r = _get(relay, "/proxy")
    assert r.status_code == 400
    assert r.json()["error"] == "Missing url parameter"


def test_non_http_url_is_rejected(relay):
    r = _get(relay, "/analyze", params={"url": "file:///etc/passwd"})
    assert r.status_code == 400


def test_unreachable_origin_is_bad_gateway(relay):
    r = _get(relay, "/proxy", params={"url": f"http://127.0.0.1:{_free_port()}/x.mp4"})
    assert r.status_code == 502
    assert "error" in r.json()


def test_unknown_path_is_not_found(relay):
    assert _get(relay, "/nope").status_code == 404


def test_options_preflight(relay):
    r = requests.options(relay.base_url + "/proxy", timeout=5)
    assert r.status_code == 200
    assert r.headers["Access-Control-Allow-Origin"] == "*"
    assert "Range" in r.headers["Access-Control-Allow-Headers"]
    assert "X-Original-Filename" in r.headers["Access-Control-Expose-Headers"]


def test_upstream_status_passes_through_on_stream(relay, origin):
    r = _get(relay, "/proxy", params={"url": origin + "/missing.mp4"})
    assert r.status_code == 404


def test_download_forces_attachment_and_ignores_range(relay, origin):
    r = _get(relay, "/download", params={"url": origin + "/named"}, headers={"Range": "bytes=0-1"})
    assert r.status_code == 200
    assert r.content == VIDEO
    assert r.headers["Content-Disposition"].startswith("attachment;")
    assert "movie.mkv" in r.headers["Content-Disposition"]
    assert "Range" not in _Origin.seen["/named"]


def test_download_filename_override(relay, origin):
    r = _get(relay, "/download", params={"url": origin + "/named", "filename": "mine.mkv"})
    assert "mine.mkv" in r.headers["Content-Disposition"]


def test_download_upstream_error(relay, origin):
    r = _get(relay, "/download", params={"url": origin + "/missing.mp4"})
    assert r.status_code == 502
    assert r.json()["error"] == "HTTP 404"


def test_subtitle_proxy_relabels_unknown_type(relay, origin):
    r = _get(relay, "/subtitle/proxy", params={"url": origin + "/subs/plain.vtt"})
    assert r.status_code == 200
    assert r.headers["Content-Type"] == "text/vtt; charset=utf-8"
    assert r.headers["Cache-Control"] == "public, max-age=3600"
    assert r.content.startswith(b"WEBVTT")


def test_subtitle_proxy_rejects_non_200(relay, origin):
    r = _get(relay, "/subtitle/proxy", params={"url": origin + "/subs/gone.vtt"})
    assert r.status_code == 502
    assert r.json()["error"] == "HTTP 404"


def test_subtitle_convert(relay, origin):
    r = _get(relay, "/subtitle/convert", params={"url": origin + "/subs/episode.ass"})
    assert r.status_code == 200
    assert r.headers["Content-Type"] == "text/vtt; charset=utf-8"
    assert r.text == "WEBVTT\n\n00:00:01.000 --> 00:00:02.500\nHello\nworld\n\n"


def test_subtitle_convert_rejects_unknown_format(relay, origin):
    r = _get(relay, "/subtitle/convert", params={"url": origin + "/subs/episode.ass", "format": "sub"})
    assert r.status_code == 400


def test_analyze_unavailable_payload(relay, origin):
    r = _get(relay, "/analyze", params={"url": origin + "/media/Clip%20One.mp4"})
    assert r.status_code == 200
    assert r.json()["ffprobeAvailable"] is False


def test_extract_subtitle(relay, origin):
    r = _get(relay, "/extract-subtitle", params={"url": origin + "/a.mkv", "index": "1"})
    assert r.status_code == 200
    assert r.headers["Content-Type"] == "text/vtt; charset=utf-8"
    assert r.content == b"WEBVTT\n\n"


def test_extract_subtitle_bad_index(relay, origin):
    r = _get(relay, "/extract-subtitle", params={"url": origin + "/a.mkv", "index": "two"})
    assert r.status_code == 400
    r = _get(relay, "/extract-subtitle", params={"url": origin + "/a.mkv", "index": "9"})
    assert r.status_code == 500
    assert "no streams" in r.json()["error"]


def test_client_reads_original_filename(relay, origin):
    client = RelayClient(relay.base_url, timeout=5)
    try:
        assert client.original_filename(origin + "/redirect/show.mp4") == "show.mp4"
        assert client.original_filename(origin + "/media/Clip%20One.mp4") == "Clip One.mp4"
    finally:
        client.close()


def test_client_analyze_returns_none_when_unavailable(relay, origin):
    client = RelayClient(relay.base_url, timeout=5)
    try:
        assert client.analyze(origin + "/media/Clip%20One.mp4") is None
    finally:
        client.close()


def test_client_analyze_returns_payload(relay, origin):
    prober = relay.prober
    prober.payload = {"ffprobeAvailable": True, "audioTracks": [], "subtitleTracks": []}
    client = RelayClient(relay.base_url, timeout=5)
    try:
        data = client.analyze(origin + "/media/Clip%20One.mp4")
        assert data["ffprobeAvailable"] is True
    finally:
        prober.payload = unavailable_payload()
        client.close()
