import sys
import threading
from pathlib import Path
from unittest.mock import MagicMock

import requests

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from player.relay_client import RelayClient, filename_from_url


def test_urls_are_built_against_base_and_encoded():
    c = RelayClient("http://localhost:4000/")
    src = "https://example.com/v/a b.mp4?x=1&y=2"
    assert c.stream_url(src) == "http://localhost:4000/proxy?url=https%3A%2F%2Fexample.com%2Fv%2Fa%20b.mp4%3Fx%3D1%26y%3D2"
    assert c.download_url(src).startswith("http://localhost:4000/download?url=")
    assert "filename=my%20file.mp4" in c.download_url(src, "my file.mp4")
    assert c.extract_subtitle_url(src, 2).endswith("&index=2")
    assert c.analyze_url(src).startswith("http://localhost:4000/analyze?url=")


def test_subtitle_url_picks_convert_for_ass_and_ssa():
    c = RelayClient("http://localhost:4000")
    assert "/subtitle/convert?" in c.subtitle_url("https://example.com/s/Ep1.ASS")
    assert "/subtitle/convert?" in c.subtitle_url("https://example.com/s/ep1.ssa?dl=1")
    assert "/subtitle/proxy?" in c.subtitle_url("https://example.com/s/ep1.vtt")
    assert "/subtitle/proxy?" in c.subtitle_url("https://example.com/s/ep1.srt")


def test_filename_from_url_fallbacks():
    assert filename_from_url("https://example.com/a/My%20Clip.mp4?x=1") == "My Clip.mp4"
    assert filename_from_url("https://example.com/") == "Untitled Video"


def test_original_filename_falls_back_on_network_error():
    session = MagicMock()
    session.head.side_effect = requests.ConnectionError("refused")
    c = RelayClient("http://localhost:4000", session=session)
    assert c.original_filename("https://example.com/x/clip.webm") == "clip.webm"


def test_original_filename_without_header_uses_url():
    resp = MagicMock()
    resp.headers = {}
    session = MagicMock()
    session.head.return_value = resp
    c = RelayClient("http://localhost:4000", session=session)
    assert c.original_filename("https://example.com/") == "Untitled Video"
    resp.close.assert_called_once()


def test_analyze_swallows_failures():
    session = MagicMock()
    session.get.side_effect = requests.Timeout("slow")
    c = RelayClient("http://localhost:4000", session=session)
    assert c.analyze("https://example.com/a.mkv") is None

    bad_json = MagicMock(status_code=200)
    bad_json.json.side_effect = ValueError("not json")
    session.get.side_effect = None
    session.get.return_value = bad_json
    assert c.analyze("https://example.com/a.mkv") is None

    session.get.return_value = MagicMock(status_code=500)
    assert c.analyze("https://example.com/a.mkv") is None


def test_analyze_in_background_delivers_result():
    resp = MagicMock(status_code=200)
    resp.json.return_value = {"ffprobeAvailable": True, "audioTracks": [1, 2]}
    session = MagicMock()
    session.get.return_value = resp
    c = RelayClient("http://localhost:4000", session=session)

    got = []
    done = threading.Event()

    def cb(result):
        got.append(result)
        done.set()

    c.analyze_in_background("https://example.com/a.mkv", cb)
    assert done.wait(2.0)
    assert got[0]["audioTracks"] == [1, 2]
