import dataclasses
import json
import logging
import os
import sys
import tempfile
from dataclasses import dataclass
from typing import Optional, Tuple

LOG = logging.getLogger(__name__)

# When frozen (PyInstaller) use the exe directory; otherwise use the directory
# of the main script so config.json stays alongside the app regardless of
# where the user launches it from.
if getattr(sys, 'frozen', False):
    APP_DIR = os.path.dirname(sys.executable)
else:
    APP_DIR = os.path.dirname(os.path.abspath(sys.argv[0]))

CONFIG_FILE = os.path.join(APP_DIR, "config.json")

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36"
)

DEFAULT_CONFIG = {
    "host": "0.0.0.0",
    "port": 4000,
    "upstream_connect_timeout_seconds": 10,
    "upstream_read_timeout_seconds": 30,
    "max_redirects": 10,
    "relay_chunk_kb": 64,
    "user_agent": DEFAULT_USER_AGENT,
    "subtitle_content_type": "text/vtt; charset=utf-8",
    # Upstream subtitle types passed through untouched; anything else is relabelled.
    "subtitle_allowed_types": ["text/vtt", "text/srt", "application/x-subrip", "application/srt"],
    "prober_bin": "ffprobe",
    "remuxer_bin": "ffmpeg",
    "prober_timeout_seconds": 30,
    "prober_max_output_kb": 10240,
    "remuxer_timeout_seconds": 30,
    "temp_dir": "",  # empty => use OS temp directory
    "player": {
        "tick_interval_seconds": 0.5,
        "target_buffer_ahead_seconds": 60.0,
        "history_buffer_ratio": 0.10,
        "healthy_ahead_seconds": 30.0,
        "warning_ahead_seconds": 10.0,
        "assumed_bitrate_bps": 5000000,
        "speed_sample_interval_seconds": 0.3,
        "speed_stall_seconds": 2.0,
        "speed_window_size": 10,
        "relay_base_url": "http://localhost:4000",
    },
}


class ConfigManager:
    def __init__(self, config_file: Optional[str] = None):
        self.config_file = config_file or CONFIG_FILE
        self.config = self.load_config()

    def load_config(self):
        if os.path.exists(self.config_file):
            try:
                with open(self.config_file, 'r', encoding="utf-8") as f:
                    loaded = json.load(f)
                    return self._apply_defaults(loaded)
            except Exception as e:
                LOG.warning("Error loading config %s: %s", self.config_file, e)
                return self._apply_defaults({})
        return self._apply_defaults({})

    def _apply_defaults(self, cfg: dict) -> dict:
        """
        Merge any missing default keys into an existing config without clobbering
        user settings. Ensures new options are present.
        """
        def merge(defaults, target):
            for key, val in defaults.items():
                if isinstance(val, dict):
                    if key not in target or not isinstance(target.get(key), dict):
                        target[key] = {}
                    merge(val, target[key])
                elif isinstance(val, list):
                    target.setdefault(key, list(val))
                else:
                    target.setdefault(key, val)
        merged = cfg if isinstance(cfg, dict) else {}
        merge(DEFAULT_CONFIG, merged)
        return merged

    def get_player_config(self) -> dict:
        return self.config.get("player", {})

    def relay_settings(self, host: Optional[str] = None, port: Optional[int] = None) -> "RelaySettings":
        """Frozen relay settings; explicit host/port (command line) win over config and PORT."""
        settings = RelaySettings.from_config(self.config)
        if host:
            settings = dataclasses.replace(settings, host=str(host))
        if port is not None:
            settings = dataclasses.replace(settings, port=int(port))
        return settings


@dataclass(frozen=True)
class RelaySettings:
    """Read-only relay configuration, built once at process start."""

    host: str = DEFAULT_CONFIG["host"]
    port: int = DEFAULT_CONFIG["port"]
    connect_timeout: float = DEFAULT_CONFIG["upstream_connect_timeout_seconds"]
    read_timeout: float = DEFAULT_CONFIG["upstream_read_timeout_seconds"]
    max_redirects: int = DEFAULT_CONFIG["max_redirects"]
    chunk_bytes: int = DEFAULT_CONFIG["relay_chunk_kb"] * 1024
    user_agent: str = DEFAULT_USER_AGENT
    subtitle_content_type: str = DEFAULT_CONFIG["subtitle_content_type"]
    subtitle_allowed_types: Tuple[str, ...] = tuple(DEFAULT_CONFIG["subtitle_allowed_types"])
    prober_bin: str = DEFAULT_CONFIG["prober_bin"]
    remuxer_bin: str = DEFAULT_CONFIG["remuxer_bin"]
    prober_timeout: float = DEFAULT_CONFIG["prober_timeout_seconds"]
    prober_max_output_bytes: int = DEFAULT_CONFIG["prober_max_output_kb"] * 1024
    remuxer_timeout: float = DEFAULT_CONFIG["remuxer_timeout_seconds"]
    temp_dir: str = ""

    @property
    def timeout(self) -> Tuple[float, float]:
        return (self.connect_timeout, self.read_timeout)

    @property
    def scratch_dir(self) -> str:
        return self.temp_dir or tempfile.gettempdir()

    @classmethod
    def from_config(cls, cfg: dict) -> "RelaySettings":
        port = cfg.get("port", DEFAULT_CONFIG["port"])
        env_port = os.environ.get("PORT")
        if env_port:
            try:
                port = int(env_port)
            except ValueError:
                LOG.warning("Ignoring invalid PORT value %r", env_port)
        allowed = cfg.get("subtitle_allowed_types") or DEFAULT_CONFIG["subtitle_allowed_types"]
        return cls(
            host=str(cfg.get("host", DEFAULT_CONFIG["host"])),
            port=int(port),
            connect_timeout=float(cfg.get("upstream_connect_timeout_seconds", cls.connect_timeout)),
            read_timeout=float(cfg.get("upstream_read_timeout_seconds", cls.read_timeout)),
            max_redirects=max(0, int(cfg.get("max_redirects", cls.max_redirects))),
            chunk_bytes=max(4096, int(cfg.get("relay_chunk_kb", DEFAULT_CONFIG["relay_chunk_kb"])) * 1024),
            user_agent=str(cfg.get("user_agent") or DEFAULT_USER_AGENT),
            subtitle_content_type=str(cfg.get("subtitle_content_type") or cls.subtitle_content_type),
            subtitle_allowed_types=tuple(str(t).lower() for t in allowed),
            prober_bin=str(cfg.get("prober_bin") or cls.prober_bin),
            remuxer_bin=str(cfg.get("remuxer_bin") or cls.remuxer_bin),
            prober_timeout=float(cfg.get("prober_timeout_seconds", cls.prober_timeout)),
            prober_max_output_bytes=max(1024, int(cfg.get("prober_max_output_kb", DEFAULT_CONFIG["prober_max_output_kb"])) * 1024),
            remuxer_timeout=float(cfg.get("remuxer_timeout_seconds", cls.remuxer_timeout)),
            temp_dir=str(cfg.get("temp_dir") or ""),
        )
