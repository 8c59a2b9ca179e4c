import argparse
import logging

from relay.config import ConfigManager
from relay.server import RelayServer

LOG = logging.getLogger(__name__)


def main(argv=None) -> int:
    ap = argparse.ArgumentParser(description="StreamFlow media relay")
    ap.add_argument("--config", default=None, help="Path to config.json (defaults to the app directory).")
    ap.add_argument("--host", default=None, help="Listen address (overrides config).")
    ap.add_argument("--port", type=int, default=None, help="Listen port (overrides config and PORT).")
    ap.add_argument("--log-level", default="INFO", help="Logging level (DEBUG, INFO, WARNING, ...).")
    args = ap.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    config_manager = ConfigManager(args.config)
    settings = config_manager.relay_settings(host=args.host, port=args.port)

    server = RelayServer(settings)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        LOG.info("Shutting down")
    except OSError as e:
        LOG.error("Relay failed to start on %s:%s: %s", settings.host, settings.port, e)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
