from __future__ import annotations

import argparse
import os
from pathlib import Path
from typing import Any


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Launch the venue AV control API",
    )
    parser.add_argument(
        "--host",
        default=os.environ.get("FLASK_RUN_HOST", "0.0.0.0"),
        help="Hostname or IP to bind (default: %(default)s)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.environ.get("FLASK_RUN_PORT", "5000")),
        help="Port to listen on (default: %(default)s)",
    )
    parser.add_argument(
        "--config-root",
        type=Path,
        default=Path(os.environ.get("CONFIG_ROOT", "cfg")),
        help="Directory holding site.yml, payload files and saved volumes",
    )
    parser.add_argument(
        "--site-config",
        type=Path,
        default=os.environ.get("AV_SITE_CONFIG") or None,
        help="Site YAML file (default: <config-root>/site.yml)",
    )
    parser.add_argument(
        "--virtual",
        action="store_true",
        default=os.environ.get("AV_USE_VIRTUAL", "").strip().lower() in {"1", "true", "yes", "on"},
        help="Drive an in-memory device fleet instead of the network",
    )
    parser.add_argument(
        "--log-level",
        help="Override log level (e.g. DEBUG); takes precedence over site.yml",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable Flask debug mode",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()

    from webapp import create_app

    config: dict[str, Any] = {
        "CONFIG_ROOT": str(args.config_root),
        "USE_VIRTUAL": args.virtual,
    }
    if args.site_config:
        config["SITE_CONFIG"] = str(args.site_config)
    if args.log_level:
        config["LOG_LEVEL"] = args.log_level
    if args.debug:
        config["DEBUG"] = True

    app = create_app(config)
    # Reloader would start a second controller against the same devices
    app.run(host=args.host, port=args.port, debug=args.debug, use_reloader=False, threaded=True)


if __name__ == "__main__":
    main()
