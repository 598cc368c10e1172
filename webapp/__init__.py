from __future__ import annotations

import atexit
import logging
import time
from pathlib import Path
from typing import Any

from flask import Flask

from avcontrol import apply_log_level

from .controller import ZoneController
from .logbus import LogBus, attach_log_handler

LOGGER = logging.getLogger(__name__)


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def create_app(config: dict[str, Any] | None = None) -> Flask:
    from .routes import bp

    app = Flask(__name__)
    app.config.setdefault("CONFIG_ROOT", str(Path("cfg")))
    app.config.setdefault("SITE_CONFIG", None)
    app.config.setdefault("USE_VIRTUAL", False)
    app.config.setdefault("LOG_BUFFER", 500)
    app.config.setdefault("LOG_LEVEL", None)

    if config:
        app.config.update(config)

    log_bus = LogBus(maxlen=int(app.config["LOG_BUFFER"]))
    app.log_bus = log_bus  # type: ignore[attr-defined]
    app.log_handler = attach_log_handler(log_bus)  # type: ignore[attr-defined]

    site_config = app.config.get("SITE_CONFIG")
    controller = ZoneController(
        config_root=Path(app.config["CONFIG_ROOT"]),
        site_config=Path(site_config) if site_config else None,
        transport=app.config.get("TRANSPORT"),
        prefer_virtual=_as_bool(app.config.get("USE_VIRTUAL")),
        sleep=app.config.get("SLEEP") or time.sleep,
    )
    apply_log_level(controller.config.log_level, app.config.get("LOG_LEVEL"))
    app.zone_controller = controller  # type: ignore[attr-defined]
    app.register_blueprint(bp)
    atexit.register(controller.shutdown)
    LOGGER.info("Loaded %d zone(s) from %s", len(controller.config.zones), controller.site_path)

    return app
