from __future__ import annotations

import json
import logging
import queue
from typing import Any, Callable, Dict, Optional

from flask import Blueprint, Response, current_app, jsonify, request

from .controller import NotFound, ValidationError, ZoneController

bp = Blueprint("main", __name__)


def _controller() -> ZoneController:
    return current_app.zone_controller  # type: ignore[attr-defined]


def _payload() -> Dict[str, Any]:
    payload = request.get_json(force=True, silent=True)
    if not isinstance(payload, dict):
        raise ValidationError("Invalid payload")
    return payload


def _respond(action: Callable[[], Dict[str, Any]]) -> Response:
    try:
        result = action()
    except NotFound as exc:
        return jsonify({"success": False, "error": str(exc)}), 404
    except ValidationError as exc:
        return jsonify({"success": False, "error": str(exc)}), 400
    return jsonify(result)


@bp.get("/api/zones")
def api_zones() -> Response:
    return jsonify({"items": _controller().list_zones()})


@bp.get("/api/zones/<zone>/reachable")
def api_zone_reachable(zone: str) -> Response:
    return _respond(lambda: _controller().zone_reachability(zone))


@bp.get("/api/receivers/status")
def api_receiver_status() -> Response:
    return _respond(lambda: _controller().receiver_status(request.args.get("ip")))


@bp.post("/api/zones/<zone>/receivers/<name>/channel")
def api_set_channel(zone: str, name: str) -> Response:
    return _respond(
        lambda: _controller().set_channel(zone, name, _payload().get("channel"))
    )


@bp.post("/api/zones/<zone>/receivers/<name>/volume")
def api_set_volume(zone: str, name: str) -> Response:
    return _respond(
        lambda: _controller().set_volume(zone, name, _payload().get("volume"))
    )


@bp.post("/api/zones/<zone>/receivers/<name>/power")
def api_power(zone: str, name: str) -> Response:
    return _respond(
        lambda: _controller().send_power(zone, name, _payload().get("command"))
    )


@bp.post("/api/zones/<zone>/remote")
def api_remote(zone: str) -> Response:
    def action() -> Dict[str, Any]:
        payload = _payload()
        return _controller().send_remote(zone, payload.get("device"), payload.get("action"))

    return _respond(action)


@bp.post("/api/zones/<zone>/bulk")
def api_bulk(zone: str) -> Response:
    def action() -> Dict[str, Any]:
        payload = _payload()
        return _controller().bulk_switch(
            zone, payload.get("receivers"), payload.get("channel")
        )

    return _respond(action)


@bp.post("/api/audio/toggle")
def api_audio_toggle() -> Response:
    return _respond(lambda: _controller().toggle_audio(_payload().get("source")))


@bp.get("/api/audio/snapshot")
def api_audio_snapshot() -> Response:
    return jsonify(_controller().audio_snapshot())


def _level_filter() -> Optional[int]:
    """Minimum level from ?level=, NOTSET when absent, None when unknown."""
    name = (request.args.get("level") or "").strip().upper()
    if not name:
        return logging.NOTSET
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else None


@bp.get("/api/logs")
def api_logs() -> Response:
    log_bus = current_app.log_bus  # type: ignore[attr-defined]
    min_level = _level_filter()
    if min_level is None:
        return jsonify({"error": f"Unknown log level: {request.args.get('level')}"}), 400
    limit = request.args.get("limit", type=int)
    entries = log_bus.recent(
        limit=200 if limit is None else limit,
        since_id=request.args.get("since", type=int),
        min_level=min_level,
        logger=request.args.get("logger") or None,
    )
    return jsonify([e.to_dict() for e in entries])


@bp.get("/api/logs/stream")
def api_logs_stream() -> Response:
    log_bus = current_app.log_bus  # type: ignore[attr-defined]
    min_level = _level_filter()
    if min_level is None:
        return jsonify({"error": f"Unknown log level: {request.args.get('level')}"}), 400
    logger_name = request.args.get("logger") or None

    def stream() -> Any:
        q = log_bus.subscribe(min_level, logger_name)
        try:
            while True:
                try:
                    entry = q.get(timeout=15)
                except queue.Empty:
                    yield ": keep-alive\n\n"
                    continue
                yield f"data: {json.dumps(entry.to_dict())}\n\n"
        finally:
            log_bus.unsubscribe(q)

    headers = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}
    return Response(stream(), headers=headers, mimetype="text/event-stream")
