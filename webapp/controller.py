from __future__ import annotations

import json
import logging
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from avcontrol import (
    AppConfig,
    AvSite,
    BulkReport,
    ReceiverConfig,
    SwitchMode,
    ZoneConfig,
    all_unreachable,
    load_payloads,
    load_site_config,
    parse_bounded_int,
    parse_ip,
    receiver_status,
)
from justaddpower import DeviceError, JustAddPowerClient

from justaddpower.virtual import VirtualTransport

LOGGER = logging.getLogger(__name__)

_MISSING = object()

POWER_COMMANDS: Dict[str, str] = {
    "on": "cec_tv_on.sh",
    "off": "cec_tv_off.sh",
}


class ValidationError(Exception):
    """Raised when a payload or configuration is invalid."""


class NotFound(ValidationError):
    """Raised when a zone, receiver or device does not exist."""


def _load_site(path: Path) -> AppConfig:
    try:
        return load_site_config(str(path))
    except SystemExit as exc:
        raise ValidationError(f"Invalid site configuration: {path}") from exc


class ZoneController:
    """Owns the site config, the device transport and the core components.

    Device-changing operations run one at a time; the control network does
    not tolerate interleaved command bursts.
    """

    def __init__(
        self,
        config_root: Path,
        *,
        site_config: Optional[Path] = None,
        transport: Any = None,
        prefer_virtual: Optional[bool] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config_root = config_root.resolve()
        self.config_root.mkdir(parents=True, exist_ok=True)
        site_path = site_config or self.config_root / "site.yml"
        if not site_path.is_absolute():
            site_path = self.config_root / site_path
        self.site_path = site_path
        self.config = _load_site(site_path)

        if transport is None:
            if prefer_virtual:
                LOGGER.info("Using virtual device fleet")
                transport = VirtualTransport()
            else:
                transport = JustAddPowerClient(timeout=self.config.api_timeout)
        self.transport = transport
        self.site = AvSite.build(self.config, transport, str(self.config_root), sleep=sleep)

        self._lock = threading.RLock()
        self._state_path = self.config_root / ".session-state.json"
        self._session_state: Dict[str, Any] = {
            "audio_source": None,
            "audio_switched_at": None,
        }
        self._load_session_state()

    # ---------------------- lookups ----------------------

    def zone(self, zone_id: str) -> ZoneConfig:
        zone = self.config.zones.get(zone_id)
        if zone is None:
            raise NotFound(f"Unknown zone: {zone_id}")
        return zone

    def receiver(self, zone_id: str, name: str) -> ReceiverConfig:
        receiver = self.zone(zone_id).receiver(name)
        if receiver is None:
            raise NotFound("Receiver not found")
        return receiver

    def list_zones(self) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        for zone_id, zone in self.config.zones.items():
            items.append(
                {
                    "id": zone_id,
                    "name": zone.name,
                    "anti_popping": zone.anti_popping,
                    "min_volume": zone.min_volume,
                    "max_volume": zone.max_volume,
                    "receivers": [
                        {
                            "name": r.name,
                            "ip": r.ip,
                            "show_power": r.show_power,
                            "anti_popping": r.anti_popping,
                        }
                        for r in zone.receivers.values()
                    ],
                    "transmitters": dict(zone.transmitters),
                    "remote_actions": sorted(load_payloads(zone.payloads_file)),
                }
            )
        return items

    # ---------------------- status ----------------------

    def receiver_status(self, ip: Any) -> Dict[str, Any]:
        address = parse_ip(ip)
        if address is None:
            raise ValidationError("Invalid or missing IP address")
        return receiver_status(self.transport, self.site.prober, address)

    def zone_reachability(self, zone_id: str) -> Dict[str, Any]:
        zone = self.zone(zone_id)
        unreachable = all_unreachable(
            self.transport, [r.ip for r in zone.receivers.values()]
        )
        return {"zone": zone_id, "all_unreachable": unreachable}

    # ---------------------- receiver control ----------------------

    def set_channel(self, zone_id: str, name: str, channel: Any) -> Dict[str, Any]:
        receiver = self.receiver(zone_id, name)
        value = parse_bounded_int(channel, 1)
        if value is None:
            raise ValidationError("Invalid channel value")
        mode = self.site.mode_for(receiver)
        transition = None
        with self._lock:
            if mode is SwitchMode.ANTI_POPPING:
                transition = self.site.sequencer.run(receiver.ip, value)
                ok = transition.success
            else:
                ok = self.site.orchestrator.switch_one(receiver.ip, value, mode)
        LOGGER.info(
            "Channel updated for %s to %d (%s) - Result: %s",
            receiver.ip,
            value,
            mode.value,
            "Success" if ok else "Failed",
        )
        result: Dict[str, Any] = {
            "success": ok,
            "message": "Channel: " + ("Successfully updated" if ok else "Update failed"),
        }
        if transition is not None:
            result["transition"] = transition.to_dict()
        return result

    def set_volume(self, zone_id: str, name: str, volume: Any) -> Dict[str, Any]:
        zone = self.zone(zone_id)
        receiver = self.receiver(zone_id, name)
        profile = self.site.prober.probe(receiver.ip)
        if not profile.supports_volume:
            LOGGER.info("Volume control not supported for IP: %s", receiver.ip)
            return {"success": False, "message": "Device does not support volume control"}
        value = parse_bounded_int(volume, zone.min_volume, zone.max_volume)
        if value is None:
            raise ValidationError("Invalid volume value")
        with self._lock:
            try:
                ok = bool(self.transport.set_volume(receiver.ip, value))
            except DeviceError as exc:
                LOGGER.error("Error updating volume: %s", exc)
                return {"success": False, "message": f"Error updating volume: {exc}"}
        LOGGER.info(
            "Volume updated for %s to %d - Result: %s",
            receiver.ip,
            value,
            "Success" if ok else "Failed",
        )
        return {
            "success": ok,
            "message": "Volume: " + ("Successfully updated" if ok else "Update failed"),
        }

    def send_power(self, zone_id: str, name: str, command: Any) -> Dict[str, Any]:
        receiver = self.receiver(zone_id, name)
        if not receiver.show_power:
            return {"success": False, "message": "Power control not enabled for this receiver."}
        script = POWER_COMMANDS.get(str(command).strip().lower()) if command else None
        if script is None:
            raise ValidationError("Power command must be 'on' or 'off'")
        with self._lock:
            try:
                ok = bool(self.transport.send_cli(receiver.ip, script))
            except DeviceError as exc:
                LOGGER.error("Error sending power command: %s", exc)
                return {"success": False, "message": f"Error sending power command: {exc}"}
        if not ok:
            return {
                "success": False,
                "message": "Error sending power command: Unexpected response.",
            }
        return {"success": True, "message": "Power command sent successfully."}

    def send_remote(self, zone_id: str, device: Any, action: Any) -> Dict[str, Any]:
        zone = self.zone(zone_id)
        if not action or not isinstance(action, str):
            raise ValidationError("No action specified")
        address = parse_ip(device)
        if address is None:
            receiver = zone.receiver(str(device)) if device else None
            if receiver is None:
                raise NotFound("Unknown remote device")
            address = receiver.ip
        payloads = load_payloads(zone.payloads_file)
        if action not in payloads:
            raise ValidationError(f"Invalid action: {action}")
        with self._lock:
            try:
                self.transport.send_ir(address, payloads[action])
            except DeviceError as exc:
                LOGGER.error("Error sending remote command: %s", exc)
                return {"success": False, "message": f"Error sending command: {exc}"}
        return {"success": True, "message": "Command sent successfully"}

    def bulk_switch(self, zone_id: str, receivers: Any, channel: Any) -> Dict[str, Any]:
        zone = self.zone(zone_id)
        if not isinstance(receivers, list) or not receivers:
            raise ValidationError("No receivers selected")
        names = [str(n) for n in receivers]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValidationError("Duplicate receivers selected: " + ", ".join(duplicates))
        value = parse_bounded_int(channel, 1)
        if value is None:
            raise ValidationError("Invalid channel value")

        report = BulkReport()
        targets: Dict[str, str] = {}
        modes = {}
        for name in names:
            receiver = zone.receiver(name)
            if receiver is None:
                report.record(name, "", False, "Receiver not found")
                continue
            targets[name] = receiver.ip
            modes[name] = self.site.mode_for(receiver)

        with self._lock:
            self.site.orchestrator.switch_all(targets, value, modes=modes, report=report)
        data = report.to_dict()
        data["message"] = (
            f"Successfully switched {report.success_count} of {len(report.results)} receivers"
        )
        return data

    # ---------------------- venue audio ----------------------

    def toggle_audio(self, source: Any) -> Dict[str, Any]:
        toggle = self.site.toggle
        if toggle is None:
            raise NotFound("Audio toggle is not configured")
        if not isinstance(source, str) or source not in toggle.config.sources:
            raise ValidationError("Invalid audio source specified")
        with self._lock:
            report = toggle.switch_source(source)
            self._update_session_state(audio_source=source)
        data = report.to_dict()
        data["message"] = toggle.describe(source, report)
        data["source"] = source
        return data

    def audio_snapshot(self) -> Dict[str, Any]:
        snapshot = self.site.store.persistence.read_snapshot()
        return {
            "snapshot": snapshot.to_dict() if snapshot else None,
            "audio_source": self._session_state.get("audio_source"),
            "audio_switched_at": self._session_state.get("audio_switched_at"),
        }

    def shutdown(self) -> None:
        try:
            self.transport.close()
        except Exception:  # noqa: BLE001
            LOGGER.exception("Failed to close device transport")

    # ---------------------- session state ----------------------

    def _load_session_state(self) -> None:
        if not self._state_path.exists():
            return
        try:
            raw = self._state_path.read_text(encoding="utf-8")
            data = json.loads(raw) if raw.strip() else {}
        except Exception:  # noqa: BLE001
            LOGGER.warning("Unable to read session state from %s", self._state_path)
            return
        if not isinstance(data, dict):
            return
        source = data.get("audio_source")
        if isinstance(source, str) and source.strip():
            self._session_state["audio_source"] = source.strip()
        switched_at = data.get("audio_switched_at")
        if isinstance(switched_at, (int, float)):
            self._session_state["audio_switched_at"] = float(switched_at)

    def _persist_session_state(self) -> None:
        try:
            self._state_path.parent.mkdir(parents=True, exist_ok=True)
            self._state_path.write_text(
                json.dumps(self._session_state, indent=2, sort_keys=True), encoding="utf-8"
            )
        except Exception:  # noqa: BLE001
            LOGGER.exception("Failed to persist session state to %s", self._state_path)

    def _update_session_state(self, *, audio_source: Any = _MISSING) -> None:
        if audio_source is _MISSING:
            return
        self._session_state["audio_source"] = str(audio_source) if audio_source else None
        self._session_state["audio_switched_at"] = time.time()
        self._persist_session_state()
