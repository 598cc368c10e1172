#!/usr/bin/env python3
"""
Venue AV zone controller

Drives Just Add Power receivers/transmitters: channel changes with
anti-popping sequencing, venue-wide audio source toggles with volume
snapshots, and bulk switching across zones.

Usage:
    python3 avcontrol.py --cfg cfg/site.yml --audio-source wireless
    python3 avcontrol.py --cfg cfg/site.yml --zone dj --receiver "DJ Booth" --channel 5
"""

from __future__ import annotations

import argparse
import ipaddress
import json
import logging
import os
import sys
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import yaml

from justaddpower import DeviceError, Gate, JustAddPowerClient

# ---------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------


def _resolve_log_level(value: Optional[str]) -> int:
    """Resolve log level from string or numeric value."""
    if not value:
        return logging.INFO
    raw = value.strip()
    if raw.isdigit():
        return int(raw)
    return getattr(logging, raw.upper(), logging.INFO)


LOG_LEVEL = _resolve_log_level(os.getenv("AV_LOG_LEVEL", "INFO"))
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)
logger = logging.getLogger("av")

# ---------------------------------------------------------------------
# Device / site constants
# ---------------------------------------------------------------------

VOLUME_CONTROL_MODELS: Tuple[str, ...] = (
    "3G+4+ TX",
    "3G+AVP RX",
    "3G+AVP TX",
    "3G+WP4 TX",
    "2G/3G SX",
)
DSP_MODELS: Tuple[str, ...] = ("3G+AVP TX", "3G+WP4 TX")

DEFAULT_SITE_CONFIG: str = os.path.join(os.path.dirname(__file__), "cfg", "site.yml")
SNAPSHOT_FILENAME: str = "saved_volumes.json"
SNAPSHOT_TIME_FORMAT: str = "%Y-%m-%d %H:%M:%S"

# Gate-off order; gate-on runs the same list backwards.
GATE_OFF_ORDER: Tuple[Gate, ...] = (
    Gate.DSP_LINE,
    Gate.DSP_HDMI,
    Gate.HDMI_MUTE,
    Gate.STEREO_MUTE,
)
DSP_GATES = frozenset({Gate.DSP_LINE, Gate.DSP_HDMI})
RECOVERY_ORDER: Tuple[Gate, ...] = (
    Gate.HDMI_MUTE,
    Gate.STEREO_MUTE,
    Gate.DSP_HDMI,
    Gate.DSP_LINE,
)

GATE_LABELS: Dict[Gate, str] = {
    Gate.DSP_LINE: "DSP Line audio",
    Gate.DSP_HDMI: "DSP HDMI audio",
    Gate.HDMI_MUTE: "HDMI audio",
    Gate.STEREO_MUTE: "Stereo audio",
}

_MISSING = object()

SleepFn = Callable[[float], None]


@dataclass(frozen=True)
class Timings:
    """Fixed real-time delays used in place of device acknowledgements (seconds)."""

    ramp_down_settle: float = 1.0
    pre_switch_settle: float = 2.0
    post_switch_settle: float = 3.0
    gate_settle: float = 1.0
    volume_step_delay: float = 0.2
    zone_pacing: float = 0.2
    volume_pacing: float = 0.1
    toggle_settle: float = 1.0
    volume_ramp_steps: int = 5

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "Timings":
        defaults = cls()
        values: Dict[str, Any] = {}
        for name, default in defaults.__dict__.items():
            if name == "volume_ramp_steps":
                values[name] = max(1, _parse_int(raw.get(name, default), default))
            else:
                parsed = _parse_float(raw.get(name, default), default)
                values[name] = max(0.0, parsed if parsed is not None else default)
        return cls(**values)


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------


def _parse_int(value: Any, default: int) -> int:
    """Parse an int from a value or return a default on failure."""
    try:
        if isinstance(value, str):
            return int(value.strip(), 0)
        return int(value)  # type: ignore[arg-type]
    except Exception:
        return default


def _parse_bool(value: Any, default: bool) -> bool:
    """Parse a bool from bool/number/str inputs; fall back to default."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        v = value.strip().lower()
        if v in {"1", "true", "yes", "on"}:
            return True
        if v in {"0", "false", "no", "off"}:
            return False
    return default


def _parse_float(value: Any, default: Optional[float] = None) -> Optional[float]:
    """Parse a float or return a default when conversion fails."""
    try:
        return float(value)
    except Exception:
        return default


def _parse_str(value: Any, default: str = "") -> str:
    """Coerce simple scalar values to string, otherwise return default."""
    return str(value) if isinstance(value, (str, int, float)) else default


def _list_of_str(v: Any) -> List[str]:
    """Return a list of stringified items or an empty list."""
    if not isinstance(v, list):
        return []
    return [str(x) for x in v]


def _enforce(cond: bool, msg: str) -> None:
    """Abort execution with a config error when a condition fails."""
    if not cond:
        logger.critical("Config error: %s", msg)
        raise SystemExit(2)


def parse_ip(value: Any) -> Optional[str]:
    """Return a normalised IP address string or None when invalid."""
    if not isinstance(value, str):
        return None
    try:
        return str(ipaddress.ip_address(value.strip()))
    except ValueError:
        return None


def parse_bounded_int(
    value: Any, minimum: Optional[int] = None, maximum: Optional[int] = None
) -> Optional[int]:
    """Parse a decimal integer within an optional range; None on failure.

    Zero is a valid result; booleans and fractional numbers are rejected.
    """
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, float):
        if not value.is_integer():
            return None
        value = int(value)
    if isinstance(value, str):
        raw = value.strip()
        if not raw.lstrip("-").isdigit():
            return None
        value = int(raw)
    if not isinstance(value, int):
        return None
    if minimum is not None and value < minimum:
        return None
    if maximum is not None and value > maximum:
        return None
    return value


def load_payloads(path: Optional[str]) -> Dict[str, str]:
    """Load IR payloads from an ``action=payload`` text file."""
    payloads: Dict[str, str] = {}
    if not path:
        return payloads
    try:
        with open(path, "r", encoding="utf-8") as fh:
            for line in fh:
                raw = line.strip()
                if not raw or raw.startswith("#") or "=" not in raw:
                    continue
                action, payload = raw.split("=", 1)
                if action.strip():
                    payloads[action.strip()] = payload.strip()
    except FileNotFoundError:
        logger.warning("IR payload file %s not found", path)
    except Exception as exc:  # noqa: BLE001
        logger.error("Failed to read IR payloads %s: %s", path, exc)
    return payloads


# ---------------------------------------------------------------------
# Site configuration
# ---------------------------------------------------------------------


@dataclass
class ReceiverConfig:
    name: str
    ip: str
    show_power: bool = True
    anti_popping: bool = False


@dataclass
class ZoneConfig:
    zone_id: str
    name: str
    receivers: Dict[str, ReceiverConfig]
    transmitters: Dict[str, int]
    anti_popping: bool = False
    payloads_file: Optional[str] = None
    min_volume: int = 0
    max_volume: int = 10

    def receiver(self, name: str) -> Optional[ReceiverConfig]:
        return self.receivers.get(name)


@dataclass
class AudioToggleConfig:
    zones: Dict[str, str]
    sources: Dict[str, int]
    capture_source: Optional[str] = None
    restore_source: Optional[str] = None
    capture_volumes: Dict[str, int] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)
    anti_popping: bool = False

    def label(self, source: str) -> str:
        return self.labels.get(source, source)


class AppConfig:
    """Parsed, validated site configuration."""

    api_timeout: float
    log_level: Optional[int]
    log_file: Optional[str]
    min_volume: int
    max_volume: int
    volume_models: Tuple[str, ...]
    dsp_models: Tuple[str, ...]
    timings: Timings
    zones: Dict[str, ZoneConfig]
    audio_toggle: Optional[AudioToggleConfig]

    def __init__(self, raw: Dict[str, Any], base_dir: Optional[str] = None) -> None:
        _enforce(isinstance(raw, dict), "root must be a mapping")
        self.base_dir = base_dir or os.getcwd()

        self.api_timeout = _parse_float(raw.get("api_timeout", 2), 2.0) or 2.0
        _enforce(self.api_timeout > 0, "api_timeout must be > 0")
        log_level = raw.get("log_level")
        self.log_level = _resolve_log_level(str(log_level)) if log_level else None
        log_file = raw.get("log_file")
        self.log_file = self._resolve(str(log_file)) if log_file else None

        self.min_volume = _parse_int(raw.get("min_volume", 0), 0)
        self.max_volume = _parse_int(raw.get("max_volume", 10), 10)
        _enforce(
            0 <= self.min_volume <= self.max_volume,
            "min_volume must be >= 0 and <= max_volume",
        )

        models = raw.get("volume_models", list(VOLUME_CONTROL_MODELS))
        dsp = raw.get("dsp_models", list(DSP_MODELS))
        _enforce(isinstance(models, list), "volume_models must be a list")
        _enforce(isinstance(dsp, list), "dsp_models must be a list")
        self.volume_models = tuple(_list_of_str(models))
        self.dsp_models = tuple(m for m in _list_of_str(dsp) if m.strip())

        timings = raw.get("timings", {}) or {}
        _enforce(isinstance(timings, dict), "timings must be a mapping")
        self.timings = Timings.from_dict(timings)

        zones = raw.get("zones", {}) or {}
        _enforce(isinstance(zones, dict), "zones must be a mapping")
        self.zones = {
            str(zone_id): self._parse_zone(str(zone_id), zone)
            for zone_id, zone in zones.items()
        }

        toggle = raw.get("audio_toggle")
        self.audio_toggle = self._parse_audio_toggle(toggle) if toggle else None

    def _resolve(self, path: str) -> str:
        return path if os.path.isabs(path) else os.path.join(self.base_dir, path)

    def _parse_zone(self, zone_id: str, raw: Any) -> ZoneConfig:
        _enforce(isinstance(raw, dict), f"zones.{zone_id} must be a mapping")
        anti_popping = _parse_bool(raw.get("anti_popping", False), False)

        receivers_raw = raw.get("receivers", {}) or {}
        _enforce(
            isinstance(receivers_raw, dict), f"zones.{zone_id}.receivers must be a mapping"
        )
        receivers: Dict[str, ReceiverConfig] = {}
        for name, item in receivers_raw.items():
            where = f"zones.{zone_id}.receivers.{name}"
            if isinstance(item, str):
                item = {"ip": item}
            _enforce(isinstance(item, dict), f"{where} must be a mapping or an IP")
            ip = _parse_str(item.get("ip"), "").strip()
            _enforce(bool(ip), f"{where}.ip is required")
            receivers[str(name)] = ReceiverConfig(
                name=str(name),
                ip=ip,
                show_power=_parse_bool(item.get("show_power", True), True),
                anti_popping=_parse_bool(item.get("anti_popping", anti_popping), anti_popping),
            )

        transmitters_raw = raw.get("transmitters", {}) or {}
        _enforce(
            isinstance(transmitters_raw, dict),
            f"zones.{zone_id}.transmitters must be a mapping",
        )
        transmitters: Dict[str, int] = {}
        for label, channel in transmitters_raw.items():
            value = _parse_int(channel, 0)
            _enforce(value > 0, f"zones.{zone_id}.transmitters.{label} must be a channel > 0")
            transmitters[str(label)] = value

        min_volume = _parse_int(raw.get("min_volume", self.min_volume), self.min_volume)
        max_volume = _parse_int(raw.get("max_volume", self.max_volume), self.max_volume)
        _enforce(
            0 <= min_volume <= max_volume,
            f"zones.{zone_id}: min_volume must be >= 0 and <= max_volume",
        )

        payloads = raw.get("payloads")
        return ZoneConfig(
            zone_id=zone_id,
            name=_parse_str(raw.get("name", zone_id), zone_id),
            receivers=receivers,
            transmitters=transmitters,
            anti_popping=anti_popping,
            payloads_file=self._resolve(str(payloads)) if payloads else None,
            min_volume=min_volume,
            max_volume=max_volume,
        )

    def _parse_audio_toggle(self, raw: Any) -> AudioToggleConfig:
        _enforce(isinstance(raw, dict), "audio_toggle must be a mapping")
        zones = raw.get("zones", {})
        sources = raw.get("sources", {})
        _enforce(isinstance(zones, dict) and zones, "audio_toggle.zones must be a non-empty mapping")
        _enforce(
            isinstance(sources, dict) and sources,
            "audio_toggle.sources must be a non-empty mapping",
        )
        parsed_sources: Dict[str, int] = {}
        for name, channel in sources.items():
            value = _parse_int(channel, 0)
            _enforce(value > 0, f"audio_toggle.sources.{name} must be a channel > 0")
            parsed_sources[str(name)] = value

        capture = raw.get("capture_source")
        restore = raw.get("restore_source")
        for key, value in (("capture_source", capture), ("restore_source", restore)):
            _enforce(
                value is None or str(value) in parsed_sources,
                f"audio_toggle.{key} must name one of the sources",
            )

        volumes_raw = raw.get("capture_volumes", {}) or {}
        _enforce(isinstance(volumes_raw, dict), "audio_toggle.capture_volumes must be a mapping")
        capture_volumes: Dict[str, int] = {}
        for name, level in volumes_raw.items():
            value = parse_bounded_int(level, 0)
            _enforce(value is not None, f"audio_toggle.capture_volumes.{name} must be >= 0")
            capture_volumes[str(name)] = int(value)  # type: ignore[arg-type]

        parsed_zones = {str(k): _parse_str(v, "").strip() for k, v in zones.items()}
        for name, ip in parsed_zones.items():
            _enforce(bool(ip), f"audio_toggle.zones.{name} needs an IP")

        labels_raw = raw.get("labels", {}) or {}
        _enforce(isinstance(labels_raw, dict), "audio_toggle.labels must be a mapping")

        return AudioToggleConfig(
            zones=parsed_zones,
            sources=parsed_sources,
            capture_source=str(capture) if capture is not None else None,
            restore_source=str(restore) if restore is not None else None,
            capture_volumes=capture_volumes,
            labels={str(k): _parse_str(v, str(k)) for k, v in labels_raw.items()},
            anti_popping=_parse_bool(raw.get("anti_popping", False), False),
        )


def load_site_config(path: str) -> AppConfig:
    """Load a YAML site file and return AppConfig."""
    try:
        with open(path, "r", encoding="utf-8") as fh:
            raw = yaml.safe_load(fh) or {}
    except FileNotFoundError:
        logger.critical("Site config %s not found", path)
        raise SystemExit(2)
    except yaml.YAMLError as exc:
        logger.critical("Site config %s is not valid YAML: %s", path, exc)
        raise SystemExit(2)
    if not isinstance(raw, dict):
        logger.critical("Config root must be a mapping/dictionary")
        raise SystemExit(2)
    return AppConfig(raw, base_dir=os.path.dirname(os.path.abspath(path)))


# ---------------------------------------------------------------------
# Device helpers (transport failures stop here)
# ---------------------------------------------------------------------


def _read_volume(transport: Any, address: str) -> Optional[int]:
    try:
        return transport.get_volume(address)
    except DeviceError as exc:
        logger.error("Error getting current volume for %s: %s", address, exc)
        return None


def _write_volume(transport: Any, address: str, level: int) -> bool:
    try:
        return bool(transport.set_volume(address, level))
    except DeviceError as exc:
        logger.error("Error setting volume for %s: %s", address, exc)
        return False


def _read_channel(transport: Any, address: str) -> Optional[int]:
    try:
        return transport.get_channel(address)
    except DeviceError as exc:
        logger.error("Error getting current channel for %s: %s", address, exc)
        return None


def _write_channel(transport: Any, address: str, channel: int) -> bool:
    try:
        return bool(transport.set_channel(address, channel))
    except DeviceError as exc:
        logger.error("Error setting channel for %s: %s", address, exc)
        return False


# ---------------------------------------------------------------------
# Capability probing
# ---------------------------------------------------------------------


@dataclass(frozen=True)
class CapabilityProfile:
    """What a device can do, derived from its reported model string."""

    model: str = ""
    supports_volume: bool = False
    supports_dsp: bool = False


class CapabilityProber:
    """Queries the model on every call; nothing is cached between operations."""

    def __init__(
        self,
        transport: Any,
        volume_models: Sequence[str] = VOLUME_CONTROL_MODELS,
        dsp_models: Sequence[str] = DSP_MODELS,
    ) -> None:
        self.transport = transport
        self.volume_models = tuple(volume_models)
        self.dsp_models = tuple(dsp_models)

    def profile_for(self, model: str) -> CapabilityProfile:
        model = (model or "").strip()
        return CapabilityProfile(
            model=model,
            supports_volume=model in self.volume_models,
            supports_dsp=bool(model) and any(dsp in model for dsp in self.dsp_models),
        )

    def probe(self, address: str) -> CapabilityProfile:
        try:
            model = self.transport.get_model(address)
        except Exception as exc:  # noqa: BLE001
            logger.error("Error getting device model for %s: %s", address, exc)
            return CapabilityProfile()
        return self.profile_for(model)


# ---------------------------------------------------------------------
# Audio gates
# ---------------------------------------------------------------------


@dataclass(frozen=True)
class GateOutcome:
    gate: Gate
    enabled: bool
    ok: bool

    def to_dict(self) -> Dict[str, Any]:
        return {"gate": self.gate.value, "enabled": self.enabled, "ok": self.ok}


class AudioGateController:
    """Best-effort mute/unmute of a device's audio outputs.

    Endpoint support varies by model and firmware, so a failed gate is
    logged at INFO and reported as False; it never raises.
    """

    def __init__(self, transport: Any) -> None:
        self.transport = transport

    def _toggle(self, address: str, gate: Gate, on: bool) -> bool:
        label = GATE_LABELS[gate]
        try:
            ok = bool(self.transport.send_gate_command(address, gate, on))
        except Exception as exc:  # noqa: BLE001
            logger.info("%s control not available for %s: %s", label, address, exc)
            return False
        if not ok:
            logger.info(
                "%s %s not acknowledged by %s", label, "enable" if on else "disable", address
            )
        return ok

    def disable_dsp_line(self, address: str) -> bool:
        return self._toggle(address, Gate.DSP_LINE, False)

    def enable_dsp_line(self, address: str) -> bool:
        return self._toggle(address, Gate.DSP_LINE, True)

    def disable_dsp_hdmi(self, address: str) -> bool:
        return self._toggle(address, Gate.DSP_HDMI, False)

    def enable_dsp_hdmi(self, address: str) -> bool:
        return self._toggle(address, Gate.DSP_HDMI, True)

    def disable_hdmi_audio(self, address: str) -> bool:
        """Mute HDMI audio."""
        return self._toggle(address, Gate.HDMI_MUTE, False)

    def enable_hdmi_audio(self, address: str) -> bool:
        """Unmute HDMI audio."""
        return self._toggle(address, Gate.HDMI_MUTE, True)

    def disable_stereo_audio(self, address: str) -> bool:
        """Mute the stereo (analog) output."""
        return self._toggle(address, Gate.STEREO_MUTE, False)

    def enable_stereo_audio(self, address: str) -> bool:
        """Unmute the stereo (analog) output."""
        return self._toggle(address, Gate.STEREO_MUTE, True)

    def apply(self, address: str, gates: Iterable[Gate], on: bool) -> List[GateOutcome]:
        """Toggle every gate in order, whatever the earlier ones returned."""
        return [GateOutcome(gate, on, self._toggle(address, gate, on)) for gate in gates]

    def disable_all(self, address: str, with_dsp: bool) -> List[GateOutcome]:
        gates = [g for g in GATE_OFF_ORDER if with_dsp or g not in DSP_GATES]
        return self.apply(address, gates, False)

    def enable_all(self, address: str, with_dsp: bool) -> List[GateOutcome]:
        gates = [g for g in reversed(GATE_OFF_ORDER) if with_dsp or g not in DSP_GATES]
        return self.apply(address, gates, True)


# ---------------------------------------------------------------------
# Volume ramp
# ---------------------------------------------------------------------


def ramp_step(target: int, steps: int = 5) -> int:
    """Step size for a fade-in to ``target`` in roughly ``steps`` moves.

    Rounds half away from zero; targets below ``steps / 2`` ramp one unit at
    a time.
    """
    return max(1, int(target / max(1, steps) + 0.5))


def ramp_levels(target: int, steps: int = 5) -> List[int]:
    """Volume levels a ramp from zero to ``target`` passes through."""
    if not target or target <= 0:
        return []
    step = ramp_step(target, steps)
    levels: List[int] = []
    level = 0
    while level < target:
        level = min(level + step, target)
        levels.append(level)
    return levels


class VolumeRampController:
    def __init__(
        self,
        transport: Any,
        *,
        timings: Optional[Timings] = None,
        sleep: SleepFn = time.sleep,
    ) -> None:
        self.transport = transport
        self.timings = timings or Timings()
        self._sleep = sleep

    def read_level(self, address: str) -> Optional[int]:
        return _read_volume(self.transport, address)

    def ramp_down(self, address: str, current: Any = _MISSING) -> Optional[int]:
        """Drop volume to zero and return the level to restore later.

        Returns None when the device has no volume or is already silent, in
        which case no volume command is sent.
        """
        level = self.read_level(address) if current is _MISSING else current
        if level is None or level <= 0:
            return None
        _write_volume(self.transport, address, 0)
        self._sleep(self.timings.ramp_down_settle)
        return level

    def ramp_up(self, address: str, target: Optional[int]) -> List[int]:
        """Step volume up from zero to ``target`` and return the levels sent."""
        levels = ramp_levels(target or 0, self.timings.volume_ramp_steps)
        for index, level in enumerate(levels):
            if index:
                self._sleep(self.timings.volume_step_delay)
            _write_volume(self.transport, address, level)
        if levels:
            logger.debug("Volume ramp for %s: %s", address, levels)
        return levels


# ---------------------------------------------------------------------
# Anti-popping channel transition
# ---------------------------------------------------------------------


class TransitionStep(Enum):
    """Stages of an anti-popping channel change, in execution order."""

    PROBE = "probe"
    RAMP_DOWN = "ramp_down"
    GATE_OFF = "gate_off"
    PRE_SWITCH_SETTLE = "pre_switch_settle"
    SWITCH = "switch"
    POST_SWITCH_SETTLE = "post_switch_settle"
    GATE_ON = "gate_on"
    GATE_SETTLE = "gate_settle"
    RAMP_UP = "ramp_up"
    DONE = "done"


@dataclass
class TransitionResult:
    address: str
    channel: int
    success: bool = False
    step: TransitionStep = TransitionStep.PROBE
    profile: Optional[CapabilityProfile] = None
    previous_volume: Optional[int] = None
    switched: bool = False
    gates: List[GateOutcome] = field(default_factory=list)
    recovery: List[GateOutcome] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "channel": self.channel,
            "success": self.success,
            "step": self.step.value,
            "model": self.profile.model if self.profile else None,
            "previous_volume": self.previous_volume,
            "gates": [g.to_dict() for g in self.gates],
            "recovery": [g.to_dict() for g in self.recovery],
            "error": self.error,
        }


class ChannelTransitionSequencer:
    """Change a device's input without an audible pop.

    Probe, ramp down, gate off, settle, switch, settle, gate on (reverse
    order), settle, ramp up. Only the switch decides the outcome. Any
    exception diverts to a recovery path that unmutes whatever it can.
    """

    def __init__(
        self,
        transport: Any,
        *,
        prober: Optional[CapabilityProber] = None,
        timings: Optional[Timings] = None,
        sleep: SleepFn = time.sleep,
    ) -> None:
        self.transport = transport
        self.timings = timings or Timings()
        self._sleep = sleep
        self.prober = prober or CapabilityProber(transport)
        self.gates = AudioGateController(transport)
        self.ramp = VolumeRampController(transport, timings=self.timings, sleep=sleep)

    def switch_channel(self, address: str, channel: int) -> bool:
        return self.run(address, channel).success

    def run(self, address: str, channel: int) -> TransitionResult:
        result = TransitionResult(address=address, channel=channel)
        profile: Optional[CapabilityProfile] = None
        captured: Optional[int] = None
        try:
            profile = self.prober.probe(address)
            result.profile = profile

            result.step = TransitionStep.RAMP_DOWN
            captured = self.ramp.read_level(address)
            result.previous_volume = self.ramp.ramp_down(address, current=captured)

            result.step = TransitionStep.GATE_OFF
            result.gates.extend(self.gates.disable_all(address, profile.supports_dsp))

            result.step = TransitionStep.PRE_SWITCH_SETTLE
            self._sleep(self.timings.pre_switch_settle)

            result.step = TransitionStep.SWITCH
            result.switched = _write_channel(self.transport, address, channel)

            result.step = TransitionStep.POST_SWITCH_SETTLE
            self._sleep(self.timings.post_switch_settle)

            result.step = TransitionStep.GATE_ON
            result.gates.extend(self.gates.enable_all(address, profile.supports_dsp))

            result.step = TransitionStep.GATE_SETTLE
            self._sleep(self.timings.gate_settle)

            result.step = TransitionStep.RAMP_UP
            if result.previous_volume:
                self.ramp.ramp_up(address, result.previous_volume)

            result.step = TransitionStep.DONE
            result.success = result.switched
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "Error setting channel with anti-popping on %s (step %s): %s",
                address,
                result.step.value,
                exc,
            )
            result.error = str(exc)
            result.success = False
            self._recover(address, profile, captured, result)

        logger.info(
            "Channel change %s -> %d: %s",
            address,
            channel,
            "success" if result.success else "failed",
        )
        return result

    def _recover(
        self,
        address: str,
        profile: Optional[CapabilityProfile],
        captured: Optional[int],
        result: TransitionResult,
    ) -> None:
        with_dsp = bool(profile and profile.supports_dsp)
        gates = [g for g in RECOVERY_ORDER if with_dsp or g not in DSP_GATES]
        result.recovery.extend(self.gates.apply(address, gates, True))
        if captured is not None and captured > 0:
            try:
                _write_volume(self.transport, address, captured)
            except Exception as exc:  # noqa: BLE001
                logger.error("Error restoring volume on %s: %s", address, exc)


# ---------------------------------------------------------------------
# Volume snapshots
# ---------------------------------------------------------------------


@dataclass
class VolumeSnapshot:
    volumes: Dict[str, int]
    timestamp: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        stamp = self.timestamp or datetime.now()
        return {
            "timestamp": stamp.strftime(SNAPSHOT_TIME_FORMAT),
            "volumes": dict(self.volumes),
        }

    @classmethod
    def from_dict(cls, data: Any) -> Optional["VolumeSnapshot"]:
        """Build a snapshot from its stored form, or None when malformed."""
        if not isinstance(data, dict) or not isinstance(data.get("volumes"), dict):
            return None
        volumes: Dict[str, int] = {}
        for name, level in data["volumes"].items():
            value = parse_bounded_int(level, 0)
            if value is None:
                logger.info("Ignoring saved volume %r for %s", level, name)
                continue
            volumes[str(name)] = value
        stamp: Optional[datetime] = None
        raw_stamp = data.get("timestamp")
        if isinstance(raw_stamp, str):
            try:
                stamp = datetime.strptime(raw_stamp, SNAPSHOT_TIME_FORMAT)
            except ValueError:
                stamp = None
        return cls(volumes=volumes, timestamp=stamp)


def _write_atomic(path: str, data: str) -> None:
    """Write a file atomically via a temporary file."""
    tmp = f"{path}.tmp"
    with open(tmp, "w", encoding="utf-8") as fh:
        fh.write(data)
    os.replace(tmp, path)


class SnapshotFile:
    """Single JSON record on disk holding the live volume snapshot."""

    def __init__(self, path: str) -> None:
        self.path = path
        self._lock = threading.Lock()

    def read_snapshot(self) -> Optional[VolumeSnapshot]:
        with self._lock:
            try:
                with open(self.path, "r", encoding="utf-8") as fh:
                    data = json.load(fh)
            except FileNotFoundError:
                logger.info("No saved volume snapshot at %s", self.path)
                return None
            except Exception as exc:  # noqa: BLE001
                logger.info("Unreadable volume snapshot %s: %s", self.path, exc)
                return None
        snapshot = VolumeSnapshot.from_dict(data)
        if snapshot is None:
            logger.info("Invalid format in volume snapshot %s", self.path)
        return snapshot

    def write_snapshot(self, snapshot: VolumeSnapshot) -> bool:
        payload = json.dumps(snapshot.to_dict(), indent=2)
        with self._lock:
            try:
                dir_name = os.path.dirname(self.path)
                if dir_name:
                    os.makedirs(dir_name, exist_ok=True)
                _write_atomic(self.path, payload)
            except Exception as exc:  # noqa: BLE001
                logger.error("Failed to write volume snapshot %s: %s", self.path, exc)
                return False
        return True


class VolumeSnapshotStore:
    """Capture zone volumes before a source switch and replay them later.

    One snapshot is live at a time; capture overwrites it, restore reads it
    and leaves it in place.
    """

    def __init__(
        self,
        transport: Any,
        persistence: SnapshotFile,
        *,
        timings: Optional[Timings] = None,
        sleep: SleepFn = time.sleep,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.transport = transport
        self.persistence = persistence
        self.timings = timings or Timings()
        self._sleep = sleep
        self._clock = clock

    def capture(self, zones: Mapping[str, str]) -> Optional[VolumeSnapshot]:
        volumes: Dict[str, int] = {}
        for name, address in zones.items():
            level = _read_volume(self.transport, address)
            if level is None:
                logger.info("No volume reading for %s (%s); not saved", name, address)
                continue
            volumes[name] = level
        if not volumes:
            logger.info("No volumes collected; keeping previous snapshot")
            return None
        snapshot = VolumeSnapshot(volumes=volumes, timestamp=self._clock())
        if self.persistence.write_snapshot(snapshot):
            logger.info("Saved volumes for %d zone(s)", len(volumes))
        return snapshot

    def restore(self, zones: Mapping[str, str]) -> Dict[str, bool]:
        snapshot = self.persistence.read_snapshot()
        if snapshot is None:
            return {}
        results: Dict[str, bool] = {}
        targets = [(n, a) for n, a in zones.items() if n in snapshot.volumes]
        for index, (name, address) in enumerate(targets):
            if index:
                self._sleep(self.timings.volume_pacing)
            level = snapshot.volumes[name]
            ok = _write_volume(self.transport, address, level)
            results[name] = ok
            if ok:
                logger.info("Restored %s volume to %d", name, level)
            else:
                logger.warning("Failed to restore %s volume to %d", name, level)
        for name in zones:
            if name not in snapshot.volumes:
                logger.info("No saved volume for %s", name)
        return results


# ---------------------------------------------------------------------
# Bulk switching
# ---------------------------------------------------------------------


class SwitchMode(str, Enum):
    PLAIN = "plain"
    ANTI_POPPING = "anti_popping"


@dataclass
class TransitionRecord:
    address: str
    success: bool
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {"address": self.address, "success": self.success, "message": self.message}


@dataclass
class BulkReport:
    results: Dict[str, TransitionRecord] = field(default_factory=dict)

    def record(self, name: str, address: str, success: bool, message: str) -> None:
        self.results[name] = TransitionRecord(address, success, message)

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results.values() if r.success)

    @property
    def failure_count(self) -> int:
        return sum(1 for r in self.results.values() if not r.success)

    @property
    def success(self) -> bool:
        """True unless every attempted zone failed."""
        return self.failure_count == 0 or self.success_count > 0

    @property
    def message(self) -> str:
        if self.failure_count == 0:
            return "all succeeded"
        if self.success_count == 0:
            return "all failed"
        return f"{self.success_count} succeeded, {self.failure_count} failed"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "results": {name: r.to_dict() for name, r in self.results.items()},
        }


class BulkZoneOrchestrator:
    """Switch a fixed, ordered set of zones one after another."""

    def __init__(
        self,
        transport: Any,
        sequencer: ChannelTransitionSequencer,
        *,
        timings: Optional[Timings] = None,
        sleep: SleepFn = time.sleep,
    ) -> None:
        self.transport = transport
        self.sequencer = sequencer
        self.timings = timings or Timings()
        self._sleep = sleep

    def switch_one(self, address: str, channel: int, mode: SwitchMode) -> bool:
        if mode is SwitchMode.ANTI_POPPING:
            return self.sequencer.switch_channel(address, channel)
        return _write_channel(self.transport, address, channel)

    def switch_all(
        self,
        zones: Mapping[str, str],
        channel: int,
        mode: SwitchMode = SwitchMode.PLAIN,
        modes: Optional[Mapping[str, SwitchMode]] = None,
        report: Optional[BulkReport] = None,
    ) -> BulkReport:
        """Switch every zone, pacing between devices; never raises."""
        report = report if report is not None else BulkReport()
        overrides = modes or {}
        for index, (name, address) in enumerate(zones.items()):
            if index:
                self._sleep(self.timings.zone_pacing)
            zone_mode = overrides.get(name, mode)
            try:
                ok = self.switch_one(address, channel, zone_mode)
            except Exception as exc:  # noqa: BLE001
                logger.error("Bulk switch error for %s: %s", name, exc)
                report.record(name, address, False, f"Error: {exc}")
                continue
            report.record(
                name, address, ok, "Channel switched" if ok else "Channel switch failed"
            )
        logger.info("Bulk switch to channel %d: %s", channel, report.message)
        return report


# ---------------------------------------------------------------------
# Venue audio source toggle
# ---------------------------------------------------------------------


class AudioSourceToggle:
    """Switch every audio zone between sources, saving and restoring volumes.

    Switching to the capture source saves the current volumes first and
    applies the fixed capture levels afterwards. Switching to the restore
    source replays the saved volumes before the switch.
    """

    def __init__(
        self,
        config: AudioToggleConfig,
        transport: Any,
        orchestrator: BulkZoneOrchestrator,
        store: VolumeSnapshotStore,
        *,
        timings: Optional[Timings] = None,
        sleep: SleepFn = time.sleep,
    ) -> None:
        self.config = config
        self.transport = transport
        self.orchestrator = orchestrator
        self.store = store
        self.timings = timings or Timings()
        self._sleep = sleep

    def switch_source(self, source: str) -> BulkReport:
        cfg = self.config
        if source not in cfg.sources:
            raise ValueError(f"Invalid audio source specified: {source!r}")
        channel = cfg.sources[source]
        mode = SwitchMode.ANTI_POPPING if cfg.anti_popping else SwitchMode.PLAIN
        logger.info("Switching audio zones to %s (channel %d)", cfg.label(source), channel)

        if source == cfg.capture_source:
            self.store.capture(cfg.zones)
        elif source == cfg.restore_source:
            if self.store.restore(cfg.zones):
                self._sleep(self.timings.toggle_settle)

        report = self.orchestrator.switch_all(cfg.zones, channel, mode)

        if source == cfg.capture_source:
            self.apply_capture_volumes()
        return report

    def apply_capture_volumes(self) -> Dict[str, bool]:
        cfg = self.config
        targets = [(n, a) for n, a in cfg.zones.items() if n in cfg.capture_volumes]
        if not targets:
            return {}
        self._sleep(self.timings.toggle_settle)
        results: Dict[str, bool] = {}
        for index, (name, address) in enumerate(targets):
            if index:
                self._sleep(self.timings.volume_pacing)
            level = cfg.capture_volumes[name]
            results[name] = _write_volume(self.transport, address, level)
            if not results[name]:
                logger.warning("Failed to set %s volume to %d", name, level)
        return results

    def describe(self, source: str, report: BulkReport) -> str:
        if report.failure_count == 0:
            return f"Successfully switched all zones to {self.config.label(source)}"
        if report.success_count > 0:
            return (
                f"{report.success_count} zones succeeded, "
                f"{report.failure_count} zones failed"
            )
        return "All zones failed to switch"


# ---------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------


def receiver_status(
    transport: Any, prober: CapabilityProber, address: str
) -> Dict[str, Any]:
    """Live channel/volume/capability view of one receiver."""
    status: Dict[str, Any] = {
        "success": True,
        "channel": None,
        "volume": None,
        "supportsVolume": False,
    }
    channel = _read_channel(transport, address)
    if channel is None:
        status["success"] = False
        status["error"] = "Device unreachable"
        return status
    status["channel"] = channel
    profile = prober.probe(address)
    status["supportsVolume"] = profile.supports_volume
    if profile.supports_volume:
        status["volume"] = _read_volume(transport, address)
    return status


def all_unreachable(transport: Any, addresses: Iterable[str]) -> bool:
    """True when none of the addresses answers a channel read."""
    for address in addresses:
        try:
            transport.get_channel(address)
        except DeviceError:
            continue
        return False
    return True


# ---------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------


@dataclass
class AvSite:
    """The core components wired to one transport and configuration."""

    config: AppConfig
    transport: Any
    prober: CapabilityProber
    sequencer: ChannelTransitionSequencer
    orchestrator: BulkZoneOrchestrator
    store: VolumeSnapshotStore
    toggle: Optional[AudioSourceToggle]

    @classmethod
    def build(
        cls,
        config: AppConfig,
        transport: Any,
        state_dir: str,
        *,
        sleep: SleepFn = time.sleep,
    ) -> "AvSite":
        timings = config.timings
        prober = CapabilityProber(transport, config.volume_models, config.dsp_models)
        sequencer = ChannelTransitionSequencer(
            transport, prober=prober, timings=timings, sleep=sleep
        )
        orchestrator = BulkZoneOrchestrator(
            transport, sequencer, timings=timings, sleep=sleep
        )
        store = VolumeSnapshotStore(
            transport,
            SnapshotFile(os.path.join(state_dir, SNAPSHOT_FILENAME)),
            timings=timings,
            sleep=sleep,
        )
        toggle = None
        if config.audio_toggle is not None:
            toggle = AudioSourceToggle(
                config.audio_toggle,
                transport,
                orchestrator,
                store,
                timings=timings,
                sleep=sleep,
            )
        return cls(config, transport, prober, sequencer, orchestrator, store, toggle)

    @staticmethod
    def mode_for(receiver: ReceiverConfig) -> SwitchMode:
        return SwitchMode.ANTI_POPPING if receiver.anti_popping else SwitchMode.PLAIN


# ---------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------


def _attach_log_file(path: Optional[str]) -> None:
    if not path:
        return
    try:
        handler = logging.FileHandler(path, encoding="utf-8")
    except OSError as exc:
        logger.error("Cannot open log file %s: %s", path, exc)
        return
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.getLogger().addHandler(handler)


def apply_log_level(config_level: Optional[int], override: Optional[str] = None) -> None:
    """Set the root level: explicit override, then AV_LOG_LEVEL, then site config."""
    explicit = override or os.getenv("AV_LOG_LEVEL")
    if explicit:
        level = _resolve_log_level(explicit)
    elif config_level is not None:
        level = config_level
    else:
        return
    logging.getLogger().setLevel(level)


def _run_action(site: AvSite, args: argparse.Namespace) -> Dict[str, Any]:
    cfg = site.config
    if args.status:
        address = parse_ip(args.status)
        if address is None:
            return {"success": False, "error": "Invalid or missing IP address"}
        return receiver_status(site.transport, site.prober, address)

    if args.audio_source:
        if site.toggle is None:
            return {"success": False, "message": "No audio_toggle section configured"}
        try:
            report = site.toggle.switch_source(args.audio_source)
        except ValueError as exc:
            return {"success": False, "message": str(exc)}
        data = report.to_dict()
        data["message"] = site.toggle.describe(args.audio_source, report)
        return data

    zone = cfg.zones.get(args.zone or "")
    if zone is None:
        return {"success": False, "message": f"Unknown zone: {args.zone}"}

    if args.bulk_channel is not None:
        if args.bulk_channel <= 0:
            return {"success": False, "message": "Invalid channel value"}
        zones ={name: r.ip for name, r in zone.receivers.items()}
        modes = {name: site.mode_for(r) for name, r in zone.receivers.items()}
        return site.orchestrator.switch_all(zones, args.bulk_channel, modes=modes).to_dict()

    receiver = zone.receiver(args.receiver or "")
    if receiver is None:
        return {"success": False, "message": f"Receiver not found: {args.receiver}"}
    if args.channel is None or args.channel <= 0:
        return {"success": False, "message": "Invalid channel value"}
    ok = site.orchestrator.switch_one(receiver.ip, args.channel, site.mode_for(receiver))
    return {
        "success": ok,
        "message": "Channel: " + ("Successfully updated" if ok else "Update failed"),
    }


def main() -> None:
    """CLI entry point for one-shot zone operations."""
    parser = argparse.ArgumentParser(description="Venue AV zone controller")
    parser.add_argument(
        "--cfg",
        default=os.getenv("AV_SITE_CONFIG", DEFAULT_SITE_CONFIG),
        help="Path to site YAML config",
    )
    parser.add_argument("--log-level", help="Override log level (e.g. DEBUG)")
    parser.add_argument("--zone", help="Zone id for receiver operations")
    parser.add_argument("--receiver", help="Receiver name within the zone")
    parser.add_argument("--channel", type=int, help="Channel for --receiver")
    action = parser.add_mutually_exclusive_group()
    action.add_argument("--status", metavar="IP", help="Print live receiver status")
    action.add_argument(
        "--audio-source", help="Switch all audio-toggle zones to this source"
    )
    action.add_argument(
        "--bulk-channel", type=int, help="Switch every receiver in --zone to a channel"
    )
    args = parser.parse_args()
    if not (args.status or args.audio_source or args.zone):
        parser.error("one of --status, --audio-source or --zone is required")

    cfg = load_site_config(args.cfg)
    apply_log_level(cfg.log_level, args.log_level)
    _attach_log_file(cfg.log_file)
    transport = JustAddPowerClient(timeout=cfg.api_timeout)
    try:
        site = AvSite.build(cfg, transport, os.path.dirname(os.path.abspath(args.cfg)))
        result = _run_action(site, args)
    finally:
        transport.close()

    json.dump(result, sys.stdout, indent=2)
    sys.stdout.write("\n")
    raise SystemExit(0 if result.get("success") else 1)


if __name__ == "__main__":
    main()
