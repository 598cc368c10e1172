from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from . import DeviceUnreachable, Gate

LOGGER = logging.getLogger(__name__)

DEFAULT_MODEL = "3G+AVP RX"


@dataclass
class VirtualDevice:
    model: str = DEFAULT_MODEL
    channel: int = 1
    volume: Optional[int] = 5
    reachable: bool = True
    gates: Dict[Gate, bool] = field(default_factory=lambda: {g: True for g in Gate})
    cli: List[str] = field(default_factory=list)
    ir: List[str] = field(default_factory=list)


class VirtualTransport:
    """In-memory stand-in for a fleet of JAP devices.

    Unknown addresses come into existence on first use with the default
    model. Every call is appended to ``calls`` as ``(method, address, args)``
    before failures are injected, so tests can assert on attempted order.
    """

    def __init__(self, default_model: str = DEFAULT_MODEL) -> None:
        self.default_model = default_model
        self.devices: Dict[str, VirtualDevice] = {}
        self.calls: List[Tuple[str, str, Tuple[Any, ...]]] = []
        self._failures: Dict[Tuple[str, Optional[str], Any], BaseException] = {}
        self._lock = threading.RLock()

    # ---------------------- fleet setup ----------------------

    def add_device(self, address: str, **kwargs: Any) -> VirtualDevice:
        kwargs.setdefault("model", self.default_model)
        device = VirtualDevice(**kwargs)
        with self._lock:
            self.devices[address] = device
        return device

    def device(self, address: str) -> VirtualDevice:
        with self._lock:
            if address not in self.devices:
                self.devices[address] = VirtualDevice(model=self.default_model)
            return self.devices[address]

    def fail(
        self,
        method: str,
        address: Optional[str] = None,
        arg: Any = None,
        exc: Optional[BaseException] = None,
    ) -> None:
        """Make matching calls raise ``exc`` (DeviceUnreachable by default).

        ``arg`` matches the first positional argument after the address,
        e.g. the gate for ``send_gate_command``.
        """
        if exc is None:
            exc = DeviceUnreachable(address or "*", f"{method} failed (injected)")
        with self._lock:
            self._failures[(method, address, arg)] = exc

    def calls_for(self, method: str, address: Optional[str] = None) -> List[Tuple[Any, ...]]:
        return [
            args
            for m, a, args in self.calls
            if m == method and (address is None or a == address)
        ]

    # ---------------------- transport API ----------------------

    def _enter(self, method: str, address: str, *args: Any) -> VirtualDevice:
        with self._lock:
            self.calls.append((method, address, args))
            first = args[0] if args else None
            for key in (
                (method, address, first),
                (method, address, None),
                (method, None, first),
                (method, None, None),
            ):
                exc = self._failures.get(key)
                if exc is not None:
                    raise exc
            device = self.device(address)
            if not device.reachable:
                raise DeviceUnreachable(address, f"{method} failed: connection timed out")
            return device

    def get_model(self, address: str) -> str:
        return self._enter("get_model", address).model

    def get_channel(self, address: str) -> int:
        return self._enter("get_channel", address).channel

    def set_channel(self, address: str, channel: int) -> bool:
        device = self._enter("set_channel", address, channel)
        device.channel = int(channel)
        return True

    def get_volume(self, address: str) -> Optional[int]:
        return self._enter("get_volume", address).volume

    def set_volume(self, address: str, level: int) -> bool:
        device = self._enter("set_volume", address, level)
        if device.volume is None:
            return False
        device.volume = int(level)
        return True

    def send_gate_command(self, address: str, gate: Gate, on: bool) -> bool:
        device = self._enter("send_gate_command", address, Gate(gate), on)
        device.gates[Gate(gate)] = bool(on)
        return True

    def send_cli(self, address: str, command: str) -> bool:
        device = self._enter("send_cli", address, command)
        device.cli.append(command)
        return True

    def send_ir(self, address: str, payload: str) -> bool:
        device = self._enter("send_ir", address, payload)
        device.ir.append(payload)
        LOGGER.debug("Virtual IR on %s: %s", address, payload)
        return True

    def close(self) -> None:
        return None
