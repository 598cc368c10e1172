#!/usr/bin/env python3
"""
Just Add Power device control library

Talks to JAP transmitters and receivers over the JustOS HTTP API
(``http://<ip>/cgi-bin/api/<endpoint>``). Every endpoint answers with a JSON
envelope of the form ``{"data": ...}``; command endpoints acknowledge with
``{"data": "OK"}``.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Optional

import requests

logger = logging.getLogger(__name__)

API_BASE_PATH: str = "/cgi-bin/api/"
DEFAULT_TIMEOUT_S: float = 2.0
USER_AGENT: str = "JustOS API Client"
ACK: str = "OK"


# ---------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------


class DeviceError(Exception):
    """Base class for device transport failures."""

    def __init__(self, address: str, message: str) -> None:
        super().__init__(f"{address}: {message}")
        self.address = address


class DeviceUnreachable(DeviceError):
    """Connection failed, timed out, or the device answered with a non-2xx status."""


class UnexpectedResponse(DeviceError):
    """The device answered, but not with the payload shape we expect."""


# ---------------------------------------------------------------------
# Audio gates
# ---------------------------------------------------------------------


class Gate(str, Enum):
    DSP_LINE = "dsp-line"
    DSP_HDMI = "dsp-hdmi"
    HDMI_MUTE = "hdmi-mute"
    STEREO_MUTE = "stereo-mute"


def _gate_request(gate: Gate, on: bool) -> tuple[str, Optional[str], str]:
    """Return (endpoint, body, content type) for a gate toggle.

    ``on`` means audio flows through the gate.
    """
    if gate is Gate.DSP_LINE:
        return "command/audio/dsp/line", '"on"' if on else '"off"', "application/json"
    if gate is Gate.DSP_HDMI:
        return "command/audio/dsp/hdmi", '"on"' if on else '"off"', "application/json"
    if gate is Gate.HDMI_MUTE:
        endpoint = "command/hdmi/audio/unmute" if on else "command/hdmi/audio/mute"
        return endpoint, None, "application/x-www-form-urlencoded"
    if gate is Gate.STEREO_MUTE:
        body = "audio_out.sh unmute" if on else "audio_out.sh mute"
        return "command/cli", body, "text/plain"
    raise ValueError(f"Unknown gate: {gate!r}")


def ir_command(payload: str) -> str:
    """Wrap an IR payload for the on-device flux handler."""
    return f'echo "{payload}" | ./fluxhandlerV2.sh'


# ---------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------


class JustAddPowerClient:
    """Blocking HTTP transport for a fleet of JAP devices.

    The client is stateless with respect to devices: each call names the
    device address and reads live state from it.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT_S,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.timeout = float(timeout)
        self._session = session or requests.Session()
        self._session.headers.setdefault("User-Agent", USER_AGENT)

    def close(self) -> None:
        self._session.close()

    # ---------- Low-level helpers ----------

    def _request(
        self,
        method: str,
        address: str,
        endpoint: str,
        data: Optional[str] = None,
        content_type: str = "application/x-www-form-urlencoded",
    ) -> requests.Response:
        url = f"http://{address}{API_BASE_PATH}{endpoint}"
        headers = {"Content-Type": content_type} if data is not None else None
        logger.debug("%s %s body=%r", method, url, data)
        try:
            response = self._session.request(
                method,
                url,
                data=data.encode("utf-8") if data is not None else None,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as exc:
            raise DeviceUnreachable(address, f"{method} {endpoint} failed: {exc}") from exc

        status = response.status_code
        if not 200 <= status < 300:
            raise DeviceUnreachable(
                address, f"HTTP error: {status} - Response: {response.text[:200]}"
            )
        return response

    def api_call(
        self,
        method: str,
        address: str,
        endpoint: str,
        data: Optional[str] = None,
        content_type: str = "application/x-www-form-urlencoded",
        *,
        allow_missing: bool = False,
    ) -> Any:
        """Issue one request and return the ``data`` member of the reply.

        With ``allow_missing`` a reply without a ``data`` member yields None
        instead of raising.
        """
        response = self._request(method, address, endpoint, data, content_type)
        try:
            body = response.json()
        except ValueError as exc:
            raise UnexpectedResponse(address, f"{endpoint} returned non-JSON body") from exc
        if not isinstance(body, dict):
            raise UnexpectedResponse(address, f"{endpoint} reply is not an object")
        if "data" not in body:
            if allow_missing:
                return None
            raise UnexpectedResponse(address, f"{endpoint} reply has no data member")
        return body["data"]

    def _command(
        self,
        address: str,
        endpoint: str,
        data: Optional[str],
        content_type: str = "text/plain",
    ) -> bool:
        return self.api_call("POST", address, endpoint, data, content_type) == ACK

    @staticmethod
    def _as_int(address: str, what: str, value: Any) -> int:
        if isinstance(value, bool):
            raise UnexpectedResponse(address, f"{what} is not an integer: {value!r}")
        try:
            return int(value)
        except (TypeError, ValueError) as exc:
            raise UnexpectedResponse(address, f"{what} is not an integer: {value!r}") from exc

    # ---------- Device information ----------

    def get_model(self, address: str) -> str:
        value = self.api_call("GET", address, "details/device/model")
        return "" if value is None else str(value)

    # ---------- Channel ----------

    def get_channel(self, address: str) -> int:
        value = self.api_call("GET", address, "details/channel")
        return self._as_int(address, "channel", value)

    def set_channel(self, address: str, channel: int) -> bool:
        return self._command(address, "command/channel", str(int(channel)))

    # ---------- Volume ----------

    def get_volume(self, address: str) -> Optional[int]:
        # Units without a stereo stage answer without a data member
        value = self.api_call(
            "GET", address, "details/audio/stereo/volume", allow_missing=True
        )
        if value is None:
            return None
        return self._as_int(address, "volume", value)

    def set_volume(self, address: str, level: int) -> bool:
        return self._command(address, "command/audio/stereo/volume", str(int(level)))

    # ---------- Audio gates / CLI ----------

    def send_gate_command(self, address: str, gate: Gate, on: bool) -> bool:
        endpoint, body, content_type = _gate_request(Gate(gate), on)
        return self._command(address, endpoint, body, content_type)

    def send_cli(self, address: str, command: str) -> bool:
        return self._command(address, "command/cli", command)

    def send_ir(self, address: str, payload: str) -> bool:
        """Fire an IR payload out of the device's blaster.

        The flux handler does not echo an acknowledgement, so any 2xx reply
        counts as sent.
        """
        self._request("POST", address, "command/cli", ir_command(payload), "text/plain")
        return True

