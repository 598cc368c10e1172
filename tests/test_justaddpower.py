from pathlib import Path
import subprocess
import sys

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest

requests = pytest.importorskip("requests")

from justaddpower import (
    DeviceUnreachable,
    Gate,
    JustAddPowerClient,
    UnexpectedResponse,
)

IP = "192.168.8.60"


class StubResponse:
    def __init__(self, status_code=200, body=None, text=None):
        self.status_code = status_code
        self._body = body
        self.text = text if text is not None else str(body)

    def json(self):
        if isinstance(self._body, Exception):
            raise self._body
        return self._body


class StubSession:
    def __init__(self, *responses):
        self.headers = {}
        self.requests = []
        self.closed = False
        self._responses = list(responses)

    def request(self, method, url, data=None, headers=None, timeout=None):
        self.requests.append(
            {"method": method, "url": url, "data": data, "headers": headers, "timeout": timeout}
        )
        response = self._responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def close(self):
        self.closed = True


def _client(*responses, timeout=2.0):
    session = StubSession(*responses)
    return JustAddPowerClient(timeout=timeout, session=session), session


def test_get_channel_parses_data_member():
    client, session = _client(StubResponse(body={"data": "4"}), timeout=5)
    assert client.get_channel(IP) == 4
    sent = session.requests[0]
    assert sent["method"] == "GET"
    assert sent["url"] == f"http://{IP}/cgi-bin/api/details/channel"
    assert sent["data"] is None
    assert sent["timeout"] == 5.0
    assert session.headers["User-Agent"] == "JustOS API Client"


def test_set_channel_posts_plain_text_and_checks_ack():
    client, session = _client(StubResponse(body={"data": "OK"}), StubResponse(body={"data": "ERR"}))
    assert client.set_channel(IP, 5) is True
    assert client.set_channel(IP, 5) is False
    sent = session.requests[0]
    assert sent["url"].endswith("/cgi-bin/api/command/channel")
    assert sent["data"] == b"5"
    assert sent["headers"] == {"Content-Type": "text/plain"}


def test_get_volume_without_data_member_is_none():
    client, _ = _client(StubResponse(body={"error": "no stereo output"}))
    assert client.get_volume(IP) is None


def test_get_model_requires_data_member():
    client, _ = _client(StubResponse(body={"error": "nope"}))
    with pytest.raises(UnexpectedResponse):
        client.get_model(IP)


def test_non_integer_channel_is_unexpected():
    client, _ = _client(StubResponse(body={"data": "HDMI"}))
    with pytest.raises(UnexpectedResponse):
        client.get_channel(IP)


def test_non_json_body_is_unexpected():
    client, _ = _client(StubResponse(body=ValueError("Expecting value"), text="<html>"))
    with pytest.raises(UnexpectedResponse):
        client.get_channel(IP)


def test_http_error_status_is_unreachable():
    client, _ = _client(StubResponse(status_code=500, body=None, text="Internal Server Error"))
    with pytest.raises(DeviceUnreachable) as exc:
        client.get_model(IP)
    assert "HTTP error: 500" in str(exc.value)
    assert exc.value.address == IP


def test_connection_failure_is_unreachable():
    client, _ = _client(requests.exceptions.ConnectTimeout("timed out"))
    with pytest.raises(DeviceUnreachable):
        client.get_channel(IP)


@pytest.mark.parametrize(
    "gate,on,endpoint,body,content_type",
    [
        (Gate.DSP_LINE, False, "command/audio/dsp/line", b'"off"', "application/json"),
        (Gate.DSP_HDMI, True, "command/audio/dsp/hdmi", b'"on"', "application/json"),
        (Gate.STEREO_MUTE, False, "command/cli", b"audio_out.sh mute", "text/plain"),
        (Gate.STEREO_MUTE, True, "command/cli", b"audio_out.sh unmute", "text/plain"),
    ],
)
def test_gate_commands_with_body(gate, on, endpoint, body, content_type):
    client, session = _client(StubResponse(body={"data": "OK"}))
    assert client.send_gate_command(IP, gate, on) is True
    sent = session.requests[0]
    assert sent["url"] == f"http://{IP}/cgi-bin/api/{endpoint}"
    assert sent["data"] == body
    assert sent["headers"] == {"Content-Type": content_type}


@pytest.mark.parametrize("on,endpoint", [(False, "mute"), (True, "unmute")])
def test_hdmi_gate_has_no_body(on, endpoint):
    client, session = _client(StubResponse(body={"data": "OK"}))
    assert client.send_gate_command(IP, Gate.HDMI_MUTE, on) is True
    sent = session.requests[0]
    assert sent["url"].endswith(f"/command/hdmi/audio/{endpoint}")
    assert sent["data"] is None
    assert sent["headers"] is None


def test_send_ir_wraps_payload_for_flux_handler():
    client, session = _client(StubResponse(body=ValueError("empty"), text=""))
    assert client.send_ir(IP, "sendir,1:1,1,58000") is True
    assert session.requests[0]["data"] == b'echo "sendir,1:1,1,58000" | ./fluxhandlerV2.sh'


def test_close_closes_session():
    client, session = _client()
    client.close()
    assert session.closed is True


def test_virtual_fleet_imports_without_web_stack():
    script = (
        "import sys, justaddpower.virtual as v; "
        "v.VirtualTransport().set_channel('10.0.0.1', 3); "
        "print(sorted(m for m in ('flask', 'webapp') if m in sys.modules))"
    )
    out = subprocess.run(
        [sys.executable, "-c", script],
        cwd=ROOT,
        capture_output=True,
        text=True,
        check=True,
    ).stdout
    assert out.strip() == "[]"
