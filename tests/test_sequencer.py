from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest

pytest.importorskip("yaml")
pytest.importorskip("requests")

import avcontrol as av
from justaddpower import DeviceUnreachable, Gate
from justaddpower.virtual import VirtualTransport

IP = "192.168.8.28"

GATES_OFF_DSP = [
    (Gate.DSP_LINE, False),
    (Gate.DSP_HDMI, False),
    (Gate.HDMI_MUTE, False),
    (Gate.STEREO_MUTE, False),
]
GATES_ON_DSP = [
    (Gate.STEREO_MUTE, True),
    (Gate.HDMI_MUTE, True),
    (Gate.DSP_HDMI, True),
    (Gate.DSP_LINE, True),
]


def _sequencer(transport, sleeps):
    return av.ChannelTransitionSequencer(transport, sleep=sleeps.append)


def test_happy_path_on_dsp_device():
    transport = VirtualTransport()
    transport.add_device(IP, model="3G+AVP TX", channel=3, volume=8)
    sleeps = []

    result = _sequencer(transport, sleeps).run(IP, 5)

    assert result.success is True
    assert result.step is av.TransitionStep.DONE
    assert result.profile.supports_dsp is True
    assert result.previous_volume == 8
    assert transport.calls_for("send_gate_command", IP) == GATES_OFF_DSP + GATES_ON_DSP
    assert transport.calls_for("set_volume", IP) == [(0,), (2,), (4,), (6,), (8,)]
    assert transport.calls_for("set_channel", IP) == [(5,)]
    assert sleeps == [1.0, 2.0, 3.0, 1.0, 0.2, 0.2, 0.2]

    methods = [m for m, _, _ in transport.calls]
    switch_at = methods.index("set_channel")
    assert methods[:3] == ["get_model", "get_volume", "set_volume"]
    assert methods[3:switch_at] == ["send_gate_command"] * 4
    assert methods[switch_at + 1 : switch_at + 5] == ["send_gate_command"] * 4

    device = transport.device(IP)
    assert device.channel == 5
    assert device.volume == 8
    assert all(device.gates.values())


def test_non_dsp_device_skips_dsp_gates():
    transport = VirtualTransport()
    transport.add_device(IP, model="3G+AVP RX", channel=3, volume=4)

    result = _sequencer(transport, []).run(IP, 7)

    assert result.success is True
    assert result.profile.supports_dsp is False
    assert transport.calls_for("send_gate_command", IP) == [
        (Gate.HDMI_MUTE, False),
        (Gate.STEREO_MUTE, False),
        (Gate.STEREO_MUTE, True),
        (Gate.HDMI_MUTE, True),
    ]


def test_dsp_detection_matches_model_substring():
    prober = av.CapabilityProber(VirtualTransport())
    profile = prober.profile_for("JAP 3G+WP4 TX rev B")
    assert profile.supports_dsp is True
    assert profile.supports_volume is False
    assert prober.profile_for("3G+AVP TX").supports_volume is True


def test_probe_failure_yields_empty_profile():
    transport = VirtualTransport()
    transport.fail("get_model", IP)
    profile = av.CapabilityProber(transport).probe(IP)
    assert profile == av.CapabilityProfile()


@pytest.mark.parametrize(
    "exc",
    [DeviceUnreachable(IP, "no route"), RuntimeError("gate endpoint crashed")],
)
def test_gate_failure_does_not_stop_other_gates(exc):
    transport = VirtualTransport()
    transport.add_device(IP, model="3G+AVP TX", channel=3, volume=6)
    transport.fail("send_gate_command", IP, Gate.HDMI_MUTE, exc=exc)

    result = _sequencer(transport, []).run(IP, 2)

    assert result.success is True
    assert transport.calls_for("send_gate_command", IP) == GATES_OFF_DSP + GATES_ON_DSP
    failed = [g for g in result.gates if not g.ok]
    assert [(g.gate, g.enabled) for g in failed] == [
        (Gate.HDMI_MUTE, False),
        (Gate.HDMI_MUTE, True),
    ]


def test_failed_switch_still_restores_audio():
    transport = VirtualTransport()
    transport.add_device(IP, model="3G+AVP RX", channel=3, volume=5)
    transport.fail("set_channel", IP)

    result = _sequencer(transport, []).run(IP, 9)

    assert result.success is False
    assert result.error is None
    assert result.step is av.TransitionStep.DONE
    assert transport.device(IP).channel == 3
    assert transport.calls_for("set_volume", IP)[-1] == (5,)
    assert all(transport.device(IP).gates.values())


def test_exception_mid_sequence_runs_recovery_with_dsp():
    transport = VirtualTransport()
    transport.add_device(IP, model="3G+AVP TX", channel=3, volume=8)
    transport.fail("set_channel", IP, exc=RuntimeError("socket exploded"))

    result = _sequencer(transport, []).run(IP, 5)

    assert result.success is False
    assert result.step is av.TransitionStep.SWITCH
    assert "socket exploded" in result.error
    assert transport.calls_for("send_gate_command", IP) == GATES_OFF_DSP + [
        (Gate.HDMI_MUTE, True),
        (Gate.STEREO_MUTE, True),
        (Gate.DSP_HDMI, True),
        (Gate.DSP_LINE, True),
    ]
    assert [(g.gate, g.ok) for g in result.recovery] == [
        (Gate.HDMI_MUTE, True),
        (Gate.STEREO_MUTE, True),
        (Gate.DSP_HDMI, True),
        (Gate.DSP_LINE, True),
    ]
    assert transport.calls_for("set_volume", IP) == [(0,), (8,)]
    assert transport.device(IP).volume == 8


def test_exception_during_settle_recovers_without_dsp():
    transport = VirtualTransport()
    transport.add_device(IP, model="3G+AVP RX", channel=3, volume=3)

    def sleep(seconds):
        if seconds == av.Timings().pre_switch_settle:
            raise RuntimeError("interrupted")

    result = av.ChannelTransitionSequencer(transport, sleep=sleep).run(IP, 4)

    assert result.success is False
    assert result.step is av.TransitionStep.PRE_SWITCH_SETTLE
    assert transport.calls_for("set_channel", IP) == []
    assert transport.calls_for("send_gate_command", IP)[-2:] == [
        (Gate.HDMI_MUTE, True),
        (Gate.STEREO_MUTE, True),
    ]
    assert transport.calls_for("set_volume", IP) == [(0,), (3,)]


def test_switch_channel_returns_bool():
    transport = VirtualTransport()
    transport.add_device(IP, volume=None)
    sequencer = _sequencer(transport, [])
    assert sequencer.switch_channel(IP, 6) is True
    assert transport.calls_for("set_volume", IP) == []


# ---------------------------------------------------------------------
# Volume ramp
# ---------------------------------------------------------------------


@pytest.mark.parametrize(
    "target,expected",
    [
        (11, [2, 4, 6, 8, 10, 11]),
        (8, [2, 4, 6, 8]),
        (10, [2, 4, 6, 8, 10]),
        (3, [1, 2, 3]),
        (13, [3, 6, 9, 12, 13]),
        (0, []),
    ],
)
def test_ramp_levels(target, expected):
    assert av.ramp_levels(target) == expected


def test_ramp_up_is_monotonic_and_paced():
    transport = VirtualTransport()
    transport.add_device(IP, volume=0)
    sleeps = []
    ramp = av.VolumeRampController(transport, sleep=sleeps.append)

    levels = ramp.ramp_up(IP, 11)

    sent = [args[0] for args in transport.calls_for("set_volume", IP)]
    assert sent == levels == [2, 4, 6, 8, 10, 11]
    assert all(a < b for a, b in zip(sent, sent[1:]))
    assert sleeps == [0.2] * 5


@pytest.mark.parametrize("volume", [0, None])
def test_ramp_down_without_volume_is_a_no_op(volume):
    transport = VirtualTransport()
    transport.add_device(IP, volume=volume)
    sleeps = []
    ramp = av.VolumeRampController(transport, sleep=sleeps.append)

    assert ramp.ramp_down(IP) is None
    assert transport.calls_for("set_volume", IP) == []
    assert sleeps == []


def test_ramp_down_when_volume_unreadable():
    transport = VirtualTransport()
    transport.fail("get_volume", IP)
    ramp = av.VolumeRampController(transport, sleep=lambda s: None)
    assert ramp.ramp_down(IP) is None
    assert transport.calls_for("set_volume", IP) == []


def test_ramp_down_returns_previous_level():
    transport = VirtualTransport()
    transport.add_device(IP, volume=7)
    sleeps = []
    ramp = av.VolumeRampController(transport, sleep=sleeps.append)

    assert ramp.ramp_down(IP) == 7
    assert transport.device(IP).volume == 0
    assert sleeps == [1.0]
