from pathlib import Path
import json
import sys
from datetime import datetime

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest

pytest.importorskip("yaml")
pytest.importorskip("requests")

import avcontrol as av
from justaddpower.virtual import VirtualTransport

ZONES = {
    "Bowling Bar Music": "192.168.8.28",
    "Bowling Music": "192.168.8.25",
    "Rink Music": "192.168.8.15",
}


@pytest.fixture()
def transport() -> VirtualTransport:
    fleet = VirtualTransport()
    fleet.add_device("192.168.8.28", volume=6)
    fleet.add_device("192.168.8.25", volume=9)
    fleet.add_device("192.168.8.15", volume=3)
    return fleet


def _store(transport, path: Path, sleeps=None) -> av.VolumeSnapshotStore:
    return av.VolumeSnapshotStore(
        transport,
        av.SnapshotFile(str(path)),
        sleep=(sleeps.append if sleeps is not None else (lambda s: None)),
        clock=lambda: datetime(2025, 6, 14, 9, 49, 6),
    )


def test_capture_writes_snapshot_file(transport, tmp_path: Path):
    path = tmp_path / av.SNAPSHOT_FILENAME
    snapshot = _store(transport, path).capture(ZONES)

    assert snapshot is not None
    data = json.loads(path.read_text(encoding="utf-8"))
    assert data == {
        "timestamp": "2025-06-14 09:49:06",
        "volumes": {"Bowling Bar Music": 6, "Bowling Music": 9, "Rink Music": 3},
    }
    assert not (tmp_path / f"{av.SNAPSHOT_FILENAME}.tmp").exists()


def test_capture_then_restore_puts_volumes_back(transport, tmp_path: Path):
    sleeps = []
    store = _store(transport, tmp_path / av.SNAPSHOT_FILENAME, sleeps)
    store.capture(ZONES)
    for address in ZONES.values():
        transport.device(address).volume = 10

    restored = store.restore(ZONES)

    assert restored == {name: True for name in ZONES}
    assert transport.device("192.168.8.28").volume == 6
    assert transport.device("192.168.8.25").volume == 9
    assert transport.device("192.168.8.15").volume == 3
    assert sleeps == [0.1, 0.1]


def test_capture_skips_unreadable_zones(transport, tmp_path: Path):
    transport.fail("get_volume", "192.168.8.25")
    snapshot = _store(transport, tmp_path / "v.json").capture(ZONES)
    assert snapshot.volumes == {"Bowling Bar Music": 6, "Rink Music": 3}


def test_capture_with_no_readings_keeps_previous_snapshot(transport, tmp_path: Path):
    path = tmp_path / "v.json"
    path.write_text(
        json.dumps({"timestamp": "2025-01-01 00:00:00", "volumes": {"Rink Music": 4}}),
        encoding="utf-8",
    )
    transport.fail("get_volume")

    assert _store(transport, path).capture(ZONES) is None
    assert json.loads(path.read_text(encoding="utf-8"))["volumes"] == {"Rink Music": 4}


def test_restore_without_snapshot_is_a_no_op(transport, tmp_path: Path):
    assert _store(transport, tmp_path / "missing.json").restore(ZONES) == {}
    assert transport.calls_for("set_volume") == []


@pytest.mark.parametrize(
    "content",
    [
        "not json at all",
        json.dumps({"timestamp": "2025-01-01 00:00:00"}),
        json.dumps({"volumes": ["Rink Music", 4]}),
        json.dumps([1, 2, 3]),
    ],
)
def test_restore_with_malformed_snapshot_is_a_no_op(transport, tmp_path: Path, content):
    path = tmp_path / "v.json"
    path.write_text(content, encoding="utf-8")
    assert _store(transport, path).restore(ZONES) == {}
    assert transport.calls_for("set_volume") == []


def test_restore_only_touches_zones_in_snapshot(transport, tmp_path: Path):
    path = tmp_path / "v.json"
    path.write_text(
        json.dumps({"timestamp": "2025-01-01 00:00:00", "volumes": {"Rink Music": 5, "Gone": 2}}),
        encoding="utf-8",
    )
    restored = _store(transport, path).restore(ZONES)
    assert restored == {"Rink Music": True}
    assert transport.calls_for("set_volume") == [(5,)]


def test_snapshot_from_dict_tolerates_bad_entries():
    snapshot = av.VolumeSnapshot.from_dict(
        {"timestamp": "yesterday", "volumes": {"A": 4, "B": "loud", "C": "7"}}
    )
    assert snapshot.volumes == {"A": 4, "C": 7}
    assert snapshot.timestamp is None


def test_write_snapshot_creates_parent_directory(tmp_path: Path):
    target = tmp_path / "state" / "v.json"
    snapshot = av.VolumeSnapshot(volumes={"A": 1}, timestamp=datetime(2024, 11, 12, 16, 20, 25))
    assert av.SnapshotFile(str(target)).write_snapshot(snapshot) is True
    assert av.SnapshotFile(str(target)).read_snapshot() == snapshot
