import json

import cv2
import numpy as np
import pytest

from panosphere_app.io import DirectoryFrameRepository, InMemoryFrameRepository
from panosphere_app.models.frame import CameraInfo, Frame, Manifest, SensorReading


def _jpeg(value: int = 120) -> bytes:
    image = np.full((24, 32, 3), value, dtype=np.uint8)
    ok, buffer = cv2.imencode(".jpg", image)
    assert ok
    return buffer.tobytes()


def _frame(frame_id: str, yaw: float = 0.0, target_id=None) -> Frame:
    return Frame(
        id=frame_id,
        timestamp=1000.0,
        sensors=SensorReading(yaw=yaw, pitch=0.0, roll=1.5),
        camera=CameraInfo(hfov=70.0),
        image=_jpeg(),
        target_id=target_id,
    )


def test_frame_record_roundtrip_keeps_pose_and_target():
    frame = _frame("frame_0.jpg", yaw=45.0, target_id="horizon_1")
    restored = Frame.from_record(frame.to_record(), image=frame.image)
    assert restored == frame


def test_frame_from_record_rejects_missing_sensors():
    with pytest.raises(ValueError):
        Frame.from_record({"id": "frame_0.jpg", "timestamp": 1.0})


def test_manifest_ids_are_unique_and_sequential():
    manifest = Manifest(session_id="tour_test")
    assert manifest.next_frame_id() == "frame_0.jpg"
    manifest.append(_frame("frame_0.jpg"))
    manifest.append(_frame("frame_2.jpg"))
    assert manifest.next_frame_id() == "frame_3.jpg"
    with pytest.raises(ValueError):
        manifest.append(_frame("frame_0.jpg"))
    assert manifest.to_dict()["id"] == "tour_test"


def test_in_memory_repository_requires_open():
    repository = InMemoryFrameRepository()
    with pytest.raises(RuntimeError):
        repository.add(_frame("frame_0.jpg"))
    with repository:
        repository.add(_frame("frame_0.jpg"))
        assert [f.id for f in repository.frames()] == ["frame_0.jpg"]
        assert repository.image_bytes("frame_0.jpg").startswith(b"\xff\xd8")
        repository.reset()
        assert repository.frames() == []
    assert not repository.is_open


def test_repository_rejects_frames_without_bytes():
    with InMemoryFrameRepository() as repository:
        frame = Frame(id="frame_0.jpg", timestamp=0.0, sensors=SensorReading(0.0, 0.0))
        with pytest.raises(ValueError):
            repository.add(frame)


def test_directory_repository_survives_restart(tmp_path):
    with DirectoryFrameRepository(tmp_path) as repository:
        session_id = repository.manifest.session_id
        repository.add(_frame("frame_0.jpg", yaw=10.0, target_id="horizon_0"))
        repository.add(_frame("frame_1.jpg", yaw=55.0))

    manifest = json.loads((tmp_path / "manifest.json").read_text(encoding="utf-8"))
    assert manifest["id"] == session_id
    assert [entry["id"] for entry in manifest["frames"]] == ["frame_0.jpg", "frame_1.jpg"]

    with DirectoryFrameRepository(tmp_path) as reopened:
        frames = reopened.frames()
        assert reopened.manifest.session_id == session_id
        assert [f.id for f in frames] == ["frame_0.jpg", "frame_1.jpg"]
        assert frames[0].target_id == "horizon_0"
        assert frames[1].sensors.yaw == pytest.approx(55.0)
        assert frames[1].camera.hfov == pytest.approx(70.0)
        assert frames[0].image == (tmp_path / "frame_0.jpg").read_bytes()


def test_directory_repository_excludes_incomplete_records(tmp_path):
    with DirectoryFrameRepository(tmp_path) as repository:
        repository.add(_frame("frame_0.jpg"))
        repository.add(_frame("frame_1.jpg"))

    (tmp_path / "frame_1.jpg").unlink()
    (tmp_path / "frame_9.jpg").write_bytes(_jpeg())

    with DirectoryFrameRepository(tmp_path) as reopened:
        assert [f.id for f in reopened.frames()] == ["frame_0.jpg"]
        assert reopened.manifest.next_frame_id() == "frame_1.jpg"


def test_directory_repository_starts_empty_on_corrupt_manifest(tmp_path):
    (tmp_path / "manifest.json").write_text("{broken", encoding="utf-8")
    with DirectoryFrameRepository(tmp_path) as repository:
        assert repository.frames() == []


def test_directory_repository_reset_removes_files(tmp_path):
    with DirectoryFrameRepository(tmp_path) as repository:
        repository.add(_frame("frame_0.jpg"))
        repository.reset()
        assert repository.frames() == []
        assert not (tmp_path / "frame_0.jpg").exists()

    with DirectoryFrameRepository(tmp_path) as reopened:
        assert reopened.frames() == []


def test_directory_repository_rejects_path_like_ids(tmp_path):
    with DirectoryFrameRepository(tmp_path) as repository:
        with pytest.raises(ValueError):
            repository.add(_frame("../escape.jpg"))
        assert repository.frames() == []
