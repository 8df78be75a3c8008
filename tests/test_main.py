import json

import cv2
import numpy as np

from panosphere_app.io import DirectoryFrameRepository
from panosphere_app.main import main
from panosphere_app.models.frame import Frame, SensorReading


def _write_session(root, count: int) -> None:
    ok, buffer = cv2.imencode(".jpg", np.full((48, 64, 3), 120, dtype=np.uint8))
    assert ok
    with DirectoryFrameRepository(root) as repository:
        for index in range(count):
            repository.add(
                Frame(
                    id=f"frame_{index}.jpg",
                    timestamp=float(index),
                    sensors=SensorReading(yaw=index * 120.0, pitch=0.0),
                    image=buffer.tobytes(),
                )
            )


def _write_config(path) -> None:
    config = {"stitch": {"resolution_tiers": [[256, 128]], "slice_count": 32}}
    path.write_text(json.dumps(config), encoding="utf-8")


def test_main_stitches_saved_session(tmp_path):
    session = tmp_path / "session"
    _write_session(session, 3)
    config = tmp_path / "config.json"
    _write_config(config)
    output = tmp_path / "pano.jpg"

    assert main([str(session), str(output), "--config", str(config)]) == 0
    decoded = cv2.imread(str(output))
    assert decoded.shape == (128, 256, 3)


def test_main_reports_stitch_failure(tmp_path):
    session = tmp_path / "session"
    _write_session(session, 1)
    config = tmp_path / "config.json"
    _write_config(config)
    output = tmp_path / "pano.jpg"

    assert main([str(session), str(output), "--config", str(config)]) == 1
    assert not output.exists()


def test_main_rejects_missing_session_and_bad_config(tmp_path):
    assert main([str(tmp_path / "nothing"), str(tmp_path / "pano.jpg")]) == 2

    config = tmp_path / "config.json"
    config.write_text(json.dumps({"stitch": {"unknown": 1}}), encoding="utf-8")
    assert main([str(tmp_path), str(tmp_path / "pano.jpg"), "--config", str(config)]) == 2
