import cv2
import numpy as np

from panosphere_app.config import StitchConfig
from panosphere_app.errors import FailureCode, StitchFailure
from panosphere_app.models.frame import Frame, SensorReading
from panosphere_app.stitching import Panorama, StitchingEngine
from panosphere_app.workers.task_runner import StitchTask, TaskRunner


def _frames(count: int = 2) -> list[Frame]:
    ok, buffer = cv2.imencode(".jpg", np.full((48, 64, 3), 120, dtype=np.uint8))
    assert ok
    return [
        Frame(
            id=f"frame_{i}.jpg",
            timestamp=float(i),
            sensors=SensorReading(yaw=i * 90.0, pitch=0.0),
            image=buffer.tobytes(),
        )
        for i in range(count)
    ]


def _task(frames) -> tuple[StitchTask, list, list]:
    engine = StitchingEngine(StitchConfig(resolution_tiers=((256, 128),), slice_count=32))
    task = StitchTask(engine, frames)
    finished, failed = [], []
    task.signals.finished.connect(finished.append)
    task.signals.failed.connect(failed.append)
    return task, finished, failed


def test_stitch_task_emits_panorama():
    task, finished, failed = _task(_frames())
    task.run()
    assert failed == []
    assert len(finished) == 1
    assert isinstance(finished[0], Panorama)
    assert finished[0].width == 256


def test_stitch_task_reports_failure_code():
    task, finished, failed = _task(_frames(1))
    task.run()
    assert finished == []
    assert failed == ["insufficient_frames: Need at least 2 frames, got 1"]


def test_cancelled_task_discards_result():
    task, finished, failed = _task(_frames())
    task.cancel()
    task.run()
    assert finished == []
    assert failed == []


class _RecordingEngine:
    def __init__(self) -> None:
        self.calls = []

    def stitch(self, frames):
        self.calls.append(len(frames))
        return StitchFailure(FailureCode.INSUFFICIENT_FRAMES, "recorded")


def test_task_runner_executes_on_thread_pool():
    engine = _RecordingEngine()
    task = StitchTask(engine, _frames(3))
    runner = TaskRunner(max_threads=1)
    runner.submit(task)
    assert runner.wait(10_000)
    assert engine.calls == [3]
