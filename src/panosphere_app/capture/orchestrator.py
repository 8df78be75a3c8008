"""Per-tick capture driver.

The orchestrator is ticked from the interactive thread. Each tick reads the
filtered attitude, aims at the first open target and advances the capture
gate. When the gate opens it grabs and encodes a frame on a background worker
so the tick never waits on the camera. The resulting frame is recorded on a
later tick, on the ticking thread, before the single capture slot is released.

By default the orchestrator owns a single-worker thread pool that lives from
:meth:`CaptureOrchestrator.start` to :meth:`CaptureOrchestrator.stop`. A caller
may pass its own executor instead, or ask for ``inline_capture`` to grab
synchronously inside the tick.
"""
from __future__ import annotations

from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass
import time
from typing import Callable, Optional, Protocol, Sequence

import cv2
import numpy as np
from loguru import logger

from ..config import SessionConfig
from ..errors import CaptureDeviceError, FailureCode
from ..io.frame_store import FrameRepository
from ..math.geometry import angle_diff
from ..models.frame import CameraInfo, Frame, SensorReading
from ..sensors.fusion import OrientationSource, SensorFusion
from ..stitching.engine import StitchingEngine
from ..workers.task_runner import StitchTask
from .grid import CaptureTarget, build_capture_grid, match_target, next_target
from .state_machine import AlignmentReading, CaptureState, CaptureStateMachine, Guidance, guidance_for


class Camera(Protocol):
    """Frame source used by the orchestrator."""

    def start(self) -> None: ...

    def stop(self) -> None: ...

    def grab(self) -> np.ndarray:
        """Return the current BGR frame or raise :class:`CaptureDeviceError`."""
        ...


@dataclass(slots=True, frozen=True)
class CaptureProgress:
    captured: int
    total: int

    @property
    def complete(self) -> bool:
        return self.captured >= self.total


@dataclass(slots=True, frozen=True)
class TickResult:
    """What one tick observed and did."""

    state: CaptureState
    target: Optional[CaptureTarget]
    yaw_diff: float = 0.0
    pitch_diff: float = 0.0
    stability_progress: float = 0.0
    guidance: Optional[Guidance] = None
    manual_only: bool = False
    capture_started: bool = False
    frame_recorded: Optional[Frame] = None
    failure: Optional[FailureCode] = None


class CaptureSlot:
    """Single-slot token marking one capture in flight."""

    def __init__(self) -> None:
        self._holder: Optional[str] = None

    @property
    def busy(self) -> bool:
        return self._holder is not None

    @property
    def holder(self) -> Optional[str]:
        return self._holder

    def acquire(self, target_id: str) -> bool:
        """Take the slot for ``target_id``; ``False`` if a capture is already in flight."""
        if self._holder is not None:
            logger.debug("Capture for {} rejected; {} still in flight", target_id, self._holder)
            return False
        self._holder = target_id
        return True

    def release(self) -> None:
        self._holder = None


@dataclass(slots=True)
class _PendingCapture:
    target: CaptureTarget
    pose: SensorReading
    future: Future


def _encode_jpeg(image: np.ndarray, quality: int) -> bytes:
    ok, buffer = cv2.imencode(".jpg", image, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)])
    if not ok:
        raise CaptureDeviceError("Unable to encode captured frame as JPEG")
    return buffer.tobytes()


class CaptureOrchestrator:
    """Drives the capture gate over a fixed grid of targets."""

    def __init__(
        self,
        targets: Sequence[CaptureTarget],
        fusion: SensorFusion,
        state_machine: CaptureStateMachine,
        camera: Camera,
        repository: FrameRepository,
        *,
        orientation_source: Optional[OrientationSource] = None,
        executor: Optional[Executor] = None,
        inline_capture: bool = False,
        hfov: float = 75.0,
        jpeg_quality: int = 90,
        stability_thresholds: Optional[tuple[float, float]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not targets:
            raise ValueError("Capture grid must contain at least one target")
        self.targets = list(targets)
        self.fusion = fusion
        self.state_machine = state_machine
        self.camera = camera
        self.repository = repository
        self.orientation_source = orientation_source
        self.hfov = hfov
        self.jpeg_quality = jpeg_quality
        self.stability_thresholds = stability_thresholds
        self.slot = CaptureSlot()
        self.fatal_error: Optional[CaptureDeviceError] = None
        self._executor = executor
        self._owned_executor: Optional[ThreadPoolExecutor] = None
        self._inline_capture = inline_capture
        self._clock = clock
        self._pending: Optional[_PendingCapture] = None
        self._running = False

    @classmethod
    def from_config(
        cls,
        config: SessionConfig,
        camera: Camera,
        repository: FrameRepository,
        *,
        orientation_source: Optional[OrientationSource] = None,
        executor: Optional[Executor] = None,
        inline_capture: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ) -> "CaptureOrchestrator":
        """Wire a session from configuration; ``clock`` drives filter and gate timing."""
        config.validate()
        return cls(
            build_capture_grid(config.rings),
            SensorFusion(config.sensor, clock=clock),
            CaptureStateMachine(config.state_machine, clock=clock),
            camera,
            repository,
            orientation_source=orientation_source,
            executor=executor,
            inline_capture=inline_capture,
            hfov=config.hfov,
            jpeg_quality=config.capture_jpeg_quality,
            stability_thresholds=config.sensor.stability_thresholds(),
        )

    # ------------------------------------------------------------------
    def start(self) -> None:
        """Open the frame store, restore progress and start camera and sensors.

        Raises
        ------
        CaptureDeviceError
            If the camera cannot be started. The session cannot continue.
        """
        if self._running:
            return
        self.repository.open()
        self._restore_progress()
        try:
            self.camera.start()
        except CaptureDeviceError:
            self.repository.close()
            raise
        if self._executor is None and not self._inline_capture:
            self._owned_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="panosphere-capture")
        if self.orientation_source is not None:
            self.fusion.start(self.orientation_source)
        self.fatal_error = None
        self._running = True
        progress = self.progress()
        logger.info("Capture session started: {}/{} targets done", progress.captured, progress.total)

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self.fusion.stop()
        if self._pending is not None:
            self._pending.future.cancel()
            self._pending = None
            self.state_machine.reset()
            self.slot.release()
        if self._owned_executor is not None:
            # Let a grab already running finish before the camera goes away.
            self._owned_executor.shutdown(wait=True, cancel_futures=True)
            self._owned_executor = None
        self.camera.stop()
        self.repository.close()
        logger.info("Capture session stopped")

    @property
    def running(self) -> bool:
        return self._running

    def recenter(self) -> None:
        """Make the current heading the zero yaw of the grid."""
        self.fusion.calibrate()

    def progress(self) -> CaptureProgress:
        return CaptureProgress(sum(1 for t in self.targets if t.completed), len(self.targets))

    # ------------------------------------------------------------------
    def tick(self) -> TickResult:
        """Run one cheap control step; safe to call at display frame rate."""
        recorded = self._collect_finished_capture()
        if self.fatal_error is not None or not self._running:
            return TickResult(
                state=self.state_machine.state,
                target=next_target(self.targets),
                frame_recorded=recorded,
                failure=FailureCode.CAPTURE_DEVICE_ERROR if self.fatal_error else None,
            )

        target = next_target(self.targets)
        if not self.fusion.has_reading:
            return TickResult(
                state=self.state_machine.state,
                target=target,
                manual_only=True,
                frame_recorded=recorded,
                failure=FailureCode.SENSOR_UNAVAILABLE,
            )
        if self.fusion.state.reference_yaw is None:
            self.fusion.calibrate()

        if target is None:
            return TickResult(state=self.state_machine.state, target=None, frame_recorded=recorded)

        alignment = self._alignment(target)
        motion = self.fusion.motion_reading(self.stability_thresholds)
        state = self.state_machine.update(alignment, motion)

        started = False
        if self.state_machine.can_capture() and not self.slot.busy:
            started = self._begin_capture(target)
            if started and recorded is None:
                recorded = self._collect_finished_capture()

        return TickResult(
            state=self.state_machine.state if started else state,
            target=target,
            yaw_diff=alignment.yaw_diff,
            pitch_diff=alignment.pitch_diff,
            stability_progress=self.state_machine.stability_progress(),
            guidance=guidance_for(target, alignment.yaw_diff, alignment.pitch_diff),
            capture_started=started,
            frame_recorded=recorded,
            failure=FailureCode.CAPTURE_DEVICE_ERROR if self.fatal_error else None,
        )

    def capture_now(self) -> bool:
        """Capture the next target immediately, bypassing the gate.

        Used when no orientation data is available. The pose recorded is
        whatever the filter currently holds.
        """
        if not self._running or self.fatal_error is not None:
            return False
        target = next_target(self.targets)
        if target is None:
            return False
        started = self._start_job(target)
        if started:
            self._collect_finished_capture()
        return started

    # ------------------------------------------------------------------
    def _alignment(self, target: CaptureTarget) -> AlignmentReading:
        yaw = self.fusion.relative_yaw()
        pitch = self.fusion.pitch()
        # Any heading works when aiming straight up or down.
        yaw_diff = 0.0 if abs(target.pitch) >= 90.0 else angle_diff(target.yaw, yaw)
        return AlignmentReading(target=target, yaw_diff=yaw_diff, pitch_diff=target.pitch - pitch)

    def _current_pose(self) -> SensorReading:
        return SensorReading(
            yaw=self.fusion.relative_yaw(),
            pitch=self.fusion.pitch(),
            roll=self.fusion.roll(),
        )

    def _begin_capture(self, target: CaptureTarget) -> bool:
        return self._start_job(target, gated=True)

    def _start_job(self, target: CaptureTarget, *, gated: bool = False) -> bool:
        if not self.slot.acquire(target.id):
            return False
        if gated and not self.state_machine.capture():
            self.slot.release()
            return False
        pose = self._current_pose()
        executor = self._executor or self._owned_executor
        if executor is None:
            future: Future = Future()
            try:
                future.set_result(self._grab_encoded())
            except Exception as exc:  # noqa: BLE001 - delivered through the future
                future.set_exception(exc)
        else:
            future = executor.submit(self._grab_encoded)
        self._pending = _PendingCapture(target=target, pose=pose, future=future)
        logger.debug("Capture started for {} at yaw {:.1f} pitch {:.1f}", target.id, pose.yaw, pose.pitch)
        return True

    def _grab_encoded(self) -> bytes:
        return _encode_jpeg(self.camera.grab(), self.jpeg_quality)

    def _collect_finished_capture(self) -> Optional[Frame]:
        pending = self._pending
        if pending is None or not pending.future.done():
            return None
        self._pending = None
        try:
            data = pending.future.result()
        except CaptureDeviceError as exc:
            self._abort_capture(exc)
            return None
        except Exception as exc:  # noqa: BLE001 - camera adapters may raise anything
            self._abort_capture(CaptureDeviceError(str(exc)))
            return None

        frame = Frame(
            id=self.repository.manifest.next_frame_id(),
            timestamp=self._clock(),
            sensors=pending.pose,
            camera=CameraInfo(hfov=self.hfov),
            image=data,
            target_id=pending.target.id,
        )
        try:
            self.repository.add(frame)
        except OSError as exc:
            logger.error("Failed to persist frame for {}: {}", pending.target.id, exc)
            self.state_machine.reset()
            self.slot.release()
            return None

        pending.target.mark_completed(thumbnail=data)
        if self.state_machine.state is CaptureState.CAPTURING:
            self.state_machine.complete()
        self.state_machine.reset()
        self.slot.release()
        progress = self.progress()
        logger.info(
            "Captured {} as {} ({}/{})", pending.target.id, frame.id, progress.captured, progress.total
        )
        return frame

    def _abort_capture(self, error: CaptureDeviceError) -> None:
        logger.error("Camera failure during capture: {}", error)
        self.fatal_error = error
        self.state_machine.reset()
        self.slot.release()

    def _restore_progress(self) -> None:
        restored = 0
        by_id = {target.id: target for target in self.targets}
        for frame in self.repository.frames():
            target = by_id.get(frame.target_id) if frame.target_id else None
            if target is None or target.completed:
                target = match_target(self.targets, frame.sensors.yaw, frame.sensors.pitch)
            if target is None:
                logger.warning("Restored frame {} matches no open target", frame.id)
                continue
            image = frame.image if isinstance(frame.image, bytes) else None
            target.mark_completed(thumbnail=image)
            restored += 1
        if restored:
            logger.info("Restored {} captured targets", restored)

    # ------------------------------------------------------------------
    def reset_session(self) -> None:
        """Discard every capture and reopen all targets."""
        if self._pending is not None:
            self._pending.future.cancel()
            self._pending = None
        self.slot.release()
        self.repository.reset()
        for target in self.targets:
            target.reset()
        self.state_machine.reset()
        self.fatal_error = None
        logger.info("Capture session reset")

    def frames_for_stitching(self) -> list[Frame]:
        """Recorded frames, ready to hand to the stitching engine."""
        return self.repository.frames()

    def stitch_task(self, engine: StitchingEngine) -> StitchTask:
        """Snapshot the recorded frames into a task for a ``TaskRunner``.

        The task owns its own copy of the frame list, so capture can carry on
        (or the session be reset) while the stitch runs on the Qt thread pool.
        """
        frames = self.frames_for_stitching()
        logger.info("Queued {} frames for background stitching", len(frames))
        return StitchTask(engine, frames)
