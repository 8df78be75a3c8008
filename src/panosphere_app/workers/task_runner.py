"""Run stitching off the interactive thread on Qt's thread pool."""
from __future__ import annotations

import traceback
from typing import Sequence

from loguru import logger
from PyQt6.QtCore import QObject, QRunnable, QThreadPool, pyqtSignal

from ..errors import StitchFailure
from ..models.frame import Frame
from ..stitching.engine import Panorama, StitchingEngine


class StitchSignals(QObject):
    """Signals available from a background stitch."""

    finished = pyqtSignal(object)  # Panorama
    failed = pyqtSignal(str)


class StitchTask(QRunnable):
    """Stitch a snapshot of frames in the Qt thread pool.

    Cancellation is coarse: a cancelled task still runs to completion but its
    result is discarded instead of emitted.
    """

    def __init__(self, engine: StitchingEngine, frames: Sequence[Frame]) -> None:
        super().__init__()
        self.engine = engine
        self.frames = tuple(frames)
        self.signals = StitchSignals()
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    def run(self) -> None:
        try:
            result = self.engine.stitch(self.frames)
        except Exception as exc:  # noqa: BLE001
            tb = traceback.format_exc()
            logger.error("Stitch task crashed: {}", exc)
            if not self._cancelled:
                self.signals.failed.emit(f"{exc}\n{tb}")
            return

        if self._cancelled:
            logger.info("Stitch task cancelled; discarding result")
            return
        if isinstance(result, StitchFailure):
            self.signals.failed.emit(f"{result.code}: {result.message}")
        elif isinstance(result, Panorama):
            self.signals.finished.emit(result)


class TaskRunner:
    """Thin wrapper around QThreadPool for convenience."""

    def __init__(self, max_threads: int | None = None) -> None:
        self._pool = QThreadPool.globalInstance()
        if max_threads is not None:
            self._pool.setMaxThreadCount(max_threads)

    def submit(self, task: StitchTask) -> None:
        self._pool.start(task)

    def wait(self, timeout_ms: int = -1) -> bool:
        return self._pool.waitForDone(timeout_ms)
