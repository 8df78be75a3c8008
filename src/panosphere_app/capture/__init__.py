"""Capture gating: target grid, state machine and per-tick orchestration."""

from .grid import CaptureTarget, build_capture_grid, compact_layout, next_target
from .orchestrator import CaptureOrchestrator, CaptureSlot, TickResult
from .state_machine import AlignmentReading, CaptureState, CaptureStateMachine, Guidance

__all__ = [
    "AlignmentReading",
    "CaptureOrchestrator",
    "CaptureSlot",
    "CaptureState",
    "CaptureStateMachine",
    "CaptureTarget",
    "Guidance",
    "TickResult",
    "build_capture_grid",
    "compact_layout",
    "next_target",
]
