"""Persistence helpers for capture sessions."""

from .frame_store import DirectoryFrameRepository, FrameRepository, InMemoryFrameRepository

__all__ = [
    "DirectoryFrameRepository",
    "FrameRepository",
    "InMemoryFrameRepository",
]
