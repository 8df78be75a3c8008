"""Frame repositories backing a capture session.

A repository owns the session :class:`Manifest` and the raw image bytes of
every frame. It is opened and closed explicitly and is the only shared mutable
resource of a session: frames are appended one at a time and only
:meth:`FrameRepository.reset` removes them.
"""
from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Optional, Protocol

from loguru import logger

from ..models.frame import Frame, Manifest

MANIFEST_NAME = "manifest.json"


class FrameRepository(Protocol):
    """Persistence contract used by the capture orchestrator."""

    manifest: Manifest

    def open(self) -> Manifest: ...

    def close(self) -> None: ...

    def add(self, frame: Frame) -> None: ...

    def frames(self) -> list[Frame]: ...

    def reset(self) -> Manifest: ...


class _RepositoryBase:
    def __init__(self) -> None:
        self.manifest = Manifest()
        self._images: dict[str, bytes] = {}
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    def _require_open(self) -> None:
        if not self._open:
            raise RuntimeError(f"{type(self).__name__} is closed")

    def frames(self) -> list[Frame]:
        """Frames with their encoded image bytes attached, in capture order."""
        self._require_open()
        return list(self.manifest.frames)

    def image_bytes(self, frame_id: str) -> bytes:
        self._require_open()
        return self._images[frame_id]

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @staticmethod
    def _require_bytes(frame: Frame) -> bytes:
        if not isinstance(frame.image, (bytes, bytearray)):
            raise ValueError(f"Frame {frame.id} must carry encoded image bytes")
        return bytes(frame.image)


class InMemoryFrameRepository(_RepositoryBase):
    """Volatile repository for tests and throwaway sessions."""

    def open(self) -> Manifest:
        self._open = True
        return self.manifest

    def close(self) -> None:
        self._open = False

    def add(self, frame: Frame) -> None:
        self._require_open()
        data = self._require_bytes(frame)
        self.manifest.append(frame)
        self._images[frame.id] = data

    def reset(self) -> Manifest:
        self._require_open()
        self.manifest = Manifest()
        self._images.clear()
        return self.manifest


class DirectoryFrameRepository(_RepositoryBase):
    """Durable repository storing ``manifest.json`` and one file per frame."""

    def __init__(self, root: Path) -> None:
        super().__init__()
        self.root = Path(root).expanduser()

    @property
    def manifest_path(self) -> Path:
        return self.root / MANIFEST_NAME

    def open(self) -> Manifest:
        """Create the store if needed and restore complete frames."""
        self.root.mkdir(parents=True, exist_ok=True)
        self.manifest = Manifest()
        self._images = {}
        self._open = True
        if self.manifest_path.exists():
            self._restore()
        logger.info(
            "Opened frame store {} (session {}, {} frames)",
            self.root,
            self.manifest.session_id,
            len(self.manifest),
        )
        return self.manifest

    def close(self) -> None:
        self._open = False
        self._images = {}

    def add(self, frame: Frame) -> None:
        self._require_open()
        data = self._require_bytes(frame)
        self._image_path(frame.id).write_bytes(data)
        self.manifest.append(frame)
        self._images[frame.id] = data
        try:
            self._write_manifest()
        except OSError:
            self.manifest.frames.pop()
            del self._images[frame.id]
            raise
        logger.debug("Persisted frame {} ({} bytes)", frame.id, len(data))

    def reset(self) -> Manifest:
        """Discard every frame and start a fresh session."""
        self._require_open()
        for path in self.root.iterdir():
            if path.is_file():
                path.unlink()
        self.manifest = Manifest()
        self._images = {}
        self._write_manifest()
        logger.info("Cleared frame store {}", self.root)
        return self.manifest

    # ------------------------------------------------------------------
    def _image_path(self, frame_id: str) -> Path:
        name = Path(frame_id).name
        if name != frame_id or name in {"", ".", "..", MANIFEST_NAME}:
            raise ValueError(f"Frame id {frame_id!r} is not a valid file name")
        return self.root / name

    def _write_manifest(self) -> None:
        tmp_path = self.manifest_path.with_suffix(".json.tmp")
        tmp_path.write_text(json.dumps(self.manifest.to_dict(), indent=2), encoding="utf-8")
        os.replace(tmp_path, self.manifest_path)

    def _restore(self) -> None:
        try:
            payload = json.loads(self.manifest_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            logger.warning("Unable to parse frame manifest {}; starting empty", self.manifest_path)
            return

        session_id: Optional[str] = payload.get("id")
        manifest = Manifest(session_id=session_id) if session_id else Manifest()
        referenced: set[str] = set()
        for record in payload.get("frames", []):
            try:
                frame_id = str(record["id"])
                path = self._image_path(frame_id)
            except (KeyError, TypeError, ValueError):
                logger.warning("Skipping malformed manifest entry {}", record)
                continue
            referenced.add(path.name)
            if not path.is_file():
                logger.warning("Frame {} has no image bytes; excluded from restore", frame_id)
                continue
            data = path.read_bytes()
            try:
                frame = Frame.from_record(record, image=data)
            except ValueError as exc:
                logger.warning("Skipping frame {}: {}", frame_id, exc)
                continue
            manifest.frames.append(frame)
            self._images[frame.id] = data

        for path in sorted(self.root.iterdir()):
            if path.is_file() and path.name not in referenced and path.name != MANIFEST_NAME:
                if path.suffix == ".tmp":
                    continue
                logger.warning("Image {} has no manifest entry; excluded from restore", path.name)

        self.manifest = manifest
        logger.info("Restored {} frames for session {}", len(manifest), manifest.session_id)
