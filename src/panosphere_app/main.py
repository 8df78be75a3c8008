"""Command line bootstrap: stitch a persisted capture session."""
from __future__ import annotations

import argparse
from pathlib import Path
import sys
from typing import Optional

from loguru import logger

from .config import SessionConfig, load_session_config
from .errors import StitchFailure
from .io.frame_store import DirectoryFrameRepository
from .logging import configure_logging
from .stitching.engine import StitchingEngine


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="panosphere-stitch",
        description="Stitch a saved capture session into an equirectangular panorama.",
    )
    parser.add_argument("session_dir", type=Path, help="Directory holding manifest.json and frame images")
    parser.add_argument("output", type=Path, help="Destination JPEG path")
    parser.add_argument("--config", type=Path, default=None, help="JSON session configuration")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> int:
    """Stitch ``session_dir`` into ``output``; returns a process exit code."""
    args = _parse_args(list(sys.argv[1:] if argv is None else argv))
    configure_logging("DEBUG" if args.verbose else "INFO")

    try:
        config = load_session_config(args.config) if args.config else SessionConfig()
    except (OSError, ValueError) as exc:
        logger.error("Invalid configuration: {}", exc)
        return 2

    if not (args.session_dir / "manifest.json").is_file():
        logger.error("No capture session found in {}", args.session_dir)
        return 2

    with DirectoryFrameRepository(args.session_dir) as repository:
        frames = repository.frames()

    result = StitchingEngine(config.stitch).stitch(frames)
    if isinstance(result, StitchFailure):
        logger.error("Stitching failed ({}): {}", result.code, result.message)
        return 1

    result.save(args.output)
    return 0


if __name__ == "__main__":
    sys.exit(main())
