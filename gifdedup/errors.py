#!/usr/bin/env python3
"""
gifdedup.errors

Failure taxonomy. Per-file and per-pair failures are recovered where they
happen; only ConfigurationError and CacheUnwritableError reach the caller of
scan().
"""
from __future__ import annotations

from pathlib import Path
from typing import Optional


class GifDedupError(Exception):
    """Base class for every error raised by gifdedup."""


class UnanalyzableFileError(GifDedupError):
    """A file produced no usable fingerprint (corrupt, zero duration, no frames)."""

    def __init__(self, path: Path, reason: str):
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason


class ExternalToolError(GifDedupError):
    """ffprobe/ffmpeg (or the Pillow fallback) failed on a file."""

    def __init__(self, path: Optional[Path], message: str):
        super().__init__(f"{path}: {message}" if path else message)
        self.path = path
        self.message = message


class ProbeError(ExternalToolError):
    pass


class FrameExtractionError(ExternalToolError):
    pass


class ExtractionTimeoutError(ExternalToolError):
    """An external call exceeded its timeout. Never retried automatically."""

    def __init__(self, path: Optional[Path], timeout: float):
        super().__init__(path, f"timed out after {timeout:.1f}s")
        self.timeout = timeout


class CacheCorruptionError(GifDedupError):
    """The on-disk cache failed structural validation."""


class CacheUnwritableError(GifDedupError):
    """The cache store could not be written at all."""


class ConfigurationError(GifDedupError):
    """Invalid thresholds or weights. Fatal at startup."""
