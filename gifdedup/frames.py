#!/usr/bin/env python3
"""
gifdedup.frames

Frame Sampler: (path, N) -> N decoded frames, temporally evenly spaced.

The ffmpeg sampler extracts into a private temporary directory which is
removed on every exit path, including timeouts and interrupts.
"""
from __future__ import annotations
import logging
import subprocess
import tempfile
from pathlib import Path
from typing import List, Optional, Protocol

from PIL import Image

from .errors import ExtractionTimeoutError, FrameExtractionError, ProbeError
from .probe import PILLOW_DECODE_ERRORS, PILLOW_SUFFIXES, FFprobeProber, MediaProber

logger = logging.getLogger(__name__)


class FrameSampler(Protocol):
    def sample(self, path: Path, count: int) -> List[Image.Image]:
        ...


def even_frame_indices(frame_count: int, count: int) -> List[int]:
    """Centre of each of `count` equal slices of the frame range (indices repeat for short clips)."""
    if frame_count <= 0 or count <= 0:
        return []
    return [min(frame_count - 1, int((i + 0.5) * frame_count / count)) for i in range(count)]


def even_timestamps(duration: float, count: int) -> List[float]:
    """Timestamps at (i+1)/(count+1) of the duration, kept clear of the very end."""
    if duration <= 0 or count <= 0:
        return []
    fractions = [(i + 1) / (count + 1) for i in range(count)]
    return [max(0.0, min(duration * frac, max(0.0, duration - 0.1))) for frac in fractions]


class PillowFrameSampler:
    def sample(self, path: Path, count: int) -> List[Image.Image]:
        frames: List[Image.Image] = []
        try:
            with Image.open(path) as img:
                total = int(getattr(img, "n_frames", 1) or 0)
                for index in even_frame_indices(total, count):
                    img.seek(index)
                    frames.append(img.convert("RGB").copy())
        except PILLOW_DECODE_ERRORS as e:
            raise FrameExtractionError(path, f"decode failed: {e}")
        if not frames:
            raise FrameExtractionError(path, "no frames decoded")
        return frames


def _ffmpeg_frame_cmd(path: Path, ts: float, output: Path) -> List[str]:
    """Seek before -i (demuxer-side, fast) and write a single PNG."""
    return [
        "ffmpeg", "-hide_banner", "-loglevel", "error", "-y",
        "-ss", f"{ts:.3f}", "-i", str(path),
        "-frames:v", "1", str(output),
    ]


class FFmpegFrameSampler:
    def __init__(self, timeout: float = 60.0, prober: Optional[MediaProber] = None):
        self.timeout = timeout
        self.prober = prober or FFprobeProber(timeout=timeout)

    def sample(self, path: Path, count: int) -> List[Image.Image]:
        try:
            meta = self.prober.probe(path)
        except ProbeError as e:
            raise FrameExtractionError(path, f"cannot determine duration: {e}")
        timestamps = even_timestamps(meta.duration_ms / 1000.0, count)

        frames: List[Image.Image] = []
        with tempfile.TemporaryDirectory(prefix="gifdedup-frames-") as tmp_dir:
            for i, ts in enumerate(timestamps):
                out = Path(tmp_dir) / f"frame_{i + 1:03d}.png"
                try:
                    result = subprocess.run(
                        _ffmpeg_frame_cmd(path, ts, out), capture_output=True, timeout=self.timeout
                    )
                except subprocess.TimeoutExpired:
                    raise ExtractionTimeoutError(path, self.timeout)
                except (FileNotFoundError, PermissionError) as e:
                    raise FrameExtractionError(path, f"ffmpeg unavailable: {e}")
                if result.returncode != 0 or not out.exists():
                    logger.debug("ffmpeg could not extract frame at %.3fs from %s", ts, path)
                    continue
                try:
                    with Image.open(out) as img:
                        frames.append(img.convert("RGB").copy())
                except PILLOW_DECODE_ERRORS:
                    continue

        if not frames:
            raise FrameExtractionError(path, "no frames decoded")
        return frames


class AutoFrameSampler:
    def __init__(self, timeout: float = 60.0):
        self.pillow = PillowFrameSampler()
        self.ffmpeg = FFmpegFrameSampler(timeout=timeout)

    def sample(self, path: Path, count: int) -> List[Image.Image]:
        if path.suffix.lower() in PILLOW_SUFFIXES:
            return self.pillow.sample(path, count)
        return self.ffmpeg.sample(path, count)
