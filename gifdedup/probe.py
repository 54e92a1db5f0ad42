#!/usr/bin/env python3
"""
gifdedup.probe

Media Prober: path -> MediaMetadata, or ProbeError / ExtractionTimeoutError.

- FFprobeProber: any container ffprobe understands
- PillowProber:  GIF / WebP / APNG, read directly without a subprocess
- AutoProber:    picks one of the two by file suffix
"""
from __future__ import annotations
import json
import logging
import subprocess
from fractions import Fraction
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

from PIL import Image, UnidentifiedImageError

from .errors import ExtractionTimeoutError, ProbeError
from .models import MediaMetadata

logger = logging.getLogger(__name__)

PILLOW_SUFFIXES = frozenset({".gif", ".webp", ".png", ".apng"})
# DecompressionBombError (oversized canvas) and SyntaxError (broken headers) do not derive from OSError
PILLOW_DECODE_ERRORS = (UnidentifiedImageError, Image.DecompressionBombError, SyntaxError, EOFError, OSError, ValueError)


class MediaProber(Protocol):
    def probe(self, path: Path) -> MediaMetadata:
        ...


def run_ffprobe_json(path: Path, timeout: float = 30.0) -> Dict[str, Any]:
    """
    Run ffprobe on the first video stream and return its JSON output.

    Only the fields the fingerprint needs are requested; -count_packets gives a
    frame count for containers that do not store nb_frames (GIF, WebM).
    """
    if not path or not path.exists():
        raise ProbeError(path, "file does not exist")

    cmd = [
        "ffprobe", "-v", "error",
        "-select_streams", "v:0",
        "-count_packets",
        "-show_entries", "stream=width,height,r_frame_rate,avg_frame_rate,nb_frames,nb_read_packets,duration",
        "-show_entries", "format=duration",
        "-of", "json",
        str(path),
    ]
    try:
        result = subprocess.run(cmd, capture_output=True, timeout=timeout, text=True)
    except subprocess.TimeoutExpired:
        raise ExtractionTimeoutError(path, timeout)
    except (FileNotFoundError, PermissionError) as e:
        raise ProbeError(path, f"ffprobe unavailable: {e}")

    if result.returncode != 0:
        raise ProbeError(path, f"ffprobe exited with {result.returncode}: {(result.stderr or '').strip()[:200]}")
    if not result.stdout.strip():
        raise ProbeError(path, "ffprobe produced no output")
    try:
        return json.loads(result.stdout)
    except json.JSONDecodeError as e:
        raise ProbeError(path, f"unparsable ffprobe output: {e}")


def _parse_rate(value: Optional[str]) -> float:
    if not value or value in ("0/0", "N/A"):
        return 0.0
    try:
        return float(Fraction(value))
    except (ValueError, ZeroDivisionError):
        return 0.0


def _as_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def parse_ffprobe_payload(path: Path, payload: Dict[str, Any]) -> MediaMetadata:
    streams = payload.get("streams") or []
    if not streams:
        raise ProbeError(path, "no video stream")
    stream = streams[0]
    fmt = payload.get("format") or {}

    fps = _parse_rate(stream.get("avg_frame_rate")) or _parse_rate(stream.get("r_frame_rate"))
    duration_s = _as_float(stream.get("duration")) or _as_float(fmt.get("duration"))
    frames = _as_int(stream.get("nb_frames")) or _as_int(stream.get("nb_read_packets"))
    if not frames and duration_s > 0 and fps > 0:
        frames = int(round(duration_s * fps))
    if not fps and frames and duration_s > 0:
        fps = frames / duration_s

    width, height = _as_int(stream.get("width")), _as_int(stream.get("height"))
    duration_ms = int(round(duration_s * 1000))
    if duration_ms <= 0:
        raise ProbeError(path, "zero duration")
    if frames <= 0:
        raise ProbeError(path, "no frames")
    if width <= 0 or height <= 0:
        raise ProbeError(path, "missing resolution")
    return MediaMetadata(frame_count=frames, duration_ms=duration_ms, fps=round(fps, 3), width=width, height=height)


class FFprobeProber:
    def __init__(self, timeout: float = 30.0):
        self.timeout = timeout

    def probe(self, path: Path) -> MediaMetadata:
        return parse_ffprobe_payload(path, run_ffprobe_json(path, timeout=self.timeout))


class PillowProber:
    """Reads frame count and per-frame delays straight from animated image files."""

    def probe(self, path: Path) -> MediaMetadata:
        try:
            with Image.open(path) as img:
                frames = int(getattr(img, "n_frames", 1) or 0)
                width, height = img.size
                duration_ms = 0
                for index in range(frames):
                    img.seek(index)
                    duration_ms += int(img.info.get("duration") or 0)
        except PILLOW_DECODE_ERRORS as e:
            raise ProbeError(path, f"unreadable image: {e}")

        if frames <= 0:
            raise ProbeError(path, "no frames")
        if duration_ms <= 0:
            raise ProbeError(path, "zero duration")
        fps = frames / (duration_ms / 1000.0)
        return MediaMetadata(frame_count=frames, duration_ms=duration_ms, fps=round(fps, 3), width=width, height=height)


class AutoProber:
    def __init__(self, timeout: float = 30.0):
        self.pillow = PillowProber()
        self.ffprobe = FFprobeProber(timeout=timeout)

    def probe(self, path: Path) -> MediaMetadata:
        if path.suffix.lower() in PILLOW_SUFFIXES:
            return self.pillow.probe(path)
        return self.ffprobe.probe(path)
