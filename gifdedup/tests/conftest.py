from __future__ import annotations

import hashlib
import os
import tempfile
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np
import pytest
from PIL import Image

from gifdedup.errors import FrameExtractionError
from gifdedup.models import FileRecord, MediaMetadata


_PYTEST_TMP_ROOT = Path(__file__).resolve().parent / ".pytest_tmp"
_PYTEST_TMP_ROOT.mkdir(parents=True, exist_ok=True)


def _configure_temp_environment() -> None:
    """
    Ensure pytest writes all temporary files inside the repository so Windows ACLs
    never block tmp_path/tmp_path_factory.
    """
    temp_dir = str(_PYTEST_TMP_ROOT)
    os.environ["TMP"] = temp_dir
    os.environ["TEMP"] = temp_dir
    os.environ["TMPDIR"] = temp_dir
    tempfile.tempdir = temp_dir


_configure_temp_environment()


def pytest_configure(config) -> None:  # pragma: no cover - exercised implicitly
    """
    Force pytest to place tmp_path/tmp_path_factory assets inside the repository.
    """
    base = _PYTEST_TMP_ROOT / "basetemp"
    base.mkdir(parents=True, exist_ok=True)
    config.option.basetemp = str(base)


# ---------------------------------------------------------------- media helpers

def noise_frame(seed: int, size: int = 32) -> Image.Image:
    """Deterministic random RGB frame; different seeds give unrelated dHashes."""
    arr = np.random.RandomState(seed).randint(0, 256, (size, size, 3), dtype=np.uint8)
    return Image.fromarray(arr)


def write_gif(path: Path, seeds: Sequence[int], *, size: int = 32, duration: int = 100) -> Path:
    frames = [noise_frame(s, size) for s in seeds]
    path.parent.mkdir(parents=True, exist_ok=True)
    frames[0].save(path, save_all=True, append_images=frames[1:], duration=duration, loop=0)
    return path


def make_record(
    path: Path,
    *,
    size: int = 10_000,
    mtime: float = 1_700_000_000.0,
    digest: Optional[str] = None,
    hashes: Sequence[int] = (0x0F0F0F0F0F0F0F0F,) * 5,
    profile: Sequence[float] = (0.25, 0.25, 0.125, 0.125, 0.1, 0.1, 0.05, 0.0),
    frames: int = 120,
    duration_ms: int = 6000,
    fps: float = 20.0,
    width: int = 1920,
    height: int = 1080,
) -> FileRecord:
    return FileRecord(
        path=Path(path),
        size=size,
        mtime=mtime,
        exact_digest=digest or hashlib.sha256(str(path).encode()).hexdigest(),
        structural_hash=tuple(hashes),
        color_profile=tuple(profile),
        metadata=MediaMetadata(frame_count=frames, duration_ms=duration_ms, fps=fps, width=width, height=height),
    )


class FakeSampler:
    """Frame sampler serving canned frames per path and counting calls."""

    def __init__(self, frames: Optional[Dict[str, List[Image.Image]]] = None, fail: Optional[Dict[str, Exception]] = None):
        self.frames = frames or {}
        self.fail = fail or {}
        self.calls: List[str] = []

    def sample(self, path: Path, count: int) -> List[Image.Image]:
        self.calls.append(str(path))
        if str(path) in self.fail:
            raise self.fail[str(path)]
        if str(path) not in self.frames:
            raise FrameExtractionError(path, "no canned frames")
        return list(self.frames[str(path)])


class FakeProber:
    def __init__(self, metadata: Optional[Dict[str, MediaMetadata]] = None):
        self.metadata = metadata or {}
        self.calls: List[str] = []

    def probe(self, path: Path) -> MediaMetadata:
        self.calls.append(str(path))
        return self.metadata[str(path)]


@pytest.fixture
def gif_factory(tmp_path: Path) -> Callable[..., Path]:
    def _make(name: str, seeds: Sequence[int] = (1, 2, 3, 4, 5), **kwargs) -> Path:
        return write_gif(tmp_path / name, seeds, **kwargs)
    return _make
