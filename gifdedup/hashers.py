#!/usr/bin/env python3
"""
gifdedup.hashers

Identity signals for files and frames:

- sha256_file:            whole-file digest (level 1)
- dhash_frame:            64-bit difference hash of one frame (levels 2 and 6)
- color_histogram:        normalised joint RGB histogram of one frame (level 6)
- hamming_distance / histogram_correlation: the matching distances
"""
from __future__ import annotations
import hashlib
from pathlib import Path
from typing import Iterable, Optional, Sequence, Tuple

import imagehash
import numpy as np
from PIL import Image


def sha256_file(path: Path, block_size: int = 1 << 20, *, expected_size: Optional[int] = None) -> Optional[str]:
    """
    Whole-file SHA-256 (the level-1 identity), or None when the file cannot be read.

    With expected_size (the size the fingerprint key was stat'ed with), a file
    that is rewritten while being hashed also yields None, so a digest is never
    stored under a (size, mtime) key it does not belong to.
    """
    h = hashlib.sha256()
    total = 0
    try:
        with open(path, "rb") as f:
            for block in iter(lambda: f.read(block_size), b""):
                h.update(block)
                total += len(block)
                if expected_size is not None and total > expected_size:
                    return None
    except OSError:
        return None
    if expected_size is not None and total != expected_size:
        return None
    return h.hexdigest()


def dhash_frame(frame: Image.Image, hash_size: int = 8) -> int:
    """Difference hash of a frame as an int (hash_size**2 bits, 64 by default)."""
    h = imagehash.dhash(frame, hash_size=hash_size)
    return int(str(h), 16)


def color_histogram(frame: Image.Image, bins: int = 16, size: int = 64) -> np.ndarray:
    """
    Joint RGB histogram with `bins` levels per channel (bins**3 buckets), summing to 1.

    The frame is downscaled first; the histogram only cares about the colour
    distribution, and a fixed pixel count keeps frames of any resolution comparable.
    """
    rgb = frame.convert("RGB")
    if rgb.size != (size, size):
        rgb = rgb.resize((size, size), Image.Resampling.BILINEAR)
    arr = np.asarray(rgb, dtype=np.uint32)
    q = (arr * bins) // 256
    idx = (q[..., 0] * bins + q[..., 1]) * bins + q[..., 2]
    hist = np.bincount(idx.ravel(), minlength=bins ** 3).astype(np.float64)
    total = hist.sum()
    if total > 0:
        hist /= total
    return hist


def mean_histogram(histograms: Sequence[np.ndarray]) -> Tuple[float, ...]:
    if not histograms:
        return ()
    return tuple(float(x) for x in np.mean(np.stack(histograms), axis=0))


def hamming_distance(a: int, b: int) -> int:
    x = int(a) ^ int(b)
    return x.bit_count()


def sequence_distances(a: Sequence[int], b: Sequence[int]) -> Tuple[int, ...]:
    """Per-frame Hamming distances over the common length of two hash sequences."""
    return tuple(hamming_distance(x, y) for x, y in zip(a, b))


def avg_signature_distance(a: Sequence[int], b: Sequence[int]) -> float:
    """Average bit distance between two signatures; inf when either is empty."""
    dists = sequence_distances(a, b)
    if not dists:
        return float("inf")
    return sum(dists) / len(dists)


def histogram_correlation(a: Iterable[float], b: Iterable[float]) -> float:
    """
    Pearson correlation of two histograms, in [-1, 1].

    Flat histograms have no variance; two identical flat histograms correlate
    perfectly, anything else against a flat one does not correlate at all.
    """
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape or va.size == 0:
        return 0.0
    sa, sb = va.std(), vb.std()
    if sa == 0 or sb == 0:
        return 1.0 if np.allclose(va, vb) else 0.0
    return float(np.corrcoef(va, vb)[0, 1])
