import hashlib
import os
from pathlib import Path

import numpy as np
import pytest
from PIL import Image

from conftest import noise_frame
from gifdedup.hashers import (
    avg_signature_distance,
    color_histogram,
    dhash_frame,
    hamming_distance,
    histogram_correlation,
    mean_histogram,
    sequence_distances,
    sha256_file,
)


def test_sha256_block_size(tmp_path: Path):
    p = tmp_path / "f.bin"
    data = os.urandom(2 * 1024 * 1024)
    p.write_bytes(data)
    assert sha256_file(p, 1 << 16) == sha256_file(p, 1 << 20) == hashlib.sha256(data).hexdigest()


def test_sha256_missing_and_empty(tmp_path: Path):
    assert sha256_file(tmp_path / "nope.gif") is None
    empty = tmp_path / "empty.gif"
    empty.write_bytes(b"")
    assert sha256_file(empty) == hashlib.sha256(b"").hexdigest()


def test_sha256_rejects_size_change(tmp_path: Path):
    p = tmp_path / "grew.gif"
    p.write_bytes(b"x" * 5000)
    assert sha256_file(p, 1024, expected_size=5000) == hashlib.sha256(b"x" * 5000).hexdigest()
    # stat'ed at one size, read at another: the digest would be keyed wrongly
    assert sha256_file(p, 1024, expected_size=4000) is None
    assert sha256_file(p, 1024, expected_size=6000) is None


def test_dhash_is_64_bit_and_stable():
    frame = noise_frame(7)
    h = dhash_frame(frame)
    assert 0 <= h < 2 ** 64
    assert dhash_frame(frame.copy()) == h
    assert hamming_distance(h, dhash_frame(noise_frame(8))) > 5


def test_hamming_and_sequences():
    assert hamming_distance(0b1011, 0b0001) == 2
    assert sequence_distances((1, 2, 3), (1, 3)) == (0, 1)
    assert avg_signature_distance((0, 0), (1, 3)) == 1.5
    assert avg_signature_distance((), (1,)) == float("inf")


def test_color_histogram_shape_and_normalisation():
    hist = color_histogram(noise_frame(3, size=48))
    assert hist.shape == (4096,)
    assert abs(hist.sum() - 1.0) < 1e-9

    red = Image.new("RGB", (10, 10), (255, 0, 0))
    h = color_histogram(red)
    assert h.max() == 1.0
    # red quantises to bucket (15, 0, 0)
    assert int(np.argmax(h)) == 15 * 16 * 16


def test_histogram_correlation():
    # 64x64 frames skip the resize, so the buckets hold raw uniform noise
    a = color_histogram(noise_frame(1, size=64))
    b = color_histogram(noise_frame(2, size=64))
    assert histogram_correlation(a, a) == pytest.approx(1.0)
    assert histogram_correlation(a, b) < 0.85
    flat = [0.25] * 4
    assert histogram_correlation(flat, flat) == 1.0
    assert histogram_correlation(flat, [0.5, 0.5, 0.0, 0.0]) == 0.0
    assert histogram_correlation([1.0], [1.0, 2.0]) == 0.0


def test_mean_histogram():
    assert mean_histogram([]) == ()
    out = mean_histogram([np.array([1.0, 0.0]), np.array([0.0, 1.0])])
    assert out == (0.5, 0.5)
