#!/usr/bin/env python3
"""
gifdedup.extractor

Fingerprint Extractor: path -> complete FileRecord.

  exact_digest     SHA-256 of the whole file
  structural_hash  one dHash per evenly spaced sampled frame
  color_profile    mean joint RGB histogram of the same frames
  metadata         from the Media Prober

A valid cached fingerprint short-circuits everything, including the
external tools. A cached digest for the same (path, size, mtime), e.g. one
migrated from a legacy cache, spares the full-file read.
"""
from __future__ import annotations
import dataclasses
import logging
from pathlib import Path
from typing import Optional

from .cache import ComparisonCache
from .config import SamplingConfig
from .errors import ExternalToolError, UnanalyzableFileError
from .frames import AutoFrameSampler, FrameSampler
from .hashers import color_histogram, dhash_frame, mean_histogram, sha256_file
from .models import FileRecord
from .probe import AutoProber, MediaProber

logger = logging.getLogger(__name__)


def stat_record(path: Path) -> FileRecord:
    """Bare record (path, size, mtime); raises UnanalyzableFileError when the file cannot be stat'ed."""
    try:
        st = path.stat()
    except OSError as e:
        raise UnanalyzableFileError(path, f"cannot stat: {e}")
    if not path.is_file():
        raise UnanalyzableFileError(path, "not a regular file")
    return FileRecord(path=path, size=int(st.st_size), mtime=float(st.st_mtime))


class FingerprintExtractor:
    def __init__(
        self,
        cache: Optional[ComparisonCache] = None,
        prober: Optional[MediaProber] = None,
        sampler: Optional[FrameSampler] = None,
        sampling: Optional[SamplingConfig] = None,
    ):
        self.sampling = sampling or SamplingConfig()
        self.cache = cache if cache is not None else ComparisonCache(None).open()
        self.prober = prober or AutoProber(timeout=self.sampling.probe_timeout)
        self.sampler = sampler or AutoFrameSampler(timeout=self.sampling.extract_timeout)

    def fingerprint(self, path: Path) -> FileRecord:
        """
        Return a complete fingerprint for `path`.

        Raises UnanalyzableFileError for unreadable files, probe failures,
        zero-duration media and files without a single decodable frame.
        """
        path = Path(path)
        base = stat_record(path)

        with self.cache.key_lock(path):
            cached = self.cache.get_fingerprint(path, base.size, base.mtime)
            if cached is not None:
                logger.debug("Fingerprint cache hit: %s", path)
                return cached

            digest = self.cache.get_digest(path, base.size, base.mtime)
            if digest is None:
                digest = sha256_file(path, expected_size=base.size)
                if digest is None:
                    raise UnanalyzableFileError(path, "unreadable or changed while reading")

            try:
                metadata = self.prober.probe(path)
            except ExternalToolError as e:
                raise UnanalyzableFileError(path, f"probe failed: {e.message}")
            if metadata.duration_ms <= 0:
                raise UnanalyzableFileError(path, "zero duration")

            try:
                frames = self.sampler.sample(path, self.sampling.frames)
            except ExternalToolError as e:
                raise UnanalyzableFileError(path, f"frame extraction failed: {e.message}")
            if not frames:
                raise UnanalyzableFileError(path, "no usable frames")

            structural = tuple(dhash_frame(f, hash_size=self.sampling.hash_size) for f in frames)
            profile = mean_histogram(
                [color_histogram(f, bins=self.sampling.histogram_bins, size=self.sampling.histogram_size) for f in frames]
            )
            record = dataclasses.replace(
                base,
                exact_digest=digest,
                structural_hash=structural,
                color_profile=profile,
                metadata=metadata,
            )
            self.cache.put_fingerprint(record)
            logger.debug(
                "Fingerprinted %s: %d frames sampled, %dx%d, %d ms",
                path, len(frames), metadata.width, metadata.height, metadata.duration_ms,
            )
            return record
