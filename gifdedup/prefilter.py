#!/usr/bin/env python3
"""
gifdedup.prefilter

Candidate Generator: scores every pair of analyzable fingerprints with cheap,
tiered signals and keeps the pairs worth escalating.

Factors (points from PreFilterWeights):
  prefix       shared filename prefix length, by tier
  size         relative size difference, by tier
  frames       equal frame counts
  duration     durations within tolerance
  resolution   equal width x height
  phash        identical structural hash sequence, or most frames close
  timestamp    mtime proximity, by tier
  directory    same parent directory

A pair is a candidate when score >= threshold_fraction * max_score.
"""
from __future__ import annotations
import itertools
import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .config import PreFilterWeights
from .hashers import sequence_distances
from .models import CandidateScore, FileRecord, PairKey
from .names import common_prefix_length, relative_size_difference

logger = logging.getLogger(__name__)


def _tier_at_least(value: float, tiers: Sequence[Tuple[float, float]]) -> float:
    """Points of the first tier whose bound `value` reaches (tiers are descending)."""
    for bound, points in tiers:
        if value >= bound:
            return float(points)
    return 0.0


def _tier_at_most(value: float, tiers: Sequence[Tuple[float, float]]) -> float:
    """Points of the first tier whose bound `value` stays within (tiers are ascending)."""
    for bound, points in tiers:
        if value <= bound:
            return float(points)
    return 0.0


class CandidateGenerator:
    def __init__(self, weights: Optional[PreFilterWeights] = None):
        self.weights = weights or PreFilterWeights()
        self.scored = 0
        self.accepted = 0

    def _phash_points(self, a: FileRecord, b: FileRecord) -> float:
        w = self.weights
        ha, hb = a.structural_hash or (), b.structural_hash or ()
        if not ha or not hb:
            return 0.0
        if ha == hb:
            return w.phash_identical
        dists = sequence_distances(ha, hb)
        close = sum(1 for d in dists if d <= w.phash_similar_distance)
        if dists and close * 2 > len(dists):
            return w.phash_similar
        return 0.0

    def score_pair(self, a: FileRecord, b: FileRecord) -> CandidateScore:
        w = self.weights
        factors: Dict[str, float] = {}

        factors["prefix"] = _tier_at_least(common_prefix_length(a.path, b.path), w.prefix_tiers)
        factors["size"] = _tier_at_most(relative_size_difference(a.size, b.size), w.size_tiers)

        ma, mb = a.metadata, b.metadata
        if ma is not None and mb is not None:
            if ma.frame_count == mb.frame_count:
                factors["frames"] = w.frame_count_match
            if abs(ma.duration_ms - mb.duration_ms) <= w.duration_tolerance_ms:
                factors["duration"] = w.duration_match
            if (ma.width, ma.height) == (mb.width, mb.height):
                factors["resolution"] = w.resolution_match

        factors["phash"] = self._phash_points(a, b)
        factors["timestamp"] = _tier_at_most(abs(a.mtime - b.mtime), w.timestamp_tiers)
        if a.directory == b.directory:
            factors["directory"] = w.same_directory

        factors = {k: v for k, v in factors.items() if v}
        return CandidateScore(
            pair=PairKey.of(a.path, b.path),
            score=sum(factors.values()),
            max_score=w.max_score,
            factors=factors,
        )

    def generate(self, records: Iterable[FileRecord]) -> List[CandidateScore]:
        """Candidate pairs among the analyzable records, highest score first."""
        usable = sorted((r for r in records if r.analyzable and r.is_complete), key=lambda r: str(r.path))
        threshold = self.weights.threshold_score
        out: List[CandidateScore] = []
        for a, b in itertools.combinations(usable, 2):
            if a.path == b.path:
                continue
            cand = self.score_pair(a, b)
            self.scored += 1
            if cand.score >= threshold:
                out.append(cand)
        self.accepted += len(out)
        out.sort(key=lambda c: (-c.score, c.pair))
        logger.info(
            "Pre-filter kept %d of %d pairs (threshold %.1f of %.1f points)",
            len(out), len(usable) * (len(usable) - 1) // 2, threshold, self.weights.max_score,
        )
        return out
