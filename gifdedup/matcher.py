#!/usr/bin/env python3
"""
gifdedup.matcher

Escalation Matcher: classifies one candidate pair by walking six levels,
cheapest first, and stopping at the first definitive verdict.

  1 exact            digests equal                      -> MATCH 100 (terminal)
  2 perceptual       identical structural hash sequence -> MATCH
  3 content          frames/duration/fps/resolution     -> any differ: NO_MATCH
  4 near-identical   size within the review band        -> MATCH, needs_review
  5 name/size        similarity + size tiers            -> MATCH, or a failed fallback
  6 deep             fresh frames, Hamming + colour     -> MATCH / NO_MATCH

Every pair that reaches level 6 asks the escalation trigger first. A failed
level 5 runs level 6 as the deciding analysis when admitted; when it is not,
the pair is NO_MATCH at level 5 with the lowest "not a duplicate" confidence
any executed level reported. A level 2, 4 or 5 MATCH (with confirm_matches)
runs it as a confirmation whose metrics ride along; the verdict stands.

Two ways in:
  compare(a, b)          one pair, trigger consulted immediately
  assess() / finish()    the scan's two passes: assess settles what levels
                         1-5 can and hands back DeepRequests, the trigger
                         allocates its budget over all of them, finish runs
                         level 6 where admitted

Definitive results are written to the cache under the pair's key lock; a
valid cached result answers without running any level. Degraded outcomes
(deep analysis failed or over budget) are returned but not persisted, so a
later run gets another chance at them.
"""
from __future__ import annotations
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple, Union

from .cache import ComparisonCache
from .config import EscalationThresholds, SamplingConfig
from .errors import ExternalToolError, ExtractionTimeoutError, FrameExtractionError
from .frames import AutoFrameSampler, FrameSampler
from .hashers import (
    avg_signature_distance,
    color_histogram,
    dhash_frame,
    hamming_distance,
    histogram_correlation,
)
from .models import (
    CandidateScore,
    ComparisonResult,
    FileRecord,
    FingerprintKey,
    PairClassification,
    PairKey,
    Verdict,
)
from .names import name_similarity, relative_size_difference
from .trigger import BUDGET_EXHAUSTED, EscalationTrigger, PriorSignals, TriggerDecision

logger = logging.getLogger(__name__)

LEVEL_EXACT = 1
LEVEL_PERCEPTUAL = 2
LEVEL_CONTENT = 3
LEVEL_NEAR_IDENTICAL = 4
LEVEL_NAME_SIZE = 5
LEVEL_DEEP = 6

COMPARISON_ERROR = "comparison_error"

Decision = Tuple[Verdict, int]


@dataclass(slots=True)
class _Escalation:
    """Working state of one pair while it climbs the levels."""
    a: FileRecord
    b: FileRecord
    pair: PairKey
    file_keys: Tuple[FingerprintKey, FingerprintKey]
    candidate_score: float
    candidate_fraction: float
    signals: PriorSignals
    metrics: Dict[str, Any] = field(default_factory=dict)
    # per level: confidence that the pair is NOT a duplicate
    doubts: Dict[int, int] = field(default_factory=dict)
    degraded_reason: Optional[str] = None
    level: int = LEVEL_EXACT


@dataclass(slots=True)
class DeepRequest:
    """
    A pair whose outcome waits on the trigger.

    `decision` at `level` is what stands when level 6 does not run: the
    MATCH being confirmed, or the level 5 fallback (its confidence is only
    final once the trigger's refusal has been counted).
    """
    state: _Escalation
    level: int
    decision: Decision
    confirming: bool

    @property
    def pair(self) -> PairKey:
        return self.state.pair

    @property
    def signals(self) -> PriorSignals:
        return self.state.signals

    @property
    def candidate_fraction(self) -> float:
        return self.state.candidate_fraction


Assessment = Union[PairClassification, DeepRequest]


class EscalationMatcher:
    def __init__(
        self,
        cache: Optional[ComparisonCache] = None,
        sampler: Optional[FrameSampler] = None,
        thresholds: Optional[EscalationThresholds] = None,
        sampling: Optional[SamplingConfig] = None,
        trigger: Optional[EscalationTrigger] = None,
        clock=time.time,
    ):
        self.thresholds = thresholds or EscalationThresholds()
        self.sampling = sampling or SamplingConfig()
        self.cache = cache if cache is not None else ComparisonCache(None).open()
        self.sampler = sampler or AutoFrameSampler(timeout=self.sampling.extract_timeout)
        self.trigger = trigger
        self.clock = clock
        self.generation = self.thresholds.generation()

        self._lock = threading.Lock()
        self.comparisons = 0
        self.cache_hits = 0
        self.deep_comparisons = 0
        # cache hits whose answer came from a level 6 run
        self.cached_deep = 0
        self.degraded = 0
        self.degraded_reasons: Dict[str, int] = {}
        self.levels: Dict[int, int] = {}

    # ---------------- entry points ----------------

    def compare(self, a: FileRecord, b: FileRecord, candidate: Optional[CandidateScore] = None) -> PairClassification:
        """Classify one pair, asking the trigger on the spot."""
        state = self._start(a, b, candidate)
        with self.cache.key_lock(state.pair):
            outcome = self._assess(state)
            if isinstance(outcome, PairClassification):
                if outcome.from_cache and self.trigger is not None and used_deep(outcome.result):
                    self.trigger.charge(1)
                return outcome
            decision = self.trigger.admit(outcome.pair, outcome.signals, outcome.candidate_fraction)
            return self._finish(outcome, decision)

    def assess(self, a: FileRecord, b: FileRecord, candidate: Optional[CandidateScore] = None) -> Assessment:
        """First pass: a settled PairClassification, or a DeepRequest for the trigger."""
        state = self._start(a, b, candidate)
        with self.cache.key_lock(state.pair):
            return self._assess(state)

    def finish(self, request: DeepRequest, decision: TriggerDecision) -> PairClassification:
        """Second pass: settle a DeepRequest with the trigger's decision for it."""
        with self.cache.key_lock(request.pair):
            return self._finish(request, decision)

    def failed(
        self, a: FileRecord, b: FileRecord, candidate: Optional[CandidateScore], error: BaseException
    ) -> PairClassification:
        """Degraded NO_MATCH for a pair whose comparison raised something unexpected."""
        state = self._start(a, b, candidate)
        state.metrics.update(low_confidence=True, error=f"{type(error).__name__}: {error}")
        state.degraded_reason = COMPARISON_ERROR
        return self._settle(state, state.level, (Verdict.NO_MATCH, self.thresholds.failure_confidence))

    # ---------------- escalation ----------------

    def _start(self, a: FileRecord, b: FileRecord, candidate: Optional[CandidateScore]) -> _Escalation:
        if not (a.is_complete and b.is_complete):
            raise ValueError(f"both files need complete fingerprints: {a.path}, {b.path}")
        pair = PairKey.of(a.path, b.path)
        if str(a.path) != pair.first:
            a, b = b, a
        return _Escalation(
            a=a,
            b=b,
            pair=pair,
            file_keys=(a.key, b.key),
            candidate_score=candidate.score if candidate else 0.0,
            candidate_fraction=candidate.fraction if candidate else 0.0,
            signals=PriorSignals(
                content_boost=float(self.thresholds.content_prior_boost),
                hash_bits=self.sampling.hash_size ** 2,
            ),
        )

    def _assess(self, state: _Escalation) -> Assessment:
        cached = self.cache.get_comparison(state.pair, state.file_keys, self.generation)
        if cached is not None:
            with self._lock:
                self.cache_hits += 1
                if used_deep(cached):
                    self.cached_deep += 1
            return PairClassification(cached, candidate_score=state.candidate_score, from_cache=True)

        for level, check in (
            (LEVEL_EXACT, self.level_exact),
            (LEVEL_PERCEPTUAL, self.level_perceptual),
            (LEVEL_CONTENT, self.level_content),
            (LEVEL_NEAR_IDENTICAL, self.level_near_identical),
            (LEVEL_NAME_SIZE, self.level_name_size),
        ):
            state.level = level
            decision = check(state)
            if decision is None:
                continue
            confirm = (
                decision[0] is Verdict.MATCH
                and level != LEVEL_EXACT
                and self.thresholds.confirm_matches
                and self.trigger is not None
            )
            if not confirm:
                return self._settle(state, level, decision)
            self._prior_color(state)
            return DeepRequest(state, level, decision, confirming=True)

        self._prior_color(state)
        if self.trigger is None:
            state.metrics["trigger"] = {"reason": "disabled"}
            return self._settle(state, LEVEL_NAME_SIZE, (Verdict.NO_MATCH, self._lowest_doubt(state)))
        return DeepRequest(state, LEVEL_NAME_SIZE, (Verdict.NO_MATCH, self._lowest_doubt(state)), confirming=False)

    def _settle(self, state: _Escalation, level: int, decision: Decision) -> PairClassification:
        verdict, confidence = decision
        result = ComparisonResult(
            pair=state.pair,
            level_reached=level,
            verdict=verdict,
            confidence=int(max(0, min(100, confidence))),
            metrics=state.metrics,
            computed_at=self.clock(),
            file_keys=state.file_keys,
            generation=self.generation,
        )
        if state.degraded_reason is None:
            self.cache.put_comparison(result)

        with self._lock:
            self.comparisons += 1
            self.levels[level] = self.levels.get(level, 0) + 1
            if state.degraded_reason is not None:
                self.degraded += 1
                self.degraded_reasons[state.degraded_reason] = self.degraded_reasons.get(state.degraded_reason, 0) + 1
        logger.debug(
            "%s vs %s -> %s at level %d (%d%%)", state.pair.first, state.pair.second, verdict.value, level, result.confidence
        )
        return PairClassification(
            result,
            candidate_score=state.candidate_score,
            degraded=state.degraded_reason is not None,
            degraded_reason=state.degraded_reason,
        )

    # ---------------- levels 1-5 ----------------

    def level_exact(self, state: _Escalation) -> Optional[Decision]:
        if state.a.exact_digest and state.a.exact_digest == state.b.exact_digest:
            state.metrics["digest_equal"] = True
            return Verdict.MATCH, 100
        state.metrics["digest_equal"] = False
        return None

    def level_perceptual(self, state: _Escalation) -> Optional[Decision]:
        ha, hb = state.a.structural_hash or (), state.b.structural_hash or ()
        if ha == hb:
            state.metrics["structural_identical"] = True
            state.signals.structural_distance = 0.0
            return Verdict.MATCH, self.thresholds.perceptual_confidence
        avg = avg_signature_distance(ha, hb)
        state.metrics["structural_identical"] = False
        state.metrics["structural_distance"] = round(avg, 3)
        state.signals.structural_distance = avg
        bits = state.signals.hash_bits
        similarity = max(0.0, 1.0 - avg / bits) * 100.0
        state.doubts[LEVEL_PERCEPTUAL] = int(round(100.0 - similarity))
        return None

    def level_content(self, state: _Escalation) -> Optional[Decision]:
        t = self.thresholds
        ma, mb = state.a.metadata, state.b.metadata
        diffs = []
        if abs(ma.frame_count - mb.frame_count) > t.frame_count_tolerance:
            diffs.append("frame_count")
        if abs(ma.duration_ms - mb.duration_ms) > t.duration_tolerance_ms:
            diffs.append("duration")
        if abs(ma.fps - mb.fps) > t.fps_tolerance:
            diffs.append("fps")
        if (ma.width, ma.height) != (mb.width, mb.height):
            diffs.append("resolution")
        if diffs:
            state.metrics["content_differs"] = diffs
            return Verdict.NO_MATCH, t.metadata_mismatch_confidence
        state.metrics["content_match"] = True
        state.signals.content_match = True
        state.doubts[LEVEL_CONTENT] = max(0, 100 - min(100, 50 + t.content_prior_boost))
        return None

    def level_near_identical(self, state: _Escalation) -> Optional[Decision]:
        diff = relative_size_difference(state.a.size, state.b.size)
        state.metrics["size_difference"] = round(diff, 4)
        state.signals.size_difference = diff
        if diff <= self.thresholds.near_identical_size_band:
            state.metrics["needs_review"] = True
            return Verdict.MATCH, self.thresholds.review_confidence
        return None

    def level_name_size(self, state: _Escalation) -> Optional[Decision]:
        sim = name_similarity(state.a.path, state.b.path)
        diff = state.signals.size_difference
        state.metrics["name_similarity"] = round(sim, 2)
        state.signals.name_similarity = sim
        for index, tier in enumerate(self.thresholds.name_size_tiers):
            if sim >= tier.min_similarity and diff < tier.max_size_diff:
                state.metrics["name_size_tier"] = index + 1
                return Verdict.MATCH, tier.confidence
        state.doubts[LEVEL_NAME_SIZE] = int(round(100.0 - sim))
        return None


    # ---------------- level 6 ----------------

    def _prior_color(self, state: _Escalation) -> None:
        if state.signals.color_correlation is None:
            corr = histogram_correlation(state.a.color_profile or (), state.b.color_profile or ())
            state.signals.color_correlation = corr
            state.metrics["profile_correlation"] = round(corr, 4)

    def _finish(self, request: DeepRequest, decision: TriggerDecision) -> PairClassification:
        state = request.state
        if request.confirming:
            if decision.admitted:
                self._confirm(state)
            return self._settle(state, request.level, request.decision)

        state.metrics["trigger"] = {"score": decision.score, "reason": decision.reason}
        if not decision.admitted:
            state.doubts[LEVEL_DEEP] = int(round(100.0 - decision.score))
            if decision.reason == BUDGET_EXHAUSTED:
                state.degraded_reason = BUDGET_EXHAUSTED
            return self._settle(state, LEVEL_NAME_SIZE, (Verdict.NO_MATCH, self._lowest_doubt(state)))

        state.level = LEVEL_DEEP
        try:
            verdict, confidence, deep = self.level_deep(state.a, state.b)
        except ExternalToolError as e:
            reason = "deep_timeout" if isinstance(e, ExtractionTimeoutError) else "deep_failure"
            logger.warning("Deep analysis failed for %s vs %s: %s", state.a.path, state.b.path, e)
            state.metrics.update(low_confidence=True, error=str(e))
            state.degraded_reason = reason
            return self._settle(state, LEVEL_DEEP, (Verdict.NO_MATCH, self.thresholds.failure_confidence))
        state.metrics["deep"] = deep
        return self._settle(state, LEVEL_DEEP, (verdict, confidence))

    def _confirm(self, state: _Escalation) -> None:
        """Run level 6 on an already matched pair and attach what it saw; the verdict stands."""
        try:
            verdict, confidence, deep = self.level_deep(state.a, state.b)
        except ExternalToolError as e:
            logger.info("Confirmation pass failed for %s vs %s: %s", state.a.path, state.b.path, e)
            state.metrics["confirmation"] = {"error": str(e)}
            return
        state.metrics["confirmation"] = dict(deep, verdict=verdict.value, confidence=confidence)

    def level_deep(self, a: FileRecord, b: FileRecord) -> Tuple[Verdict, int, Dict[str, Any]]:
        """
        Compare freshly sampled frames pairwise.

        A frame pair passes structurally when its dHash distance is below
        hamming_frame_threshold and passes colour when the histogram
        correlation exceeds color_correlation_threshold. MATCH needs both
        pass fractions at or above their minimums.
        """
        t, s = self.thresholds, self.sampling
        with self._lock:
            self.deep_comparisons += 1
        frames_a = self.sampler.sample(a.path, s.frames)
        frames_b = self.sampler.sample(b.path, s.frames)
        count = min(len(frames_a), len(frames_b))
        if count == 0:
            raise FrameExtractionError(a.path if not frames_a else b.path, "no frames to compare")

        structural_pass = color_pass = 0
        distances = []
        correlations = []
        for fa, fb in zip(frames_a, frames_b):
            d = hamming_distance(dhash_frame(fa, s.hash_size), dhash_frame(fb, s.hash_size))
            corr = histogram_correlation(
                color_histogram(fa, s.histogram_bins, s.histogram_size),
                color_histogram(fb, s.histogram_bins, s.histogram_size),
            )
            distances.append(d)
            correlations.append(corr)
            if d < t.hamming_frame_threshold:
                structural_pass += 1
            if corr > t.color_correlation_threshold:
                color_pass += 1

        sf = structural_pass / count
        cf = color_pass / count
        metrics = {
            "frames_compared": count,
            "structural_pass_fraction": round(sf, 4),
            "color_pass_fraction": round(cf, 4),
            "mean_hamming": round(sum(distances) / count, 3),
            "mean_correlation": round(sum(correlations) / count, 4),
        }
        if sf >= t.structural_pass_fraction and cf >= t.color_pass_fraction:
            return Verdict.MATCH, int(round(100 * min(sf, cf))), metrics
        return Verdict.NO_MATCH, int(round(100 * max(1.0 - sf, 1.0 - cf))), metrics

    @staticmethod
    def _lowest_doubt(state: _Escalation) -> int:
        return min(state.doubts.values()) if state.doubts else 0

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "comparisons": self.comparisons,
                "cache_hits": self.cache_hits,
                "deep_comparisons": self.deep_comparisons,
                "cached_deep": self.cached_deep,
                "degraded": self.degraded,
                "degraded_reasons": dict(self.degraded_reasons),
                "levels": {str(k): v for k, v in sorted(self.levels.items())},
            }


def used_deep(result: ComparisonResult) -> bool:
    """True when a stored result paid for a level 6 run (deciding or confirming)."""
    return result.level_reached == LEVEL_DEEP or "confirmation" in result.metrics
