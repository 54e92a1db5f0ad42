#!/usr/bin/env python3
"""
gifdedup.trigger

Escalation-trigger model: decides whether a pair that the cheap levels could
not settle is worth a Level 6 deep frame analysis.

score = prior_weight     * prior evidence     (levels 2-5)
      + candidate_weight * candidate fraction (pre-filter)
      + size_weight      * collection factor  (1.0 up to large_collection_size, then L/N)

each component on 0-100. Level 6 runs when score >= confidence_threshold and
the per-scan deep budget max(min_deep_budget, max_deep_fraction * N) still
has room.

A scan decides all of its Level 6 requests in one batch (allocate), best
score first, after charging the deep results it already holds in the cache.
Repeated scans of an unchanged population therefore spend the budget on the
same pairs.
"""
from __future__ import annotations
import logging
import math
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional, Tuple

from .cache import DecisionLog
from .config import TriggerModelConfig
from .models import PairKey

logger = logging.getLogger(__name__)

ADMITTED = "admitted"
BELOW_THRESHOLD = "below_threshold"
BUDGET_EXHAUSTED = "budget_exhausted"


@dataclass(slots=True)
class PriorSignals:
    """Evidence gathered by levels 2-5 for one pair."""
    content_match: bool = False
    content_boost: float = 0.0
    # average per-frame Hamming distance of the cached structural hashes
    structural_distance: Optional[float] = None
    hash_bits: int = 64
    name_similarity: float = 0.0
    color_correlation: Optional[float] = None
    size_difference: float = 1.0
    levels: Dict[int, str] = field(default_factory=dict)

    def prior_score(self) -> float:
        parts = []
        if self.structural_distance is not None and math.isfinite(self.structural_distance):
            parts.append((0.4, max(0.0, 1.0 - self.structural_distance / max(1, self.hash_bits // 2)) * 100.0))
        if self.color_correlation is not None:
            parts.append((0.3, max(0.0, self.color_correlation) * 100.0))
        parts.append((0.3, max(0.0, min(100.0, self.name_similarity))))
        total_w = sum(w for w, _ in parts)
        base = sum(w * v for w, v in parts) / total_w if total_w else 0.0
        if self.content_match:
            base += self.content_boost
        return max(0.0, min(100.0, base))


@dataclass(frozen=True)
class TriggerDecision:
    score: float
    admitted: bool
    reason: str
    components: Dict[str, float]


class EscalationTrigger:
    def __init__(
        self,
        config: Optional[TriggerModelConfig] = None,
        population_size: int = 0,
        decision_log: Optional[DecisionLog] = None,
    ):
        self.config = config or TriggerModelConfig()
        self.population_size = max(0, int(population_size))
        self.decision_log = decision_log
        self._lock = threading.Lock()
        self.used = 0
        # cached deep results counted into `used`
        self.charged = 0
        self.refused: Dict[str, int] = {BELOW_THRESHOLD: 0, BUDGET_EXHAUSTED: 0}

    @property
    def budget(self) -> int:
        c = self.config
        return max(c.min_deep_budget, int(math.ceil(c.max_deep_fraction * self.population_size)))

    def collection_factor(self) -> float:
        n, large = self.population_size, self.config.large_collection_size
        if n <= large:
            return 1.0
        return large / n

    def evaluate(self, signals: PriorSignals, candidate_fraction: float) -> Dict[str, float]:
        """Component scores and the weighted total, all on 0-100."""
        c = self.config
        prior = signals.prior_score()
        cand = max(0.0, min(1.0, candidate_fraction)) * 100.0
        size = self.collection_factor() * 100.0
        total = c.prior_weight * prior + c.candidate_weight * cand + c.size_weight * size
        return {"prior": round(prior, 2), "candidate": round(cand, 2), "size": round(size, 2), "score": round(total, 2)}

    def admit(self, pair: PairKey, signals: PriorSignals, candidate_fraction: float) -> TriggerDecision:
        """Decide one pair now; the budget goes to whoever asks first."""
        return self._decide(pair, signals, candidate_fraction, self.evaluate(signals, candidate_fraction))

    def allocate(self, requests: Iterable[Tuple[PairKey, PriorSignals, float]]) -> Dict[PairKey, TriggerDecision]:
        """
        Decide a whole batch of (pair, signals, candidate_fraction) at once.

        Pairs are considered in descending score order, ties broken by pair,
        so the budget lands on the same pairs however the requests arrived.
        """
        ranked = sorted(
            ((self.evaluate(signals, fraction), pair, signals, fraction) for pair, signals, fraction in requests),
            key=lambda r: (-r[0]["score"], r[1]),
        )
        return {pair: self._decide(pair, signals, fraction, components) for components, pair, signals, fraction in ranked}

    def charge(self, runs: int) -> None:
        """Count Level 6 runs answered from the cache against this scan's budget."""
        if runs <= 0:
            return
        with self._lock:
            self.used += runs
            self.charged += runs
        logger.debug("Charged %d cached deep results against the budget (%d)", runs, self.budget)

    def _decide(
        self, pair: PairKey, signals: PriorSignals, candidate_fraction: float, components: Dict[str, float]
    ) -> TriggerDecision:
        score = components["score"]
        with self._lock:
            if score < self.config.confidence_threshold:
                reason = BELOW_THRESHOLD
            elif self.used >= self.budget:
                reason = BUDGET_EXHAUSTED
            else:
                reason = ADMITTED
                self.used += 1
            if reason != ADMITTED:
                self.refused[reason] += 1
        decision = TriggerDecision(score=score, admitted=reason == ADMITTED, reason=reason, components=components)
        if reason == BUDGET_EXHAUSTED:
            logger.warning("Deep-analysis budget (%d) exhausted; %s vs %s not escalated", self.budget, pair.first, pair.second)
        else:
            logger.debug("Trigger %s for %s vs %s (score %.1f)", reason, pair.first, pair.second, score)
        self._record(pair, signals, candidate_fraction, decision)
        return decision

    def _record(self, pair: PairKey, signals: PriorSignals, candidate_fraction: float, decision: TriggerDecision) -> None:
        if self.decision_log is None:
            return
        payload: Dict[str, Any] = {
            "ts": time.time(),
            "pair": pair.as_list(),
            "inputs": {
                "content_match": signals.content_match,
                "structural_distance": signals.structural_distance,
                "name_similarity": round(signals.name_similarity, 2),
                "color_correlation": signals.color_correlation,
                "size_difference": round(signals.size_difference, 4),
                "candidate_fraction": round(candidate_fraction, 4),
                "population": self.population_size,
            },
            "components": decision.components,
            "threshold": self.config.confidence_threshold,
            "decision": decision.reason,
            "budget": {"used": self.used, "limit": self.budget},
        }
        self.decision_log.record(payload)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "deep_admitted": self.used - self.charged,
                "deep_cached": self.charged,
                "deep_budget": self.budget,
                "refused": dict(self.refused),
            }
