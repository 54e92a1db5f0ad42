#!/usr/bin/env python3
from __future__ import annotations
import dataclasses
import enum
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union


@dataclasses.dataclass(frozen=True)
class MediaMetadata:
    frame_count: int
    duration_ms: int
    fps: float
    width: int
    height: int

    @property
    def resolution_area(self) -> int:
        return self.width * self.height


@dataclasses.dataclass(frozen=True)
class FingerprintKey:
    """Validity stamp of a fingerprint: the file's size and mtime when it was taken."""
    size: int
    mtime: float


@dataclasses.dataclass(frozen=True)
class FileRecord:
    path: Path
    size: int
    mtime: float
    exact_digest: Optional[str] = None
    # one 64-bit dHash per sampled frame, in temporal order
    structural_hash: Optional[Tuple[int, ...]] = None
    # 4096-bucket joint RGB histogram averaged over the sampled frames
    color_profile: Optional[Tuple[float, ...]] = None
    metadata: Optional[MediaMetadata] = None
    analyzable: bool = True
    error: Optional[str] = None

    @property
    def key(self) -> FingerprintKey:
        return FingerprintKey(int(self.size), float(self.mtime))

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def directory(self) -> Path:
        return self.path.parent

    @property
    def is_complete(self) -> bool:
        return (
            self.analyzable
            and self.exact_digest is not None
            and bool(self.structural_hash)
            and self.color_profile is not None
            and self.metadata is not None
        )


@dataclasses.dataclass(frozen=True, order=True)
class PairKey:
    """Order-independent identity of two files: the smaller path always comes first."""
    first: str
    second: str

    @classmethod
    def of(cls, a: Union[str, Path], b: Union[str, Path]) -> "PairKey":
        sa, sb = str(a), str(b)
        if sa == sb:
            raise ValueError(f"a pair needs two distinct files, got {sa!r} twice")
        lo, hi = sorted((sa, sb))
        return cls(lo, hi)

    def as_list(self) -> List[str]:
        return [self.first, self.second]


class Verdict(str, enum.Enum):
    MATCH = "MATCH"
    NO_MATCH = "NO_MATCH"
    INCONCLUSIVE = "INCONCLUSIVE"


@dataclasses.dataclass(frozen=True)
class ComparisonResult:
    pair: PairKey
    level_reached: int
    verdict: Verdict
    confidence: int
    metrics: Dict[str, Any]
    computed_at: float
    file_keys: Tuple[FingerprintKey, FingerprintKey]
    generation: str

    @property
    def is_match(self) -> bool:
        return self.verdict is Verdict.MATCH


@dataclass(slots=True)
class CandidateScore:
    pair: PairKey
    score: float
    max_score: float
    factors: Dict[str, float] = field(default_factory=dict)

    @property
    def fraction(self) -> float:
        if self.max_score <= 0:
            return 0.0
        return self.score / self.max_score


@dataclass(slots=True)
class PairClassification:
    result: ComparisonResult
    candidate_score: float = 0.0
    from_cache: bool = False
    degraded: bool = False
    degraded_reason: Optional[str] = None

    @property
    def pair(self) -> PairKey:
        return self.result.pair

    def to_payload(self) -> Dict[str, Any]:
        r = self.result
        payload: Dict[str, Any] = {
            "files": r.pair.as_list(),
            "verdict": r.verdict.value,
            "level": r.level_reached,
            "confidence": r.confidence,
            "metrics": dict(r.metrics),
            "candidate_score": round(self.candidate_score, 4),
            "from_cache": self.from_cache,
        }
        if self.degraded:
            payload["degraded"] = self.degraded_reason or True
        return payload


@dataclass(slots=True)
class DuplicateGroup:
    group_id: str
    members: List[Path]
    pairs: List[PairClassification] = field(default_factory=list)

    @property
    def duplicate_count(self) -> int:
        return max(0, len(self.members) - 1)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "members": [str(p) for p in self.members],
            "pairs": [p.to_payload() for p in self.pairs],
        }


@dataclass(slots=True)
class ExcludedFile:
    path: Path
    reason: str


@dataclass(slots=True)
class ScanReport:
    groups: List[DuplicateGroup] = field(default_factory=list)
    pairs: List[PairClassification] = field(default_factory=list)
    excluded: List[ExcludedFile] = field(default_factory=list)
    degraded: int = 0
    degraded_reasons: Dict[str, int] = field(default_factory=dict)
    stats: Dict[str, Any] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def matches(self) -> List[PairClassification]:
        return [p for p in self.pairs if p.result.is_match]

    def group_signature(self) -> List[List[str]]:
        """Stable, comparable view of the grouping (used to compare runs)."""
        return sorted(sorted(str(m) for m in g.members) for g in self.groups)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "summary": {
                "groups": len(self.groups),
                "duplicates": sum(g.duplicate_count for g in self.groups),
                "pairs_classified": len(self.pairs),
                "excluded": len(self.excluded),
                "degraded": self.degraded,
                "degraded_reasons": dict(self.degraded_reasons),
                "cancelled": self.cancelled,
            },
            "stats": dict(self.stats),
            "groups": {g.group_id: g.to_payload() for g in self.groups},
            "excluded": [{"path": str(e.path), "reason": e.reason} for e in self.excluded],
        }
