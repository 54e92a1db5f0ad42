#!/usr/bin/env python3
"""
gifdedup.config

Injectable tuning for every stage of the engine. The numeric defaults are
empirically chosen starting points; every value can be overridden from a YAML
file. Invalid values raise ConfigurationError, they are never clamped.

Example config.yml:
---
workers: 8
prefilter:
  threshold_fraction: 0.2
  same_directory: 10
thresholds:
  structural_pass_fraction: 0.8
trigger:
  confidence_threshold: 55
cache:
  path: ~/.cache/gifdedup/cache.json
"""
from __future__ import annotations

import hashlib
import os
import sys
from pathlib import Path
from typing import List, Optional, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import ConfigurationError


DEFAULT_PATTERNS = ["*.gif", "*.webp", "*.apng", "*.png", "*.mp4", "*.webm", "*.mkv", "*.mov"]
# which member of a duplicate group is listed first (the copy to keep)
KEEP_CRITERIA = ("resolution", "longer", "frames", "larger", "smaller", "newer", "older", "shallower", "deeper")
DEFAULT_KEEP_ORDER = ["resolution", "longer", "frames", "larger", "older"]


class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid", validate_assignment=True)


class PreFilterWeights(_Strict):
    """Point values for the pairwise candidate score."""

    # (minimum shared prefix length, points), longest first
    prefix_tiers: List[Tuple[int, float]] = [(10, 40.0), (6, 25.0), (3, 10.0)]
    # (maximum relative size difference, points), tightest first
    size_tiers: List[Tuple[float, float]] = [(0.01, 35.0), (0.05, 25.0), (0.15, 15.0), (0.30, 5.0)]
    frame_count_match: float = Field(8.0, ge=0)
    duration_match: float = Field(8.0, ge=0)
    duration_tolerance_ms: int = Field(100, ge=0)
    resolution_match: float = Field(6.0, ge=0)
    phash_identical: float = Field(50.0, ge=0)
    phash_similar: float = Field(25.0, ge=0)
    # per-frame Hamming distance under which a frame counts as close; most frames close = "similar"
    phash_similar_distance: float = Field(10.0, ge=0, le=64)
    # (maximum mtime gap in seconds, points), closest first
    timestamp_tiers: List[Tuple[float, float]] = [(60.0, 20.0), (3600.0, 10.0), (86400.0, 5.0)]
    same_directory: float = Field(5.0, ge=0)
    threshold_fraction: float = Field(0.15, gt=0.0, le=1.0)

    @field_validator("prefix_tiers")
    @classmethod
    def _prefix_descending(cls, v: List[Tuple[int, float]]) -> List[Tuple[int, float]]:
        _check_tiers(v, descending=True, what="prefix_tiers")
        return v

    @field_validator("size_tiers", "timestamp_tiers")
    @classmethod
    def _bands_ascending(cls, v: List[Tuple[float, float]]) -> List[Tuple[float, float]]:
        _check_tiers(v, descending=False, what="tier")
        return v

    @property
    def max_score(self) -> float:
        def _top(tiers) -> float:
            return max((pts for _, pts in tiers), default=0.0)

        return (
            _top(self.prefix_tiers)
            + _top(self.size_tiers)
            + self.frame_count_match
            + self.duration_match
            + self.resolution_match
            + max(self.phash_identical, self.phash_similar)
            + _top(self.timestamp_tiers)
            + self.same_directory
        )

    @property
    def threshold_score(self) -> float:
        return self.threshold_fraction * self.max_score


class NameSizeTier(_Strict):
    min_similarity: float = Field(ge=0, le=100)
    max_size_diff: float = Field(gt=0, le=1)
    confidence: int = Field(ge=0, le=100)


class EscalationThresholds(_Strict):
    perceptual_confidence: int = Field(95, ge=0, le=100)
    # level 3: tolerances for "identical content fingerprint"
    frame_count_tolerance: int = Field(0, ge=0)
    duration_tolerance_ms: int = Field(50, ge=0)
    fps_tolerance: float = Field(0.05, ge=0)
    content_prior_boost: int = Field(20, ge=0, le=100)
    metadata_mismatch_confidence: int = Field(90, ge=0, le=100)
    # level 4: |size_a - size_b| / max(size) must stay inside this band
    near_identical_size_band: float = Field(0.02, ge=0, le=1)
    review_confidence: int = Field(75, ge=0, le=100)
    # level 5, checked in order
    name_size_tiers: List[NameSizeTier] = [
        NameSizeTier(min_similarity=75, max_size_diff=0.15, confidence=95),
        NameSizeTier(min_similarity=60, max_size_diff=0.20, confidence=80),
        NameSizeTier(min_similarity=50, max_size_diff=0.10, confidence=70),
    ]
    # level 6
    hamming_frame_threshold: int = Field(5, ge=1, le=64)
    color_correlation_threshold: float = Field(0.85, ge=0, le=1)
    structural_pass_fraction: float = Field(0.80, gt=0, le=1)
    color_pass_fraction: float = Field(0.85, gt=0, le=1)
    failure_confidence: int = Field(10, ge=0, le=100)
    # run level 6 on level 2, 4 and 5 matches too, whenever the trigger admits them
    confirm_matches: bool = True

    def generation(self) -> str:
        """Short digest of the thresholds; cached results from other generations are superseded."""
        return hashlib.sha1(self.model_dump_json().encode("utf-8")).hexdigest()[:12]


class TriggerModelConfig(_Strict):
    confidence_threshold: float = Field(60.0, ge=0, le=100)
    large_collection_size: int = Field(200, ge=1)
    max_deep_fraction: float = Field(0.10, gt=0, le=1)
    min_deep_budget: int = Field(50, ge=0)
    prior_weight: float = Field(0.45, ge=0, le=1)
    candidate_weight: float = Field(0.25, ge=0, le=1)
    size_weight: float = Field(0.30, ge=0, le=1)

    @model_validator(mode="after")
    def _weights_sum_to_one(self) -> "TriggerModelConfig":
        total = self.prior_weight + self.candidate_weight + self.size_weight
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"trigger weights must sum to 1.0, got {total:.4f}")
        return self


class SamplingConfig(_Strict):
    frames: int = Field(5, ge=1, le=100)
    hash_size: int = Field(8, ge=2, le=16)
    histogram_bins: int = Field(16, ge=2, le=64)
    # frames are downscaled to this square before histogramming
    histogram_size: int = Field(64, ge=8)
    probe_timeout: float = Field(30.0, gt=0)
    extract_timeout: float = Field(60.0, gt=0)


class CacheConfig(_Strict):
    path: Optional[Path] = None
    autosave_every: int = Field(200, ge=1)
    max_age_days: Optional[float] = Field(90.0, gt=0)


class DedupConfig(_Strict):
    workers: Optional[int] = Field(None, ge=1)
    patterns: List[str] = list(DEFAULT_PATTERNS)
    max_depth: Optional[int] = Field(None, ge=0)
    decision_log: Optional[Path] = None
    prefilter: PreFilterWeights = PreFilterWeights()
    thresholds: EscalationThresholds = EscalationThresholds()
    trigger: TriggerModelConfig = TriggerModelConfig()
    sampling: SamplingConfig = SamplingConfig()
    cache: CacheConfig = CacheConfig()
    keep_order: List[str] = list(DEFAULT_KEEP_ORDER)

    @field_validator("keep_order")
    @classmethod
    def _known_keep_criteria(cls, v: List[str]) -> List[str]:
        unknown = [k for k in v if k not in KEEP_CRITERIA]
        if unknown:
            raise ValueError(f"unknown keep criteria {unknown}; choose from {', '.join(KEEP_CRITERIA)}")
        if len(set(v)) != len(v):
            raise ValueError(f"keep criteria must not repeat: {v}")
        return v

    @property
    def worker_count(self) -> int:
        return self.workers or os.cpu_count() or 1


def _check_tiers(tiers, *, descending: bool, what: str) -> None:
    if not tiers:
        raise ValueError(f"{what} must contain at least one tier")
    bounds = [b for b, _ in tiers]
    for bound, points in tiers:
        if bound < 0 or points < 0:
            raise ValueError(f"{what} entries must be non-negative, got ({bound}, {points})")
    ordered = sorted(bounds, reverse=descending)
    if bounds != ordered or len(set(bounds)) != len(bounds):
        direction = "descending" if descending else "ascending"
        raise ValueError(f"{what} bounds must be strictly {direction}: {bounds}")


def default_config_path() -> Path:
    r"""
    Platform default location of config.yml.

    - Linux/WSL/Termux: $XDG_CONFIG_HOME/gifdedup/config.yml or ~/.config/gifdedup/config.yml
    - Windows: %APPDATA%\gifdedup\config.yml
    """
    if sys.platform == "win32":
        appdata = os.environ.get("APPDATA")
        if not appdata:
            return Path.home() / "AppData" / "Roaming" / "gifdedup" / "config.yml"
        return Path(appdata) / "gifdedup" / "config.yml"
    config_home = os.environ.get("XDG_CONFIG_HOME")
    if config_home:
        return Path(config_home) / "gifdedup" / "config.yml"
    return Path.home() / ".config" / "gifdedup" / "config.yml"


def default_cache_path() -> Path:
    if sys.platform == "win32":
        base = os.environ.get("LOCALAPPDATA") or str(Path.home() / "AppData" / "Local")
        return Path(base) / "gifdedup" / "cache.json"
    cache_home = os.environ.get("XDG_CACHE_HOME")
    if cache_home:
        return Path(cache_home) / "gifdedup" / "cache.json"
    return Path.home() / ".cache" / "gifdedup" / "cache.json"


def load_config(config_path: Optional[Path] = None) -> DedupConfig:
    """
    Load and validate the configuration.

    A missing file at the default location yields the defaults; an explicitly
    requested file that is missing, unparsable or invalid raises ConfigurationError.
    """
    explicit = config_path is not None
    path = Path(config_path).expanduser() if config_path else default_config_path()

    if not path.exists():
        if explicit:
            raise ConfigurationError(f"Configuration file not found at: {path}")
        return DedupConfig()

    with open(path, "r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Error parsing YAML file at {path}: {e}") from e

    if data is None:
        return DedupConfig()
    if not isinstance(data, dict):
        raise ConfigurationError(f"Invalid configuration in {path}: top level must be a mapping")
    return build_config(data, source=str(path))


def build_config(data: dict, *, source: str = "<dict>") -> DedupConfig:
    try:
        return DedupConfig(**data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration in {source}: {e}") from e


def save_config(config: DedupConfig, config_path: Optional[Path] = None) -> None:
    """
    Write the configuration atomically: temp file, fsync, then replace.
    """
    path = Path(config_path).expanduser() if config_path else default_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    data = config.model_dump(mode="json", exclude_none=True)
    tmp_path = path.parent / f"{path.name}.tmp"
    try:
        with open(tmp_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
            f.flush()
            os.fsync(f.fileno())
        tmp_path.replace(path)
    except Exception as e:
        if tmp_path.exists():
            tmp_path.unlink()
        raise OSError(f"Failed to save config to {path}: {e}") from e
