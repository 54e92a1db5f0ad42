#!/usr/bin/env python3
"""
gifdedup.names

Filename similarity used by the pre-filter (shared prefix) and by the
level-5 name/size fallback. All scores are percentages in [0, 100].
"""
from __future__ import annotations

import os
import re
from difflib import SequenceMatcher
from pathlib import Path
from typing import Dict, Union

_WORD_SPLIT = re.compile(r"[^a-z0-9]+")
# trailing markers added by converters, downloaders and file managers
_SUFFIX_MARKERS = re.compile(
    r"(?:[\s_\-.]+(?:copy|dup(?:licate)?|final|edit(?:ed)?|optimi[sz]ed|converted|compressed"
    r"|hq|lq|high|low|medium|\d{3,4}p|\d+fps|v\d+|\d+)|\s*\(\d+\))$"
)

PathLike = Union[str, Path]


def stem_of(name: PathLike) -> str:
    base = os.path.basename(str(name))
    stem, _ext = os.path.splitext(base)
    return stem.lower()


def core_name(name: PathLike) -> str:
    """Stem with copy/quality/counter suffixes repeatedly removed."""
    stem = stem_of(name)
    while True:
        stripped = _SUFFIX_MARKERS.sub("", stem)
        if stripped == stem or not stripped:
            break
        stem = stripped
    return stem.strip(" _-.")


def common_prefix_length(a: PathLike, b: PathLike) -> int:
    sa, sb = stem_of(a), stem_of(b)
    return len(os.path.commonprefix([sa, sb]))


def prefix_similarity(a: PathLike, b: PathLike) -> float:
    sa, sb = stem_of(a), stem_of(b)
    longest = max(len(sa), len(sb))
    if not longest:
        return 0.0
    return 100.0 * common_prefix_length(sa, sb) / longest


def core_name_similarity(a: PathLike, b: PathLike) -> float:
    ca, cb = core_name(a), core_name(b)
    if ca and ca == cb:
        return 90.0
    return 0.0


def lcs_ratio(a: PathLike, b: PathLike) -> float:
    """Longest common substring as a share of the combined length."""
    sa, sb = stem_of(a), stem_of(b)
    if not sa or not sb:
        return 0.0
    match = SequenceMatcher(None, sa, sb, autojunk=False).find_longest_match(0, len(sa), 0, len(sb))
    return 100.0 * (2 * match.size) / (len(sa) + len(sb))


def word_overlap(a: PathLike, b: PathLike) -> float:
    wa = {w for w in _WORD_SPLIT.split(stem_of(a)) if w}
    wb = {w for w in _WORD_SPLIT.split(stem_of(b)) if w}
    if not wa or not wb:
        return 0.0
    return 100.0 * len(wa & wb) / len(wa | wb)


def positional_overlap(a: PathLike, b: PathLike) -> float:
    sa, sb = stem_of(a), stem_of(b)
    longest = max(len(sa), len(sb))
    if not longest:
        return 0.0
    same = sum(1 for x, y in zip(sa, sb) if x == y)
    return 100.0 * same / longest


def name_similarity_breakdown(a: PathLike, b: PathLike) -> Dict[str, float]:
    return {
        "prefix": prefix_similarity(a, b),
        "core": core_name_similarity(a, b),
        "lcs": lcs_ratio(a, b),
        "words": word_overlap(a, b),
        "positional": positional_overlap(a, b),
    }


def name_similarity(a: PathLike, b: PathLike) -> float:
    """Best score across the strategies; identical stems score 100."""
    if stem_of(a) == stem_of(b) and stem_of(a):
        return 100.0
    return max(name_similarity_breakdown(a, b).values())


def relative_size_difference(size_a: int, size_b: int) -> float:
    """|a - b| / max(a, b), 0.0 for two empty files."""
    hi = max(int(size_a), int(size_b))
    if hi <= 0:
        return 0.0
    return abs(int(size_a) - int(size_b)) / hi
