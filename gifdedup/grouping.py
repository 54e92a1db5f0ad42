#!/usr/bin/env python3
from __future__ import annotations
from collections import defaultdict
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Sequence

from .config import DEFAULT_KEEP_ORDER
from .models import DuplicateGroup, FileRecord, PairClassification


def make_keep_key(order: Sequence[str]):
    """Sort key preferring the copy worth keeping, most significant criterion first."""
    def key(r: FileRecord):
        m = r.metadata
        mapping = {
            "resolution": m.resolution_area if m else 0,
            "longer": m.duration_ms if m else -1,
            "frames": m.frame_count if m else 0,
            "larger": r.size,
            "smaller": -r.size,
            "newer": r.mtime,
            "older": -r.mtime,
            "shallower": -len(r.path.parts),
            "deeper": len(r.path.parts),
        }
        return tuple(mapping.get(k, 0) for k in order)
    return key


class UnionFind:
    def __init__(self):
        self._parent: Dict[str, str] = {}

    def find(self, x: str) -> str:
        self._parent.setdefault(x, x)
        root = x
        while self._parent[root] != root:
            root = self._parent[root]
        while self._parent[x] != root:
            self._parent[x], x = root, self._parent[x]
        return root

    def union(self, a: str, b: str) -> None:
        ra, rb = self.find(a), self.find(b)
        if ra != rb:
            # smaller path wins so roots are deterministic
            lo, hi = sorted((ra, rb))
            self._parent[hi] = lo

    def components(self) -> Dict[str, List[str]]:
        out: Dict[str, List[str]] = defaultdict(list)
        for x in list(self._parent):
            out[self.find(x)].append(x)
        return out


def build_groups(
    pairs: Iterable[PairClassification],
    records: Mapping[str, FileRecord],
    keep_order: Sequence[str] = DEFAULT_KEEP_ORDER,
) -> List[DuplicateGroup]:
    """
    Union-find over MATCH pairs. Groups are ordered by their smallest member
    path; members are ordered keep-first (see make_keep_key), ties by path.
    """
    uf = UnionFind()
    matched: List[PairClassification] = []
    for pc in pairs:
        if not pc.result.is_match:
            continue
        uf.union(pc.pair.first, pc.pair.second)
        matched.append(pc)

    components = sorted((sorted(members) for members in uf.components().values()), key=lambda m: m[0])
    keep_key = make_keep_key(keep_order)
    groups: List[DuplicateGroup] = []
    index_of: Dict[str, int] = {}
    for i, members in enumerate(components, start=1):
        recs = [records[m] for m in members if m in records]
        ordered = sorted(recs, key=lambda r: str(r.path))
        ordered.sort(key=keep_key, reverse=True)
        group = DuplicateGroup(group_id=f"group-{i:04d}", members=[Path(r.path) for r in ordered])
        groups.append(group)
        for m in members:
            index_of[m] = len(groups) - 1

    for pc in sorted(matched, key=lambda p: p.pair):
        groups[index_of[pc.pair.first]].pairs.append(pc)
    return groups
