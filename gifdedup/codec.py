#!/usr/bin/env python3
"""
gifdedup.codec

The only place cache records are turned into JSON-ready payloads and back.
Any malformed payload raises CacheCorruptionError; callers treat that as a
missing entry, never as an answer.

Document layout (version 2):

    {"format": "gifdedup-cache", "version": 2, "written_at": <epoch>,
     "fingerprints": [...], "comparisons": [...], "digests": [...]}

Version 1 is the legacy append-only JSONL hash cache: one object per line
with at least "path", "size", "mtime" and optionally "sha256". Only the
digests survive migration; the rest of a v1 line is not a complete
fingerprint.
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Tuple

from .errors import CacheCorruptionError
from .models import ComparisonResult, FileRecord, FingerprintKey, MediaMetadata, PairKey, Verdict

CACHE_FORMAT = "gifdedup-cache"
CACHE_VERSION = 2
LEGACY_VERSION = 1
PROFILE_BUCKETS_KEY = "profile_buckets"


class FingerprintEntry(NamedTuple):
    record: FileRecord
    computed_at: float


class DigestEntry(NamedTuple):
    path: str
    key: FingerprintKey
    sha256: str
    computed_at: float


def _hex64(value: int) -> str:
    return f"{int(value):016x}"


def encode_fingerprint(entry: FingerprintEntry) -> Dict[str, Any]:
    rec = entry.record
    if not rec.is_complete:
        raise ValueError(f"refusing to cache an incomplete fingerprint for {rec.path}")
    meta = rec.metadata
    profile = rec.color_profile or ()
    return {
        "path": str(rec.path),
        "size": int(rec.size),
        "mtime": float(rec.mtime),
        "digest": rec.exact_digest,
        "structural_hash": [_hex64(h) for h in rec.structural_hash or ()],
        PROFILE_BUCKETS_KEY: len(profile),
        # sparse: animated GIFs use a few hundred of the 4096 buckets at most
        "color_profile": [[i, v] for i, v in enumerate(profile) if v],
        "metadata": {
            "frame_count": meta.frame_count,
            "duration_ms": meta.duration_ms,
            "fps": meta.fps,
            "width": meta.width,
            "height": meta.height,
        },
        "computed_at": float(entry.computed_at),
    }


def decode_fingerprint(payload: Dict[str, Any]) -> FingerprintEntry:
    try:
        buckets = int(payload[PROFILE_BUCKETS_KEY])
        profile = [0.0] * buckets
        for index, value in payload["color_profile"]:
            profile[int(index)] = float(value)
        m = payload["metadata"]
        record = FileRecord(
            path=Path(payload["path"]),
            size=int(payload["size"]),
            mtime=float(payload["mtime"]),
            exact_digest=str(payload["digest"]),
            structural_hash=tuple(int(h, 16) for h in payload["structural_hash"]),
            color_profile=tuple(profile),
            metadata=MediaMetadata(
                frame_count=int(m["frame_count"]),
                duration_ms=int(m["duration_ms"]),
                fps=float(m["fps"]),
                width=int(m["width"]),
                height=int(m["height"]),
            ),
        )
        computed_at = float(payload["computed_at"])
    except (KeyError, TypeError, ValueError, IndexError, AttributeError) as e:
        raise CacheCorruptionError(f"malformed fingerprint record: {e!r}") from e
    if not record.structural_hash:
        raise CacheCorruptionError(f"fingerprint for {record.path} has no structural hash")
    return FingerprintEntry(record, computed_at)


def encode_key(key: FingerprintKey) -> List[Any]:
    return [int(key.size), float(key.mtime)]


def decode_key(raw: Any) -> FingerprintKey:
    size, mtime = raw
    return FingerprintKey(int(size), float(mtime))


def encode_comparison(result: ComparisonResult) -> Dict[str, Any]:
    return {
        "pair": result.pair.as_list(),
        "level": int(result.level_reached),
        "verdict": result.verdict.value,
        "confidence": int(result.confidence),
        "metrics": result.metrics,
        "computed_at": float(result.computed_at),
        "file_keys": [encode_key(k) for k in result.file_keys],
        "generation": result.generation,
    }


def decode_comparison(payload: Dict[str, Any]) -> ComparisonResult:
    try:
        first, second = payload["pair"]
        pair = PairKey.of(first, second)
        key_a, key_b = payload["file_keys"]
        result = ComparisonResult(
            pair=pair,
            level_reached=int(payload["level"]),
            verdict=Verdict(payload["verdict"]),
            confidence=int(payload["confidence"]),
            metrics=dict(payload["metrics"]),
            computed_at=float(payload["computed_at"]),
            file_keys=(decode_key(key_a), decode_key(key_b)),
            generation=str(payload["generation"]),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise CacheCorruptionError(f"malformed comparison record: {e!r}") from e
    if not 1 <= result.level_reached <= 6:
        raise CacheCorruptionError(f"comparison level out of range: {result.level_reached}")
    if not 0 <= result.confidence <= 100:
        raise CacheCorruptionError(f"comparison confidence out of range: {result.confidence}")
    if result.verdict is Verdict.INCONCLUSIVE:
        raise CacheCorruptionError("inconclusive results are never persisted")
    return result


def encode_digest(entry: DigestEntry) -> Dict[str, Any]:
    return {
        "path": entry.path,
        "size": int(entry.key.size),
        "mtime": float(entry.key.mtime),
        "sha256": entry.sha256,
        "computed_at": float(entry.computed_at),
    }


def decode_digest(payload: Dict[str, Any]) -> DigestEntry:
    try:
        sha = str(payload["sha256"])
        entry = DigestEntry(
            path=str(payload["path"]),
            key=FingerprintKey(int(payload["size"]), float(payload["mtime"])),
            sha256=sha,
            computed_at=float(payload.get("computed_at", 0.0)),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise CacheCorruptionError(f"malformed digest record: {e!r}") from e
    if len(sha) != 64:
        raise CacheCorruptionError(f"digest for {entry.path} is not a SHA-256 hex string")
    return entry


class Document(NamedTuple):
    fingerprints: List[FingerprintEntry]
    comparisons: List[ComparisonResult]
    digests: List[DigestEntry]
    version: int


def encode_document(
    fingerprints: Iterable[FingerprintEntry],
    comparisons: Iterable[ComparisonResult],
    digests: Iterable[DigestEntry],
    *,
    written_at: float,
) -> str:
    doc = {
        "format": CACHE_FORMAT,
        "version": CACHE_VERSION,
        "written_at": written_at,
        "fingerprints": [encode_fingerprint(e) for e in fingerprints],
        "comparisons": [encode_comparison(r) for r in comparisons],
        "digests": [encode_digest(d) for d in digests],
    }
    # single line: a torn write can never parse as the legacy line format
    return json.dumps(doc, separators=(",", ":"))


def decode_document(text: str) -> Document:
    """
    Parse and fully validate a cache document.

    Raises CacheCorruptionError for anything that is not a complete, current
    (or migratable legacy) document.
    """
    if not text.strip():
        raise CacheCorruptionError("cache file is empty")
    try:
        doc = json.loads(text)
    except json.JSONDecodeError:
        legacy = _decode_legacy_lines(text)
        if legacy is None:
            raise CacheCorruptionError("cache file is not valid JSON")
        return Document([], [], legacy, LEGACY_VERSION)

    if isinstance(doc, dict) and doc.get("format") != CACHE_FORMAT and {"path", "size", "mtime"} <= doc.keys():
        # a one-line legacy cache parses as a single JSON object
        legacy = _decode_legacy_lines(text)
        if legacy is not None:
            return Document([], [], legacy, LEGACY_VERSION)
    if not isinstance(doc, dict) or doc.get("format") != CACHE_FORMAT:
        raise CacheCorruptionError("missing cache format marker")
    version = doc.get("version")
    if version != CACHE_VERSION:
        raise CacheCorruptionError(f"unsupported cache version {version!r}")
    for table in ("fingerprints", "comparisons", "digests"):
        if not isinstance(doc.get(table), list):
            raise CacheCorruptionError(f"cache table {table!r} missing or not a list")

    return Document(
        fingerprints=[decode_fingerprint(p) for p in doc["fingerprints"]],
        comparisons=[decode_comparison(p) for p in doc["comparisons"]],
        digests=[decode_digest(p) for p in doc["digests"]],
        version=CACHE_VERSION,
    )


def _decode_legacy_lines(text: str) -> Optional[List[DigestEntry]]:
    """
    Version-1 JSONL: every non-blank line must be an object keyed by path/size/mtime.
    Returns None when the text is not such a file.
    """
    entries: Dict[Tuple[str, int, float], DigestEntry] = {}
    seen = 0
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            rec = json.loads(line)
        except json.JSONDecodeError:
            return None
        if not isinstance(rec, dict) or not {"path", "size", "mtime"} <= rec.keys():
            return None
        seen += 1
        sha = rec.get("sha256")
        if not isinstance(sha, str) or len(sha) != 64:
            continue
        try:
            key = FingerprintKey(int(rec["size"]), float(rec["mtime"]))
        except (TypeError, ValueError):
            return None
        # later lines supersede earlier ones for the same key
        entries[(str(rec["path"]), key.size, key.mtime)] = DigestEntry(str(rec["path"]), key, sha, 0.0)
    if not seen:
        return None
    return list(entries.values())
