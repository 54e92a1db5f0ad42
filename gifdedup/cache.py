#!/usr/bin/env python3
from __future__ import annotations
import json
import logging
import os
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from .codec import (
    CACHE_VERSION,
    LEGACY_VERSION,
    DigestEntry,
    FingerprintEntry,
    decode_document,
    encode_document,
)
from .errors import CacheCorruptionError, CacheUnwritableError
from .models import ComparisonResult, FileRecord, FingerprintKey, PairKey, Verdict

logger = logging.getLogger(__name__)


class ComparisonCache:
    """
    Durable store of fingerprints, pairwise results and legacy digests.

    One JSON document on disk, rewritten atomically:
      snapshot -> <name>.tmp-* in the same directory -> fsync -> re-read and
      validate -> os.replace over the live file
    A crash at any point leaves either the old or the new complete document.

    Every lookup re-checks the entry against the caller's current
    (size, mtime) and threshold generation; stale entries are dropped at read
    time and reported as misses. A document that fails validation on load is
    moved aside as <name>.corrupt-<timestamp>.bak and the run continues cold.

    path=None keeps everything in memory (tests, one-shot runs).
    """

    def __init__(
        self,
        path: Optional[Path] = None,
        *,
        autosave_every: int = 200,
        clock: Callable[[], float] = time.time,
    ):
        self.path = Path(path).expanduser() if path else None
        self.autosave_every = max(1, int(autosave_every))
        self.clock = clock
        self.recovered_from_corruption = False
        self.migrated_from_version: Optional[int] = None
        self.backup_path: Optional[Path] = None

        self._fingerprints: Dict[str, FingerprintEntry] = {}
        self._comparisons: Dict[PairKey, ComparisonResult] = {}
        self._digests: Dict[str, DigestEntry] = {}

        # guards the dicts and counters; never held across I/O on media files
        self._lock = threading.RLock()
        self._io_lock = threading.Lock()
        # name -> [lock, holders and waiters]
        self._key_locks: Dict[str, List[Any]] = {}
        self._pending = 0
        self._opened = False
        self._counters: Dict[str, int] = {
            "fingerprint_hits": 0,
            "fingerprint_misses": 0,
            "comparison_hits": 0,
            "comparison_misses": 0,
            "digest_hits": 0,
            "stale_dropped": 0,
            "writes": 0,
        }

    # ---------------- lifecycle ----------------

    def open(self) -> "ComparisonCache":
        if self._opened:
            return self
        self._opened = True
        if self.path is None:
            return self
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise CacheUnwritableError(f"cannot create cache directory {self.path.parent}: {e}") from e
        self._remove_stale_temp_files()
        if not self.path.exists():
            return self

        try:
            text = self.path.read_text(encoding="utf-8")
            doc = decode_document(text)
        except UnicodeDecodeError as e:
            self._recover(f"cache file is not UTF-8 text: {e}")
            return self
        except CacheCorruptionError as e:
            self._recover(str(e))
            return self
        except OSError as e:
            raise CacheUnwritableError(f"cannot read cache {self.path}: {e}") from e

        with self._lock:
            for entry in doc.fingerprints:
                self._fingerprints[str(entry.record.path)] = entry
            for result in doc.comparisons:
                self._comparisons[result.pair] = result
            for digest in doc.digests:
                self._digests[digest.path] = digest

        if doc.version == LEGACY_VERSION:
            self.migrated_from_version = LEGACY_VERSION
            logger.info("Migrating %d digests from legacy cache %s to version %d", len(doc.digests), self.path, CACHE_VERSION)
            self.flush()
        else:
            logger.debug(
                "Loaded cache %s: %d fingerprints, %d comparisons, %d digests",
                self.path, len(doc.fingerprints), len(doc.comparisons), len(doc.digests),
            )
        return self

    def close(self) -> None:
        if self._opened:
            self.flush()

    def __enter__(self) -> "ComparisonCache":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _recover(self, reason: str) -> None:
        assert self.path is not None
        stamp = time.strftime("%Y%m%d-%H%M%S", time.localtime(self.clock()))
        backup = self.path.with_name(f"{self.path.name}.corrupt-{stamp}.bak")
        n = 1
        while backup.exists():
            backup = self.path.with_name(f"{self.path.name}.corrupt-{stamp}-{n}.bak")
            n += 1
        try:
            os.replace(self.path, backup)
        except OSError as e:
            raise CacheUnwritableError(f"cannot move corrupt cache {self.path} aside: {e}") from e
        logger.warning("Cache %s is corrupt (%s); moved to %s and rebuilding", self.path, reason, backup.name)
        self.backup_path = backup
        self.recovered_from_corruption = True
        with self._lock:
            self._fingerprints.clear()
            self._comparisons.clear()
            self._digests.clear()
        self.flush()

    def _remove_stale_temp_files(self) -> None:
        assert self.path is not None
        for tmp in self.path.parent.glob(f"{self.path.name}.tmp-*"):
            try:
                tmp.unlink()
                logger.debug("Removed leftover temp file %s", tmp)
            except OSError:
                logger.debug("Could not remove leftover temp file %s", tmp)

    # ---------------- persistence ----------------

    def flush(self) -> None:
        """Write the current snapshot atomically. No-op for in-memory caches."""
        # snapshot and write under one _io_lock hold: writes land in snapshot order
        with self._io_lock:
            with self._lock:
                self._pending = 0
                fingerprints = list(self._fingerprints.values())
                comparisons = list(self._comparisons.values())
                digests = list(self._digests.values())
            if self.path is None:
                return

            text = encode_document(fingerprints, comparisons, digests, written_at=self.clock())
            tmp = self.path.with_name(f"{self.path.name}.tmp-{os.getpid()}-{threading.get_ident()}")
            try:
                with open(tmp, "w", encoding="utf-8") as f:
                    f.write(text)
                    f.flush()
                    os.fsync(f.fileno())
                decode_document(tmp.read_text(encoding="utf-8"))
                os.replace(tmp, self.path)
            except (OSError, CacheCorruptionError) as e:
                try:
                    tmp.unlink()
                except OSError:
                    pass
                raise CacheUnwritableError(f"failed to write cache {self.path}: {e}") from e
        with self._lock:
            self._counters["writes"] += 1

    def _note_put(self) -> None:
        with self._lock:
            self._pending += 1
            due = self._pending >= self.autosave_every
        if due:
            self.flush()

    def rebuild(self) -> None:
        """Drop every entry and persist an empty store."""
        with self._lock:
            self._fingerprints.clear()
            self._comparisons.clear()
            self._digests.clear()
        logger.info("Cache rebuilt from scratch%s", f" at {self.path}" if self.path else "")
        self.flush()

    def prune(self, max_age_days: Optional[float] = None) -> Dict[str, int]:
        """
        Drop entries for files that no longer exist and, when max_age_days is
        given, entries computed longer ago than that.
        """
        cutoff = self.clock() - max_age_days * 86400.0 if max_age_days else None
        removed = {"fingerprints": 0, "comparisons": 0, "digests": 0}
        existing: Dict[str, bool] = {}

        def _exists(p: str) -> bool:
            if p not in existing:
                existing[p] = Path(p).exists()
            return existing[p]

        with self._lock:
            for key, entry in list(self._fingerprints.items()):
                if not _exists(key) or (cutoff is not None and entry.computed_at < cutoff):
                    del self._fingerprints[key]
                    removed["fingerprints"] += 1
            for pair, result in list(self._comparisons.items()):
                gone = not _exists(pair.first) or not _exists(pair.second)
                if gone or (cutoff is not None and result.computed_at < cutoff):
                    del self._comparisons[pair]
                    removed["comparisons"] += 1
            for key, digest in list(self._digests.items()):
                # migrated digests carry computed_at=0 and only age out by file removal
                aged = cutoff is not None and 0 < digest.computed_at < cutoff
                if not _exists(key) or aged:
                    del self._digests[key]
                    removed["digests"] += 1

        if any(removed.values()):
            logger.info(
                "Pruned %d fingerprints, %d comparisons, %d digests",
                removed["fingerprints"], removed["comparisons"], removed["digests"],
            )
            self.flush()
        return removed

    # ---------------- locks ----------------

    @contextmanager
    def key_lock(self, key: Any) -> Iterator[None]:
        """
        Serialise writers of one fingerprint path or one pair; other keys proceed.

        Entries are reference-counted and dropped once nobody holds or waits
        on them, so the table only ever holds keys in flight.
        """
        name = f"{key.first}\0{key.second}" if isinstance(key, PairKey) else str(key)
        with self._lock:
            slot = self._key_locks.get(name)
            if slot is None:
                slot = self._key_locks[name] = [threading.Lock(), 0]
            slot[1] += 1
        try:
            with slot[0]:
                yield
        finally:
            with self._lock:
                slot[1] -= 1
                if slot[1] == 0:
                    del self._key_locks[name]

    # ---------------- fingerprints ----------------

    def get_fingerprint(self, path: Path, size: int, mtime: float) -> Optional[FileRecord]:
        key = FingerprintKey(int(size), float(mtime))
        with self._lock:
            entry = self._fingerprints.get(str(path))
            if entry is None:
                self._counters["fingerprint_misses"] += 1
                return None
            if entry.record.key != key:
                del self._fingerprints[str(path)]
                self._counters["stale_dropped"] += 1
                self._counters["fingerprint_misses"] += 1
                return None
            self._counters["fingerprint_hits"] += 1
            return entry.record

    def put_fingerprint(self, record: FileRecord) -> None:
        if not record.is_complete:
            raise ValueError(f"only complete fingerprints are cached, got {record.path}")
        entry = FingerprintEntry(record, self.clock())
        with self._lock:
            self._fingerprints[str(record.path)] = entry
            if record.exact_digest:
                self._digests[str(record.path)] = DigestEntry(str(record.path), record.key, record.exact_digest, entry.computed_at)
        self._note_put()

    # ---------------- digests ----------------

    def get_digest(self, path: Path, size: int, mtime: float) -> Optional[str]:
        key = FingerprintKey(int(size), float(mtime))
        with self._lock:
            entry = self._digests.get(str(path))
            if entry is None:
                return None
            if entry.key != key:
                del self._digests[str(path)]
                self._counters["stale_dropped"] += 1
                return None
            self._counters["digest_hits"] += 1
            return entry.sha256

    def put_digest(self, path: Path, size: int, mtime: float, sha256: str) -> None:
        entry = DigestEntry(str(path), FingerprintKey(int(size), float(mtime)), sha256, self.clock())
        with self._lock:
            self._digests[str(path)] = entry
        self._note_put()

    # ---------------- comparisons ----------------

    def get_comparison(
        self,
        pair: PairKey,
        file_keys: Tuple[FingerprintKey, FingerprintKey],
        generation: str,
    ) -> Optional[ComparisonResult]:
        with self._lock:
            result = self._comparisons.get(pair)
            if result is None:
                self._counters["comparison_misses"] += 1
                return None
            if tuple(result.file_keys) != tuple(file_keys) or result.generation != generation:
                del self._comparisons[pair]
                self._counters["stale_dropped"] += 1
                self._counters["comparison_misses"] += 1
                return None
            self._counters["comparison_hits"] += 1
            return result

    def put_comparison(self, result: ComparisonResult) -> None:
        if result.verdict is Verdict.INCONCLUSIVE:
            raise ValueError("only definitive verdicts are cached")
        with self._lock:
            self._comparisons[result.pair] = result
        self._note_put()

    # ---------------- introspection ----------------

    @property
    def stats(self) -> Dict[str, Any]:
        with self._lock:
            out: Dict[str, Any] = dict(self._counters)
            out.update(
                fingerprints=len(self._fingerprints),
                comparisons=len(self._comparisons),
                digests=len(self._digests),
                recovered_from_corruption=self.recovered_from_corruption,
            )
            if self.migrated_from_version is not None:
                out["migrated_from_version"] = self.migrated_from_version
            return out

    def __len__(self) -> int:
        with self._lock:
            return len(self._fingerprints) + len(self._comparisons)


class DecisionLog:
    """
    Append-only JSONL log of escalation-trigger decisions (inputs and outcome),
    kept for tuning the trigger weights. Lines are written whole under a lock.
    """

    def __init__(self, path: Optional[Path]):
        self.path = Path(path).expanduser() if path else None
        self._fh = None
        self._lock = threading.Lock()
        self.entries = 0

    def record(self, payload: Dict[str, Any]) -> None:
        if self.path is None:
            return
        line = json.dumps(payload, sort_keys=True)
        with self._lock:
            if self._fh is None:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                self._fh = self.path.open("a", encoding="utf-8")
            self._fh.write(line + "\n")
            self._fh.flush()
            self.entries += 1

    def close(self) -> None:
        with self._lock:
            if self._fh:
                self._fh.close()
                self._fh = None
