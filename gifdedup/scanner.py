#!/usr/bin/env python3
"""
gifdedup.scanner

Scan Coordinator. scan(population) runs three phases over a bounded worker pool:

  1 fingerprint every file (unanalyzable files are excluded with a reason)
  2 score all pairs and keep the candidates
  3 classify each candidate with the escalation matcher: levels 1-5 first,
    then one trigger allocation over every pair that wants level 6, then
    the deep analyses the budget admitted

then groups MATCH pairs with union-find. Cancellation (threading.Event, set
by the CLI's signal handler or by the reporter) stops new submissions;
in-flight work finishes its unit, the cache is flushed and the partial
report is returned with cancelled=True.

Only ConfigurationError and CacheUnwritableError escape scan().
"""
from __future__ import annotations

import concurrent.futures
import logging
import os
import sys
import threading
import time
from pathlib import Path
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, TypeVar, Union

from .cache import ComparisonCache, DecisionLog
from .config import DedupConfig
from .errors import CacheUnwritableError, ConfigurationError, UnanalyzableFileError
from .extractor import FingerprintExtractor
from .frames import AutoFrameSampler, FrameSampler
from .grouping import build_groups
from .matcher import Assessment, DeepRequest, EscalationMatcher
from .models import CandidateScore, ExcludedFile, FileRecord, PairClassification, ScanReport
from .prefilter import CandidateGenerator
from .probe import AutoProber, MediaProber
from .progress import ProgressReporter
from .trigger import EscalationTrigger

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

# everything else a worker raises is confined to its file or pair
FATAL_ERRORS = (ConfigurationError, CacheUnwritableError)


def normalize_patterns(patterns: Optional[Sequence[str]]) -> List[str]:
    """Accept "gif", ".gif" or "*.gif"; anything with a glob character is kept as is."""
    out: List[str] = []
    for pat in patterns or []:
        s = (pat or "").strip()
        if not s:
            continue
        if not any(ch in s for ch in "*?["):
            s = f"*.{s.lstrip('.')}"
        out.append(s)
    return out


def iter_media_files(root: Path, patterns: Optional[Sequence[str]], max_depth: Optional[int]) -> Iterator[Path]:
    """Yield files under root matching any of the glob patterns. Case-insensitive on Windows."""
    root = Path(root).resolve()
    norm = normalize_patterns(patterns)
    ci = sys.platform.startswith("win")
    for dp, dn, fn in os.walk(root):
        if max_depth is not None:
            rel = Path(dp).resolve().relative_to(root)
            depth = 0 if str(rel) == "." else len(rel.parts)
            if depth >= max_depth:
                dn[:] = []
            if depth > max_depth:
                continue
        dn.sort()
        for name in sorted(fn):
            if not norm:
                yield Path(dp) / name
                continue
            to_match = name.lower() if ci else name
            if any(Path(to_match).match(p.lower() if ci else p) for p in norm):
                yield Path(dp) / name


def collect_population(
    population: Iterable[Union[str, Path]],
    patterns: Optional[Sequence[str]],
    max_depth: Optional[int],
) -> Tuple[List[Path], List[ExcludedFile]]:
    """Explicit files are taken as given; directories are walked. Missing paths are excluded."""
    seen: Dict[str, Path] = {}
    missing: List[ExcludedFile] = []
    for item in population:
        p = Path(item).expanduser()
        if p.is_dir():
            for f in iter_media_files(p, patterns, max_depth):
                seen.setdefault(str(f.resolve()), f.resolve())
        elif p.is_file():
            seen.setdefault(str(p.resolve()), p.resolve())
        else:
            missing.append(ExcludedFile(p, "not found"))
    files = [seen[k] for k in sorted(seen)]
    return files, missing


def _run_bounded(
    pool: concurrent.futures.Executor,
    items: Sequence[T],
    fn: Callable[[T], R],
    on_done: Callable[[T, "concurrent.futures.Future[R]"], None],
    cancelled: Callable[[], bool],
    window: int,
) -> None:
    """
    Submit at most `window` tasks at a time; stop submitting once cancelled.
    on_done runs in the calling thread, so its exceptions abort the phase.
    """
    pending: Dict["concurrent.futures.Future[R]", T] = {}
    it = iter(items)
    exhausted = False
    try:
        while True:
            while not exhausted and len(pending) < window and not cancelled():
                try:
                    item = next(it)
                except StopIteration:
                    exhausted = True
                    break
                pending[pool.submit(fn, item)] = item
            if not pending:
                return
            done, _ = concurrent.futures.wait(pending, timeout=0.5, return_when=concurrent.futures.FIRST_COMPLETED)
            for fut in done:
                on_done(pending.pop(fut), fut)
    finally:
        for fut in pending:
            fut.cancel()


def scan(
    population: Iterable[Union[str, Path]],
    config: Optional[DedupConfig] = None,
    *,
    cache: Optional[ComparisonCache] = None,
    prober: Optional[MediaProber] = None,
    sampler: Optional[FrameSampler] = None,
    reporter: Optional[ProgressReporter] = None,
    cancel_event: Optional[threading.Event] = None,
    decision_log: Optional[DecisionLog] = None,
) -> ScanReport:
    """Deduplicate `population` (files and/or directories) and return the report."""
    config = config or DedupConfig()
    t0 = time.monotonic()
    cancel_event = cancel_event or threading.Event()
    reporter = reporter or ProgressReporter(enable_dash=False, quit_event=cancel_event)

    def cancelled() -> bool:
        return cancel_event.is_set() or reporter.should_quit()

    owns_cache = cache is None
    if cache is None:
        cache = ComparisonCache(config.cache.path, autosave_every=config.cache.autosave_every)
    cache.open()
    owns_log = decision_log is None
    if decision_log is None:
        decision_log = DecisionLog(config.decision_log)

    sampler = sampler or AutoFrameSampler(timeout=config.sampling.extract_timeout)
    prober = prober or AutoProber(timeout=config.sampling.probe_timeout)
    workers = config.worker_count
    window = workers * 2

    report = ScanReport()
    try:
        reporter.set_status("Enumerating files")
        files, missing = collect_population(population, config.patterns, config.max_depth)
        report.excluded.extend(missing)
        logger.info("Scanning %d files with %d workers", len(files), workers)
        if cache.recovered_from_corruption:
            reporter.add_log(f"Cache was corrupt; backup at {cache.backup_path}", "WARNING")

        # ---- phase 1: fingerprints
        extractor = FingerprintExtractor(cache, prober, sampler, config.sampling)
        records: Dict[str, FileRecord] = {}
        reporter.start_stage("fingerprinting", total=len(files))

        def _fingerprinted(path: Path, fut: "concurrent.futures.Future[FileRecord]") -> None:
            try:
                rec = fut.result()
            except FATAL_ERRORS:
                raise
            except UnanalyzableFileError as e:
                logger.warning("Excluding %s: %s", path, e.reason)
                report.excluded.append(ExcludedFile(path, e.reason))
                reporter.inc("excluded")
            except Exception as e:
                logger.exception("Unexpected error fingerprinting %s", path)
                report.excluded.append(ExcludedFile(path, f"unexpected error: {type(e).__name__}: {e}"))
                reporter.inc("excluded")
            else:
                records[str(rec.path)] = rec
            reporter.advance()

        with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as pool:
            _run_bounded(pool, files, extractor.fingerprint, _fingerprinted, cancelled, window)
        reporter.finish_stage()

        # ---- phase 2: candidates
        candidates: List[CandidateScore] = []
        if not cancelled():
            reporter.start_stage("pre-filter", total=1)
            generator = CandidateGenerator(config.prefilter)
            candidates = generator.generate(records.values())
            reporter.inc("candidates", len(candidates))
            reporter.finish_stage()

        # ---- phase 3: escalation
        trigger = EscalationTrigger(config.trigger, population_size=len(records), decision_log=decision_log)
        matcher = EscalationMatcher(cache, sampler, config.thresholds, config.sampling, trigger)

        def _settled(cand: CandidateScore, fut: "concurrent.futures.Future[T]") -> Union[T, PairClassification]:
            try:
                return fut.result()
            except FATAL_ERRORS:
                raise
            except Exception as e:
                logger.exception("Unexpected error comparing %s and %s", cand.pair.first, cand.pair.second)
                return matcher.failed(records[cand.pair.first], records[cand.pair.second], cand, e)

        def _classified(pc: PairClassification) -> None:
            report.pairs.append(pc)
            if pc.result.is_match:
                reporter.inc("matches")
            reporter.advance()

        # 3a: levels 1-5 and the cache; level 6 candidates wait for the allocation
        deferred: List[Tuple[CandidateScore, DeepRequest]] = []
        reporter.start_stage("matching", total=len(candidates))

        def _assess(cand: CandidateScore) -> Assessment:
            return matcher.assess(records[cand.pair.first], records[cand.pair.second], cand)

        def _assessed(cand: CandidateScore, fut: "concurrent.futures.Future[Assessment]") -> None:
            outcome = _settled(cand, fut)
            if isinstance(outcome, DeepRequest):
                deferred.append((cand, outcome))
                reporter.advance()
            else:
                _classified(outcome)

        if candidates and not cancelled():
            with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as pool:
                _run_bounded(pool, candidates, _assess, _assessed, cancelled, window)
        reporter.finish_stage()

        # 3b: one budget allocation over every waiting pair, then level 6 where admitted
        if not cancelled():
            trigger.charge(matcher.cached_deep)
            decisions = trigger.allocate((req.pair, req.signals, req.candidate_fraction) for _, req in deferred)
            deferred.sort(key=lambda item: item[1].pair)
            requests = {req.pair: req for _, req in deferred}
            reporter.start_stage("deep analysis", total=len(deferred))

            def _finish(cand: CandidateScore) -> PairClassification:
                return matcher.finish(requests[cand.pair], decisions[cand.pair])

            def _finished(cand: CandidateScore, fut: "concurrent.futures.Future[PairClassification]") -> None:
                _classified(_settled(cand, fut))

            with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as pool:
                _run_bounded(pool, [cand for cand, _ in deferred], _finish, _finished, cancelled, window)
            reporter.finish_stage()

        report.pairs.sort(key=lambda pc: pc.pair)
        report.excluded.sort(key=lambda e: str(e.path))
        report.groups = build_groups(report.pairs, records, config.keep_order)
        report.degraded = matcher.degraded
        report.degraded_reasons = dict(matcher.degraded_reasons)
        report.cancelled = cancelled()
        m = matcher.stats()
        report.stats = {
            "files": len(files),
            "analyzable": len(records),
            "excluded": len(report.excluded),
            "pairs_scored": len(records) * (len(records) - 1) // 2,
            "candidates": len(candidates),
            "comparisons": m["comparisons"],
            "cache_hits": m["cache_hits"],
            "deep_comparisons": m["deep_comparisons"],
            "levels": m["levels"],
            "trigger": trigger.stats(),
            "cache": cache.stats,
        }
    finally:
        if owns_cache:
            cache.close()
        else:
            cache.flush()
        if owns_log:
            decision_log.close()

    report.stats["elapsed_seconds"] = round(time.monotonic() - t0, 3)
    if report.cancelled:
        logger.warning("Scan cancelled; report covers %d classified pairs", len(report.pairs))
    logger.info(
        "Scan done: %d groups, %d matches, %d excluded, %d degraded",
        len(report.groups), len(report.matches), len(report.excluded), report.degraded,
    )
    return report
