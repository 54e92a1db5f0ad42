#!/usr/bin/env python3
"""
gifdedup.cli – gif-dedupe entrypoint

Scans files and directories for duplicate GIFs / animated images / short
videos, writes a JSON report and prints a summary. Never touches the media.

Examples:

  # Scan a folder tree, default patterns, report next to the cache
  gif-dedupe ~/gifs -R ~/gifs-report.json

  # Two levels deep, only GIF and WebP, 4 workers, live dashboard
  gif-dedupe ~/gifs -r 2 -p gif -p webp -t 4 --dash

  # Cache housekeeping only
  gif-dedupe --prune-days 30
  gif-dedupe --rebuild-cache

Exit codes: 0 ok, 1 run failure, 2 bad arguments/configuration, 130 interrupted.
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

from gifdedup.cache import ComparisonCache, DecisionLog
from gifdedup.config import KEEP_CRITERIA, DedupConfig, build_config, default_cache_path, load_config
from gifdedup.errors import CacheUnwritableError, ConfigurationError
from gifdedup.progress import ProgressReporter
from gifdedup.report import render_summary, report_payload, write_report
from gifdedup.scanner import normalize_patterns, scan

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_INTERRUPTED = 130


def _setup_logging(log_file: Optional[Path] = None, log_level: str = "INFO", console_level: str = "WARNING") -> logging.Logger:
    """
    Configure logging for a scan.

    Args:
        log_file: Path to log file (None disables file logging)
        log_level: File logging level (DEBUG, INFO, WARNING, ERROR)
        console_level: Console logging level (DEBUG, INFO, WARNING, ERROR)

    Returns:
        The package logger
    """
    logger = logging.getLogger("gifdedup")
    logger.setLevel(logging.DEBUG)  # filter at handler level

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setLevel(getattr(logging, log_level.upper()))
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s | %(levelname)-8s | %(funcName)-20s | %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
        )
        logger.addHandler(file_handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(getattr(logging, console_level.upper()))
    console_handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    logger.addHandler(console_handler)
    return logger


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        prog="gif-dedupe",
        description="Find duplicate GIFs, animated images and short videos by escalating similarity tests.",
        epilog=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    p.add_argument("paths", nargs="*", help="Files and/or directories to scan")
    p.add_argument("-p", "--pattern", action="append", help="Glob to include (repeatable), e.g. -p *.gif -p webp")
    p.add_argument("-r", "--max-depth", type=int, help="Maximum directory depth below each root (default: unlimited)")
    p.add_argument("-c", "--config", type=str, help="YAML config file (default: platform config dir)")
    p.add_argument("-C", "--cache", type=str, help="Cache file (default: config value or platform cache dir)")
    p.add_argument("-R", "--report", type=str, default="gifdedup-report.json", help="JSON report path (default: ./gifdedup-report.json)")
    p.add_argument("-t", "--threads", type=int, help="Worker threads (default: config value or CPU count)")
    p.add_argument("-n", "--frames", type=int, help="Frames sampled per file")
    p.add_argument("--threshold", type=float, help="Pre-filter threshold as a fraction of the maximum score")
    p.add_argument("-k", "--keep", action="append", choices=KEEP_CRITERIA,
                   help="Keep-first criterion, most significant first (repeatable). Default: config keep_order")
    p.add_argument("-V", "--verbosity", type=int, default=1, choices=[0, 1, 2], help="Summary verbosity (0-2). Default: 1")

    # cache maintenance
    p.add_argument("--prune-days", type=float, help="Drop cache entries older than D days and entries of deleted files")
    p.add_argument("--rebuild-cache", action="store_true", help="Discard the cache and start empty")
    p.add_argument("--decision-log", type=str, help="Append escalation-trigger decisions to this JSONL file")

    p.add_argument("--log-level", type=str, default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                   help="File logging level (default: INFO)")
    p.add_argument("--console-log-level", type=str, default="WARNING", choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                   help="Console logging level (default: WARNING)")
    p.add_argument("--no-log-file", action="store_true", help="Disable file logging (console only)")
    p.add_argument("--dash", action="store_true", help="Show live progress dashboard")
    return p.parse_args(argv)


def _validate_args(args: argparse.Namespace) -> Optional[str]:
    if not args.paths and args.prune_days is None and not args.rebuild_cache:
        return "nothing to do: give at least one path, --prune-days or --rebuild-cache"
    if args.threads is not None and args.threads < 1:
        return "--threads must be at least 1"
    if args.max_depth is not None and args.max_depth < 0:
        return "--max-depth must be >= 0"
    if args.prune_days is not None and args.prune_days <= 0:
        return "--prune-days must be positive"
    return None


def build_run_config(args: argparse.Namespace) -> DedupConfig:
    """Config file plus command-line overrides, validated together."""
    base = load_config(Path(args.config) if args.config else None)
    data: Dict[str, Any] = base.model_dump()
    if args.threads is not None:
        data["workers"] = args.threads
    if args.frames is not None:
        data["sampling"]["frames"] = args.frames
    if args.threshold is not None:
        data["prefilter"]["threshold_fraction"] = args.threshold
    if args.pattern:
        data["patterns"] = normalize_patterns(args.pattern)
    if args.keep:
        data["keep_order"] = args.keep
    if args.max_depth is not None:
        data["max_depth"] = args.max_depth
    if args.cache:
        data["cache"]["path"] = Path(args.cache).expanduser()
    elif data["cache"].get("path") is None:
        data["cache"]["path"] = default_cache_path()
    if args.decision_log:
        data["decision_log"] = Path(args.decision_log).expanduser()
    return build_config(data, source="command line")


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    validation_error = _validate_args(args)
    if validation_error:
        print(f"gif-dedupe: error: {validation_error}", file=sys.stderr)
        return EXIT_USAGE

    report_path = Path(args.report).expanduser().resolve()
    log_file = None if args.no_log_file else report_path.parent / "gifdedup.log"
    logger = _setup_logging(log_file, args.log_level, args.console_log_level)
    logger.info("gif-dedupe started with args: %s", " ".join(sys.argv[1:] if argv is None else argv))

    try:
        config = build_run_config(args)
    except ConfigurationError as e:
        logger.error("%s", e)
        print(f"gif-dedupe: error: {e}", file=sys.stderr)
        return EXIT_USAGE

    cancel_event = threading.Event()

    def signal_handler(sig, frame):
        if cancel_event.is_set():
            raise KeyboardInterrupt
        cancel_event.set()
        print("\nInterrupted. Finishing in-flight work; press Ctrl+C again to abort.", file=sys.stderr)

    previous: Dict[int, Any] = {}
    if threading.current_thread() is threading.main_thread():
        for sig in (signal.SIGINT, getattr(signal, "SIGTERM", None)):
            if sig is not None:
                previous[sig] = signal.signal(sig, signal_handler)

    cache: Optional[ComparisonCache] = None
    decision_log = DecisionLog(config.decision_log)
    reporter = ProgressReporter(
        enable_dash=args.dash,
        banner=f"Workers: {config.worker_count}  |  Frames: {config.sampling.frames}",
        quit_event=cancel_event,
    )
    try:
        cache = ComparisonCache(config.cache.path, autosave_every=config.cache.autosave_every).open()
        logger.info("Cache: %s", cache.path)
        if cache.recovered_from_corruption:
            print(f"gif-dedupe: warning: cache was corrupt, moved to {cache.backup_path}", file=sys.stderr)
        if args.rebuild_cache:
            cache.rebuild()
        if args.prune_days is not None:
            removed = cache.prune(args.prune_days)
            print(f"pruned: {removed['fingerprints']} fingerprints, {removed['comparisons']} comparisons, {removed['digests']} digests")
        if not args.paths:
            return EXIT_OK

        reporter.start()
        report = scan(
            args.paths,
            config,
            cache=cache,
            reporter=reporter,
            cancel_event=cancel_event,
            decision_log=decision_log,
        )
        reporter.stop("Scan cancelled" if report.cancelled else "Scan complete")
        write_report(report_path, report)
        logger.info("Report written to %s", report_path)
        print(render_summary(report_payload(report), verbosity=args.verbosity))
        print(f"report: {report_path}")
        return EXIT_INTERRUPTED if report.cancelled else EXIT_OK
    except KeyboardInterrupt:
        logger.warning("Aborted by user")
        return EXIT_INTERRUPTED
    except ConfigurationError as e:
        logger.error("%s", e)
        return EXIT_USAGE
    except CacheUnwritableError as e:
        logger.error("Cache unusable: %s", e)
        return EXIT_FAILURE
    except OSError as e:
        logger.error("Run failed: %s", e)
        return EXIT_FAILURE
    finally:
        reporter.stop()
        if cache is not None:
            try:
                cache.close()
            except CacheUnwritableError as e:
                logger.error("Final cache write failed: %s", e)
        decision_log.close()
        for sig, handler in previous.items():
            signal.signal(sig, handler)
        logger.info("gif-dedupe session ended")


if __name__ == "__main__":
    sys.exit(main())
