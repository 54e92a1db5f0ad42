#!/usr/bin/env python3
"""
gifdedup – duplicate detection for GIFs, animated images and short videos.

    from gifdedup import scan
    report = scan(["~/gifs"])
    for group in report.groups:
        print(group.members)
"""
from gifdedup.scanner import scan

__all__ = [
    "scan",
    "errors",
    "models",
    "config",
    "codec",
    "cache",
    "hashers",
    "names",
    "probe",
    "frames",
    "extractor",
    "prefilter",
    "trigger",
    "matcher",
    "grouping",
    "scanner",
    "report",
    "progress",
    "cli",
]
