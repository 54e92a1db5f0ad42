import os
import shutil
import threading
from pathlib import Path
from unittest.mock import patch

import pytest
from PIL import Image

from conftest import FakeProber, FakeSampler, make_record, noise_frame, write_gif
from gifdedup.cache import ComparisonCache
from gifdedup.config import CacheConfig, DedupConfig, TriggerModelConfig
from gifdedup.errors import CacheUnwritableError
from gifdedup.extractor import FingerprintExtractor
from gifdedup.matcher import EscalationMatcher
from gifdedup.models import Verdict
from gifdedup.scanner import collect_population, iter_media_files, normalize_patterns, scan

BASE_HASHES = (0x0F0F0F0F0F0F0F0F,) * 5
ONE_BIT_OFF = tuple(h ^ 1 for h in BASE_HASHES)
OTHER_HASHES = tuple(h ^ 0xFFFFFFFF00000000 for h in BASE_HASHES)


def _config(**kw) -> DedupConfig:
    return DedupConfig(workers=2, **kw)


def test_normalize_patterns():
    assert normalize_patterns(["gif", ".webp", "*.mp4", "clip_??.gif", ""]) == ["*.gif", "*.webp", "*.mp4", "clip_??.gif"]
    assert normalize_patterns(None) == []


def test_iter_media_files_respects_patterns_and_depth(tmp_path):
    for rel in ("a.gif", "notes.txt", "sub/b.gif", "sub/deeper/c.webp"):
        p = tmp_path / rel
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_bytes(b"x")
    names = lambda it: sorted(p.name for p in it)
    assert names(iter_media_files(tmp_path, ["gif", "webp"], None)) == ["a.gif", "b.gif", "c.webp"]
    assert names(iter_media_files(tmp_path, ["gif", "webp"], 0)) == ["a.gif"]
    assert names(iter_media_files(tmp_path, ["gif", "webp"], 1)) == ["a.gif", "b.gif"]


def test_collect_population_dedupes_and_reports_missing(tmp_path):
    gif = write_gif(tmp_path / "a.gif", (1, 2))
    files, missing = collect_population([tmp_path, gif, tmp_path / "gone.gif"], ["*.gif"], None)
    assert files == [gif.resolve()]
    assert [m.reason for m in missing] == ["not found"]


def test_byte_identical_files_match_at_level_one(tmp_path):
    a = write_gif(tmp_path / "a.gif", (1, 2, 3, 4, 5))
    shutil.copyfile(a, tmp_path / "b.gif")
    report = scan([tmp_path], _config())

    assert len(report.pairs) == 1
    r = report.pairs[0].result
    assert (r.verdict, r.level_reached, r.confidence) == (Verdict.MATCH, 1, 100)
    assert report.group_signature() == [[str((tmp_path / "a.gif").resolve()), str((tmp_path / "b.gif").resolve())]]
    assert report.stats["deep_comparisons"] == 0
    assert not report.cancelled


def test_unanalyzable_files_are_excluded_with_reason(tmp_path):
    write_gif(tmp_path / "good.gif", (1, 2, 3))
    (tmp_path / "broken.gif").write_bytes(b"definitely not an image")
    report = scan([tmp_path, tmp_path / "missing.gif"], _config())
    reasons = {Path(e.path).name: e.reason for e in report.excluded}
    assert reasons["missing.gif"] == "not found"
    assert reasons["broken.gif"].startswith("probe failed")
    assert report.stats["analyzable"] == 1
    assert report.pairs == []


def _seed(tmp_path: Path, cache: ComparisonCache, files, mtime: float = 1_700_000_000):
    """
    Opaque files with hand-made cached fingerprints.

    files: (relative path, size, make_record overrides) per file; an "mtime"
    override also stamps the file on disk.
    """
    recs = []
    for rel, size, overrides in files:
        path = tmp_path / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(os.urandom(size))
        stamp = overrides.pop("mtime", mtime)
        os.utime(path, (stamp, stamp))
        st = path.stat()
        rec = make_record(path.resolve(), size=st.st_size, mtime=st.st_mtime, **overrides)
        cache.put_fingerprint(rec)
        recs.append(rec)
    frames = [noise_frame(s, 64) for s in range(5)]
    sampler = FakeSampler({str(r.path): frames for r in recs})
    return sorted({r.path.parent for r in recs}), sampler


def _seed_deep_pair(tmp_path: Path, cache: ComparisonCache):
    """Two opaque files whose cached fingerprints only a deep comparison can settle."""
    return _seed(tmp_path, cache, [("x/alpha.gif", 1000, {}), ("y/omega.gif", 1100, {"hashes": ONE_BIT_OFF})])


def test_second_run_reuses_cached_comparisons(tmp_path):
    cache_path = tmp_path / "cache" / "cache.json"
    cache = ComparisonCache(cache_path).open()
    roots, sampler = _seed_deep_pair(tmp_path, cache)

    first = scan(roots, _config(), cache=cache, prober=FakeProber(), sampler=sampler)
    assert first.stats["deep_comparisons"] == 1
    assert first.pairs[0].result.level_reached == 6
    assert first.pairs[0].result.verdict is Verdict.MATCH

    calls = len(sampler.calls)
    second = scan(roots, _config(), cache=ComparisonCache(cache_path), prober=FakeProber(), sampler=sampler)
    assert second.stats["deep_comparisons"] == 0
    assert second.stats["cache_hits"] == 1
    assert second.pairs[0].from_cache
    assert second.group_signature() == first.group_signature()
    assert len(sampler.calls) == calls


def test_truncated_cache_is_recovered_before_scanning(tmp_path):
    media = tmp_path / "media"
    a = write_gif(media / "a.gif", (1, 2, 3))
    shutil.copyfile(a, media / "b.gif")
    cache_path = tmp_path / "cache.json"
    config = _config(cache=CacheConfig(path=cache_path))
    scan([media], config)
    text = cache_path.read_text(encoding="utf-8")
    cache_path.write_text(text[: len(text) // 2], encoding="utf-8")

    report = scan([media], config)
    assert report.stats["cache"]["recovered_from_corruption"] is True
    assert report.stats["cache_hits"] == 0
    assert list(tmp_path.glob("cache.json.corrupt-*.bak"))
    assert len(report.groups) == 1


def test_cancelled_scan_returns_partial_report(tmp_path):
    write_gif(tmp_path / "a.gif", (1, 2, 3))
    write_gif(tmp_path / "b.gif", (1, 2, 3))
    event = threading.Event()
    event.set()
    report = scan([tmp_path], _config(), cancel_event=event)
    assert report.cancelled
    assert report.pairs == []
    assert report.stats["files"] == 2


def test_oversized_image_is_excluded_without_aborting_scan(tmp_path, monkeypatch):
    # 64x64 is past twice the pixel limit, where Pillow raises instead of warning
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 1500)
    write_gif(tmp_path / "huge.gif", (1, 2, 3), size=64)
    write_gif(tmp_path / "small.gif", (1, 2, 3), size=32)
    report = scan([tmp_path], _config())
    reasons = {Path(e.path).name: e.reason for e in report.excluded}
    assert reasons["huge.gif"].startswith("probe failed")
    assert report.stats["analyzable"] == 1


def test_unexpected_fingerprint_error_excludes_only_that_file(tmp_path):
    write_gif(tmp_path / "bad.gif", (1, 2, 3))
    write_gif(tmp_path / "good.gif", (1, 2, 3))
    real = FingerprintExtractor.fingerprint

    def flaky(self, path):
        if path.name == "bad.gif":
            raise RuntimeError("decoder exploded")
        return real(self, path)

    with patch.object(FingerprintExtractor, "fingerprint", flaky):
        report = scan([tmp_path], _config())
    reasons = {Path(e.path).name: e.reason for e in report.excluded}
    assert reasons == {"bad.gif": "unexpected error: RuntimeError: decoder exploded"}
    assert report.stats["analyzable"] == 1


def test_unexpected_comparison_error_degrades_that_pair(tmp_path):
    a = write_gif(tmp_path / "a.gif", (1, 2, 3))
    shutil.copyfile(a, tmp_path / "b.gif")
    with patch.object(EscalationMatcher, "assess", side_effect=RuntimeError("boom")):
        report = scan([tmp_path], _config())
    assert len(report.pairs) == 1
    pc = report.pairs[0]
    assert pc.result.verdict is Verdict.NO_MATCH
    assert pc.degraded_reason == "comparison_error"
    assert report.degraded_reasons == {"comparison_error": 1}
    assert report.groups == []


def test_unwritable_cache_still_aborts_scan(tmp_path):
    a = write_gif(tmp_path / "a.gif", (1, 2, 3))
    shutil.copyfile(a, tmp_path / "b.gif")
    with patch.object(EscalationMatcher, "assess", side_effect=CacheUnwritableError("disk full")):
        with pytest.raises(CacheUnwritableError):
            scan([tmp_path], _config())


def test_deep_budget_goes_to_the_same_pairs_every_run(tmp_path):
    cache_path = tmp_path / "cache" / "cache.json"
    cache = ComparisonCache(cache_path).open()
    # contents 1-2 bits apart; sizes too far apart for levels 4 and 5
    roots, sampler = _seed(
        tmp_path,
        cache,
        [
            ("p/alpha.gif", 1000, {}),
            ("q/omega.gif", 1300, {"hashes": ONE_BIT_OFF}),
            ("r/kappa.gif", 1700, {"hashes": tuple(h ^ 2 for h in BASE_HASHES)}),
        ],
    )
    config = DedupConfig(workers=1, trigger=TriggerModelConfig(min_deep_budget=1, max_deep_fraction=0.01))

    first = scan(roots, config, cache=cache, prober=FakeProber(), sampler=sampler)
    second = scan(roots, config, cache=ComparisonCache(cache_path), prober=FakeProber(), sampler=sampler)
    wider = DedupConfig(workers=3, trigger=config.trigger)
    third = scan(roots, wider, cache=ComparisonCache(cache_path), prober=FakeProber(), sampler=sampler)

    assert first.stats["deep_comparisons"] == 1
    assert len(first.groups) == 1 and len(first.groups[0].members) == 2
    assert second.group_signature() == first.group_signature()
    assert third.group_signature() == first.group_signature()
    assert second.stats["deep_comparisons"] == 0
    assert second.stats["trigger"]["deep_cached"] == 1
    assert second.degraded_reasons == first.degraded_reasons == {"budget_exhausted": 2}


def test_matches_carry_confirmation_under_default_config(tmp_path):
    cache = ComparisonCache().open()
    # identical structural hashes: level 2 MATCH
    roots, sampler = _seed(tmp_path, cache, [("x/alpha.gif", 1000, {}), ("y/omega.gif", 1100, {})])
    report = scan(roots, _config(), cache=cache, prober=FakeProber(), sampler=sampler)

    assert len(report.pairs) == 1
    r = report.pairs[0].result
    assert (r.verdict, r.level_reached) == (Verdict.MATCH, 2)
    assert r.metrics["confirmation"]["verdict"] == "MATCH"
    assert report.stats["deep_comparisons"] == 1


def test_unrelated_files_never_reach_the_matcher(tmp_path):
    cache = ComparisonCache().open()
    week = 7 * 86400
    roots, sampler = _seed(
        tmp_path,
        cache,
        [
            ("holiday/sunset.gif", 10_000, {}),
            ("pets/kitten.gif", 30_000, {"hashes": OTHER_HASHES, "mtime": 1_700_000_000 + week, "width": 640, "height": 360}),
        ],
    )
    prober = FakeProber()
    with patch.object(EscalationMatcher, "assess") as assess:
        report = scan(roots, _config(), cache=cache, prober=prober, sampler=sampler)
    assert report.stats["candidates"] == 0
    assert report.pairs == []
    assess.assert_not_called()
    assert sampler.calls == []
    assert prober.calls == []


def test_keep_order_decides_which_copy_is_listed_first(tmp_path):
    old = write_gif(tmp_path / "old.gif", (1, 2, 3))
    new = tmp_path / "new.gif"
    shutil.copyfile(old, new)
    os.utime(old, (1_600_000_000, 1_600_000_000))
    os.utime(new, (1_700_000_000, 1_700_000_000))

    default = scan([tmp_path], _config())
    newest_first = scan([tmp_path], _config(keep_order=["newer"]))
    assert default.groups[0].members[0].name == "old.gif"
    assert newest_first.groups[0].members[0].name == "new.gif"
