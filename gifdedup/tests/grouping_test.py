from pathlib import Path

from conftest import make_record
from gifdedup.grouping import UnionFind, build_groups, make_keep_key
from gifdedup.models import ComparisonResult, FingerprintKey, PairClassification, PairKey, Verdict


def _pc(a: str, b: str, verdict: Verdict = Verdict.MATCH) -> PairClassification:
    return PairClassification(
        ComparisonResult(
            pair=PairKey.of(a, b),
            level_reached=2,
            verdict=verdict,
            confidence=95,
            metrics={},
            computed_at=0.0,
            file_keys=(FingerprintKey(1, 1.0), FingerprintKey(1, 1.0)),
            generation="g",
        )
    )


def test_union_find_smallest_root_wins():
    uf = UnionFind()
    uf.union("c", "b")
    uf.union("b", "a")
    uf.union("x", "y")
    assert uf.find("c") == "a"
    assert sorted(sorted(m) for m in uf.components().values()) == [["a", "b", "c"], ["x", "y"]]


def test_matches_are_grouped_transitively():
    records = {p: make_record(Path(p)) for p in ("/g/a.gif", "/g/b.gif", "/g/c.gif", "/g/d.gif", "/g/e.gif")}
    pairs = [
        _pc("/g/a.gif", "/g/b.gif"),
        _pc("/g/b.gif", "/g/c.gif"),
        _pc("/g/d.gif", "/g/e.gif", Verdict.NO_MATCH),
    ]
    groups = build_groups(pairs, records)
    assert len(groups) == 1
    assert groups[0].group_id == "group-0001"
    assert sorted(str(m) for m in groups[0].members) == ["/g/a.gif", "/g/b.gif", "/g/c.gif"]
    assert [pc.pair.as_list() for pc in groups[0].pairs] == [["/g/a.gif", "/g/b.gif"], ["/g/b.gif", "/g/c.gif"]]
    assert groups[0].duplicate_count == 2


def test_groups_are_numbered_by_smallest_member():
    records = {p: make_record(Path(p)) for p in ("/g/a.gif", "/g/b.gif", "/g/y.gif", "/g/z.gif")}
    groups = build_groups([_pc("/g/y.gif", "/g/z.gif"), _pc("/g/b.gif", "/g/a.gif")], records)
    assert [(g.group_id, str(g.members[0])) for g in groups] == [("group-0001", "/g/a.gif"), ("group-0002", "/g/y.gif")]


def test_best_copy_is_listed_first():
    records = {
        "/g/a.gif": make_record(Path("/g/a.gif"), width=640, height=360),
        "/g/b.gif": make_record(Path("/g/b.gif"), width=1920, height=1080, size=5_000),
        "/g/c.gif": make_record(Path("/g/c.gif"), width=1920, height=1080, size=9_000),
    }
    groups = build_groups([_pc("/g/a.gif", "/g/b.gif"), _pc("/g/a.gif", "/g/c.gif")], records)
    assert [str(m) for m in groups[0].members] == ["/g/c.gif", "/g/b.gif", "/g/a.gif"]


def test_keep_key_order_is_configurable():
    small_old = make_record(Path("/g/a.gif"), size=1_000, mtime=100.0)
    big_new = make_record(Path("/g/b.gif"), size=9_000, mtime=200.0)
    assert make_keep_key(["smaller"])(small_old) > make_keep_key(["smaller"])(big_new)
    assert make_keep_key(["newer"])(big_new) > make_keep_key(["newer"])(small_old)
