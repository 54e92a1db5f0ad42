import pytest

from gifdedup.names import (
    common_prefix_length,
    core_name,
    core_name_similarity,
    lcs_ratio,
    name_similarity,
    positional_overlap,
    relative_size_difference,
    word_overlap,
)


@pytest.mark.parametrize(
    "name, expected",
    [
        ("cat_dance.gif", "cat_dance"),
        ("cat_dance (1).gif", "cat_dance"),
        ("cat_dance_copy.gif", "cat_dance"),
        ("Cat_Dance-HQ.webp", "cat_dance"),
        ("cat_dance_720p_v2.gif", "cat_dance"),
        ("v2.gif", "v2"),
    ],
)
def test_core_name(name, expected):
    assert core_name(name) == expected


def test_identical_stems_score_100_regardless_of_extension():
    assert name_similarity("/a/clip.gif", "/b/clip.webp") == 100.0


def test_core_match_scores_90():
    assert core_name_similarity("clip_final.gif", "clip (2).gif") == 90.0
    assert name_similarity("clip_final.gif", "clip (2).gif") >= 90.0


def test_unrelated_names_score_low():
    assert name_similarity("alpha.gif", "omega.gif") < 50


def test_strategies():
    assert common_prefix_length("abcdef.gif", "abcxyz.gif") == 3
    assert word_overlap("red_cat_jump.gif", "blue_cat_jump.gif") == pytest.approx(50.0)
    assert positional_overlap("abcd.gif", "abzd.gif") == pytest.approx(75.0)
    assert lcs_ratio("xxhelloyy.gif", "hello.gif") == pytest.approx(100.0 * 10 / 14)


def test_relative_size_difference():
    assert relative_size_difference(100, 100) == 0.0
    assert relative_size_difference(100, 50) == 0.5
    assert relative_size_difference(0, 0) == 0.0
