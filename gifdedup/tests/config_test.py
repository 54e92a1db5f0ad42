from pathlib import Path

import pytest
import yaml

from gifdedup.config import (
    DedupConfig,
    EscalationThresholds,
    PreFilterWeights,
    TriggerModelConfig,
    build_config,
    default_config_path,
    load_config,
    save_config,
)
from gifdedup.errors import ConfigurationError


def test_defaults():
    cfg = DedupConfig()
    assert cfg.prefilter.threshold_fraction == 0.15
    assert cfg.prefilter.max_score == 40 + 35 + 8 + 8 + 6 + 50 + 20 + 5
    assert cfg.prefilter.threshold_score == pytest.approx(0.15 * cfg.prefilter.max_score)
    assert cfg.thresholds.hamming_frame_threshold == 5
    assert cfg.thresholds.structural_pass_fraction == 0.80
    assert cfg.thresholds.color_pass_fraction == 0.85
    assert [t.confidence for t in cfg.thresholds.name_size_tiers] == [95, 80, 70]
    assert cfg.trigger.confidence_threshold == 60
    assert cfg.sampling.frames == 5
    assert cfg.thresholds.confirm_matches is True
    assert cfg.keep_order == ["resolution", "longer", "frames", "larger", "older"]
    assert cfg.worker_count >= 1


def test_load_yaml_overrides(tmp_path: Path):
    p = tmp_path / "config.yml"
    p.write_text(
        "workers: 3\n"
        "prefilter:\n  threshold_fraction: 0.2\n"
        "thresholds:\n  confirm_matches: false\n"
        "sampling:\n  frames: 8\n",
        encoding="utf-8",
    )
    cfg = load_config(p)
    assert cfg.workers == 3
    assert cfg.prefilter.threshold_fraction == 0.2
    assert cfg.thresholds.confirm_matches is False
    assert cfg.sampling.frames == 8
    # untouched sections keep their defaults
    assert cfg.trigger.confidence_threshold == 60


def test_missing_default_file_gives_defaults(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "nowhere"))
    monkeypatch.setattr("gifdedup.config.sys.platform", "linux")
    assert default_config_path() == tmp_path / "nowhere" / "gifdedup" / "config.yml"
    assert load_config() == DedupConfig()


def test_missing_explicit_file_is_an_error(tmp_path: Path):
    with pytest.raises(ConfigurationError):
        load_config(tmp_path / "missing.yml")


def test_invalid_yaml_is_an_error(tmp_path: Path):
    p = tmp_path / "bad.yml"
    p.write_text("prefilter: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        load_config(p)


@pytest.mark.parametrize(
    "data",
    [
        {"prefilter": {"threshold_fraction": 1.5}},
        {"prefilter": {"size_tiers": [[0.3, 5], [0.01, 35]]}},
        {"thresholds": {"hamming_frame_threshold": 0}},
        {"trigger": {"prior_weight": 0.9}},
        {"sampling": {"frames": 0}},
        {"unknown_key": 1},
        {"thresholds": {"typo_threshold": 3}},
        {"keep_order": ["biggest"]},
        {"keep_order": ["newer", "newer"]},
    ],
)
def test_invalid_values_are_rejected_not_clamped(data):
    with pytest.raises(ConfigurationError):
        build_config(data)


def test_assignment_is_validated():
    w = PreFilterWeights()
    with pytest.raises(ValueError):
        w.threshold_fraction = -1


def test_generation_tracks_thresholds():
    a = EscalationThresholds()
    b = EscalationThresholds(hamming_frame_threshold=6)
    assert a.generation() == EscalationThresholds().generation()
    assert a.generation() != b.generation()


def test_trigger_weights_must_sum_to_one():
    TriggerModelConfig(prior_weight=0.5, candidate_weight=0.2, size_weight=0.3)
    with pytest.raises(ValueError):
        TriggerModelConfig(prior_weight=0.5, candidate_weight=0.5, size_weight=0.3)


def test_save_and_reload(tmp_path: Path):
    cfg = build_config({"workers": 2, "prefilter": {"same_directory": 10}, "cache": {"path": str(tmp_path / "c.json")}})
    target = tmp_path / "sub" / "config.yml"
    save_config(cfg, target)
    assert not (target.parent / "config.yml.tmp").exists()
    assert yaml.safe_load(target.read_text(encoding="utf-8"))["workers"] == 2
    assert load_config(target).model_dump() == cfg.model_dump()


def test_keep_order_from_yaml(tmp_path: Path):
    p = tmp_path / "config.yml"
    p.write_text("keep_order: [shallower, smaller]\n", encoding="utf-8")
    assert load_config(p).keep_order == ["shallower", "smaller"]
