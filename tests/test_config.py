# tests/test_config.py
"""Tests for FxConfig and option parsing."""

import pytest

from fxinfer.config import OPTION_KEYS, FxConfig, RangeMode
from fxinfer.errors import ConfigError


class TestFromOptions:

    def test_no_options_tracks_no_ranges(self):
        cfg = FxConfig.from_options([])
        assert cfg.mode is RangeMode.BITS
        assert not cfg.interval
        assert not cfg.affine
        assert not cfg.rounding

    def test_affine_implies_interval(self):
        cfg = FxConfig.from_options(["affine"])
        assert cfg.mode is RangeMode.AFFINE
        assert cfg.interval and cfg.affine

    def test_flags(self):
        cfg = FxConfig.from_options(["round", "guard", "dpmult", "div2mult", "interval"])
        assert cfg.rounding and cfg.guarding
        assert cfg.double_precision_mults
        assert cfg.const_div_to_mult
        assert cfg.mode is RangeMode.INTERVAL

    def test_round_positive_implies_round(self):
        cfg = FxConfig.from_options(["round-positive"])
        assert cfg.round_positive and cfg.rounding

    def test_keys_are_case_and_space_insensitive(self):
        cfg = FxConfig.from_options([" Round ", "", "AFFINE"])
        assert cfg.rounding and cfg.affine

    def test_unknown_option(self):
        with pytest.raises(ConfigError) as info:
            FxConfig.from_options(["round", "saturate"])
        assert "saturate" in str(info.value)

    def test_overrides(self):
        cfg = FxConfig.from_options(["interval"], max_passes=10)
        assert cfg.max_passes == 10


class TestConfig:

    def test_defaults(self):
        cfg = FxConfig()
        assert cfg.mode is RangeMode.INTERVAL
        assert cfg.max_passes == 256
        assert cfg.real_width == 32
        assert cfg.fatal_warnings == frozenset()

    def test_frozen(self):
        cfg = FxConfig()
        with pytest.raises(Exception):
            cfg.rounding = True

    def test_round_positive_switches_rounding_on(self):
        assert FxConfig(round_positive=True).rounding

    def test_fatal_warnings_become_frozenset(self):
        cfg = FxConfig(fatal_warnings=["possible-overflow"])
        assert cfg.fatal_warnings == frozenset({"possible-overflow"})

    def test_with_changes(self):
        cfg = FxConfig().with_changes(guarding=True)
        assert cfg.guarding
        assert not FxConfig().guarding

    @pytest.mark.parametrize("options", [
        [],
        ["round", "interval"],
        ["round-positive", "guard", "affine"],
        ["dpmult", "div2mult", "interval"],
    ])
    def test_options_reproduce_config(self, options):
        cfg = FxConfig.from_options(options)
        assert FxConfig.from_options(cfg.options()) == cfg

    def test_options_are_known_keys(self):
        cfg = FxConfig.from_options(list(OPTION_KEYS))
        assert set(cfg.options()) <= set(OPTION_KEYS)


class TestValidate:

    def test_valid(self):
        assert FxConfig().validate() == []

    def test_problems(self):
        problems = FxConfig(max_passes=0, guarding=True).validate()
        assert "max_passes must be positive" in problems
        assert "guard has no effect without round" in problems

    def test_real_width(self):
        assert FxConfig(real_width=1).validate() == ["real_width must be at least 2"]
