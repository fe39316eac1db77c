"""Tests for command-line argument handling."""

import run


def test_defaults_leave_settings_untouched():
    args = run.build_parser().parse_args([])
    cfg = run.settings_from_args(args)
    assert cfg.symbol == run.settings.symbol
    assert cfg.interval == run.settings.interval


def test_overrides_apply():
    args = run.build_parser().parse_args(["-s", "ethusdt", "-i", "1m", "-b", "2500", "--log-level", "DEBUG"])
    cfg = run.settings_from_args(args)
    assert cfg.symbol == "ETHUSDT"
    assert cfg.interval == "1m"
    assert cfg.account_balance == 2500.0
    assert cfg.log_level == "DEBUG"
    # The shared settings object is never mutated
    assert cfg is not run.settings
