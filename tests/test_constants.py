"""Tests for shared defaults in constants.py."""

import dcbstore.constants as constants
from dcbstore.config import WriteStrategy


def test_default_strategy_is_known():
    assert constants.DEFAULT_STRATEGY in constants.WRITE_STRATEGIES


def test_strategies_match_settings_type():
    assert set(WriteStrategy.__args__) == set(constants.WRITE_STRATEGIES)


def test_limits_are_positive():
    assert constants.BUSY_TIMEOUT_MS > 0
    assert constants.READ_BATCH_SIZE > 0
    assert constants.SCHEMA_VERSION >= 1
