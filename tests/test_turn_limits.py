"""Tests for the limits registry and config overrides."""

from unittest import mock

import pytest

from agent import turn_limits


@pytest.fixture(autouse=True)
def restore_overrides():
    yield
    turn_limits.reload()


def test_defaults():
    with mock.patch("config.get", return_value={}):
        turn_limits.reload()
    assert turn_limits.get_limit("loop_guard.threshold") == 3
    assert turn_limits.get_limit("dispatcher.max_batch") == 10


def test_unknown_name():
    with pytest.raises(KeyError):
        turn_limits.get_limit("loop_guard.treshold")


def test_config_override():
    with mock.patch("config.get", return_value={"agent.max_steps": "40"}):
        turn_limits.reload()
    assert turn_limits.get_limit("agent.max_steps") == 40
    assert turn_limits.get_limit("agent.token_budget") == 8000
