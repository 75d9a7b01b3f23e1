"""Tests for repeated tool-call detection."""

import pytest

from agent.loop_guard import LoopGuard, LoopStatus, fingerprint


def make_guard(clock, **kwargs):
    kwargs.setdefault("window_size", 10)
    kwargs.setdefault("threshold", 3)
    kwargs.setdefault("cooldown_ms", 5000)
    return LoopGuard(clock=clock, **kwargs)


class TestFingerprint:

    def test_argument_order_is_ignored(self):
        assert fingerprint("grep", {"a": 1, "b": 2}) == fingerprint("grep", {"b": 2, "a": 1})

    def test_metadata_keys_are_ignored(self):
        assert fingerprint("grep", {"q": "x", "commentary": "looking"}) == fingerprint("grep", {"q": "x"})

    def test_name_and_args_matter(self):
        assert fingerprint("grep", {"q": "x"}) != fingerprint("glob", {"q": "x"})
        assert fingerprint("grep", {"q": "x"}) != fingerprint("grep", {"q": "y"})
        assert fingerprint("grep", None) == fingerprint("grep", {})


class TestClassification:

    def test_progression(self, clock):
        guard = make_guard(clock)
        statuses = [guard.check_for_loop("read_file", {"path": "a"}).status for _ in range(7)]
        assert statuses == [
            LoopStatus.NONE,
            LoopStatus.NONE,
            LoopStatus.SUSPICIOUS,
            LoopStatus.LIKELY_LOOP,
            LoopStatus.LIKELY_LOOP,
            LoopStatus.CONFIRMED_LOOP,
            LoopStatus.CONFIRMED_LOOP,
        ]

    def test_counts_and_messages(self, clock):
        guard = make_guard(clock)
        first = guard.check_for_loop("read_file", {"path": "a"})
        assert first.occurrence_count == 1
        assert first.message is None
        guard.check_for_loop("read_file", {"path": "a"})
        third = guard.check_for_loop("read_file", {"path": "a"})
        assert third.occurrence_count == 3
        assert "read_file" in third.message
        assert not third.should_prompt

    def test_distinct_calls_do_not_trip(self, clock):
        guard = make_guard(clock)
        for i in range(20):
            assert guard.check_for_loop("read_file", {"path": f"f{i}"}).status is LoopStatus.NONE

    def test_window_is_bounded(self, clock):
        guard = make_guard(clock, window_size=4)
        for i in range(10):
            guard.check_for_loop("grep", {"q": i})
        assert len(guard.records) == 4
        assert guard.check_for_loop("grep", {"q": 0}).occurrence_count == 1

    def test_interleaved_calls_still_count(self, clock):
        guard = make_guard(clock)
        for _ in range(3):
            guard.check_for_loop("grep", {"q": "x"})
            guard.check_for_loop("glob", {"pattern": "*.py"})
        assert guard.check_for_loop("grep", {"q": "x"}).status is LoopStatus.LIKELY_LOOP

    def test_old_records_expire(self, clock):
        guard = make_guard(clock)
        for _ in range(3):
            guard.check_for_loop("grep", {"q": "x"})
        clock.advance(10_001)
        assert guard.check_for_loop("grep", {"q": "x"}).occurrence_count == 1

    def test_invalid_parameters(self, clock):
        with pytest.raises(ValueError):
            make_guard(clock, threshold=0)
        with pytest.raises(ValueError):
            make_guard(clock, window_size=0)


class TestCooldown:

    def test_prompt_once_per_cooldown(self, clock):
        guard = make_guard(clock)
        checks = [guard.check_for_loop("grep", {"q": "x"}) for _ in range(4)]
        assert checks[-1].should_prompt
        guard.mark_prompted()

        assert guard.in_cooldown()
        assert not guard.check_for_loop("grep", {"q": "x"}).should_prompt

        clock.advance(5000)
        assert not guard.in_cooldown()
        assert guard.check_for_loop("grep", {"q": "x"}).should_prompt

    def test_reset(self, clock):
        guard = make_guard(clock)
        for _ in range(4):
            guard.check_for_loop("grep", {"q": "x"})
        guard.mark_prompted()
        guard.reset()
        assert guard.records == ()
        assert not guard.in_cooldown()
