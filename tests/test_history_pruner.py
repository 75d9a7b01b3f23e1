"""Tests for history pruning."""

import random
from unittest import mock

from agent.history_pruner import SUMMARY_PREFIX, is_summary, prune, sanitize_history
from agent.messages import Message, Role, ToolCallRequest, validate_history
from agent.token_counter import estimate_history

WORDS_75 = " ".join(["alpha"] * 100)


def conversation() -> list[Message]:
    call = ToolCallRequest("read_file", {"path": "a.py"}, id="call_1")
    return [
        Message.system("You are helpful"),
        Message.user(WORDS_75),
        Message.assistant(WORDS_75),
        Message.user(WORDS_75),
        Message.assistant_tool_calls([call]),
        Message.tool_result("call_1", "print('hi')"),
        Message.assistant(WORDS_75),
        Message.user(WORDS_75),
        Message.assistant(WORDS_75),
        Message.user("and now?"),
    ]


def positions(result: list[Message], original: list[Message]) -> list[int]:
    ids = [id(m) for m in original]
    return [ids.index(id(m)) for m in result if id(m) in ids]


class TestPrune:

    def test_within_target_is_unchanged(self):
        history = conversation()
        summarizer = mock.Mock()
        result = prune(history, 10_000, summarizer)
        assert result.new_history == history
        assert result.removed_count == 0
        summarizer.summarize.assert_not_called()

    def test_bound_and_system_messages(self):
        history = conversation()
        result = prune(history, 200)
        assert result.tokens_after <= 200 < result.tokens_before
        assert estimate_history(result.new_history) == result.tokens_after
        assert history[0] in result.new_history
        # Most recent user turn survives
        assert result.new_history[-1].content == "and now?"
        assert result.removed_count == len(history) - len(result.new_history)

    def test_order_is_preserved(self):
        history = conversation()
        result = prune(history, 250)
        idx = positions(result.new_history, history)
        assert idx == sorted(idx)

    def test_tool_result_kept_with_its_call(self):
        history = conversation()
        result = prune(history, 200)
        assert validate_history(result.new_history) == []
        kept_ids = {m.tool_call_id for m in result.new_history if m.role is Role.TOOL}
        assert kept_ids == {"call_1"}

    def test_system_floor(self):
        history = [Message.system(WORDS_75), Message.system(WORDS_75), Message.user(WORDS_75)]
        result = prune(history, 100)
        assert [m.role for m in result.new_history] == [Role.SYSTEM, Role.SYSTEM]
        assert result.tokens_after == 150

    def test_summary_is_prepended_and_fits(self):
        history = conversation()
        summarizer = mock.Mock()
        summarizer.summarize.return_value = "The user asked for a file and it was read."
        result = prune(history, 200, summarizer)

        summarizer.summarize.assert_called_once_with(history[-10:])
        first = result.new_history[0]
        assert first.role is Role.SYSTEM
        assert first.content.startswith(SUMMARY_PREFIX)
        assert result.summary == first.content
        assert result.tokens_after <= 200

    def test_long_summary_is_trimmed_to_budget(self):
        history = conversation()
        result = prune(history, 200, lambda msgs: " ".join(["word"] * 1000))
        assert result.tokens_after <= 200
        if result.summary:
            assert result.new_history[0].content == result.summary

    def test_summarizer_failure_keeps_pruning(self):
        history = conversation()

        def broken(_msgs):
            raise RuntimeError("rate limited")

        result = prune(history, 200, broken)
        assert result.summary == ""
        assert result.summary_error == "rate limited"
        assert not result.new_history[0].content.startswith(SUMMARY_PREFIX)
        assert result.tokens_after <= 200

    def test_random_histories_hold_invariants(self):
        rng = random.Random(7)
        for _ in range(40):
            history = [Message.system("rules " * rng.randint(1, 20))]
            n_calls = 0
            for _ in range(rng.randint(1, 25)):
                kind = rng.choice(["user", "assistant", "tools"])
                if kind == "user":
                    history.append(Message.user("ask " * rng.randint(1, 80)))
                elif kind == "assistant":
                    history.append(Message.assistant("answer " * rng.randint(1, 80)))
                else:
                    n_calls += 1
                    cid = f"call_{n_calls}"
                    history.append(Message.assistant_tool_calls([ToolCallRequest("grep", {"q": cid}, id=cid)]))
                    history.append(Message.tool_result(cid, "hit " * rng.randint(1, 80)))
            target = rng.randint(10, 300)
            result = prune(history, target)

            systems = [m for m in history if m.role is Role.SYSTEM]
            floor = estimate_history(systems)
            assert result.tokens_after <= result.tokens_before
            assert result.tokens_after <= max(target, floor)
            assert all(s in result.new_history for s in systems)
            idx = positions(result.new_history, history)
            assert idx == sorted(idx)
            assert validate_history(result.new_history) == []


class TestSanitize:

    def test_drops_orphan_tool_messages(self):
        history = [
            Message.user("hi"),
            Message.tool_result("call_missing", "stale"),
            Message.assistant("ok"),
        ]
        assert [m.role for m in sanitize_history(history)] == [Role.USER, Role.ASSISTANT]


class TestRepeatedCompaction:

    def test_new_summary_replaces_older_ones(self):
        summarizer = mock.Mock()
        summarizer.summarize.side_effect = ["first round", "second round", "third round", "fourth round"]
        history = conversation()
        for step in range(4):
            history = history + [
                Message.assistant(WORDS_75), Message.user(WORDS_75),
                Message.assistant(WORDS_75), Message.user(f"step {step}"),
            ]
            history = prune(history, 200, summarizer, summary_window=4).new_history

            summaries = [m for m in history if is_summary(m)]
            assert len(summaries) == 1
            assert history[0] is summaries[0]
            assert history[1].content == "You are helpful"

        assert history[0].content == SUMMARY_PREFIX + "fourth round"
        # Earlier summaries fall outside the window but still reach the summarizer
        second_input = summarizer.summarize.call_args_list[1].args[0]
        assert second_input[0].content == SUMMARY_PREFIX + "first round"
        assert len(second_input) == 5

    def test_failed_summarizer_keeps_previous_summary(self):
        previous = Message.system(SUMMARY_PREFIX + "The user wanted a file read.")
        history = [previous] + conversation()

        def broken(_msgs):
            raise RuntimeError("rate limited")

        result = prune(history, 200, broken)
        assert result.summary == ""
        assert result.new_history[0] is previous
        assert [m for m in result.new_history if is_summary(m)] == [previous]
