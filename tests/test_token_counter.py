"""Tests for the token estimation heuristic."""

from agent.messages import Message, ToolCallRequest
from agent.token_counter import (
    RESPONSE_OVERHEAD,
    estimate,
    estimate_history,
    estimate_message,
    estimate_tool_call,
    estimate_total_context,
)


class TestEstimate:

    def test_empty_and_none_are_zero(self):
        assert estimate("") == 0
        assert estimate(None) == 0
        assert estimate("   \n\t ") == 0

    def test_english_words(self):
        # 2 * 0.75 = 1.5, rounded up
        assert estimate("hello world") == 2
        assert estimate("one two three four") == 3

    def test_cjk_characters_weigh_half(self):
        assert estimate("你好世界") == 2
        assert estimate("你好世") == 2  # 1.5 rounded up

    def test_isolated_punctuation(self):
        assert estimate("( )") == 1  # 0.25 + 0.25
        assert estimate("{ } [ ]") == 1

    def test_code_tokens(self):
        # "x" word, "=" and "1;" code tokens: 3 * 0.75
        assert estimate("x = 1;") == 3
        assert estimate("hello, world") == 2

    def test_deterministic(self):
        sample = "def foo(bar): return bar * 2  # 你好"
        assert len({estimate(sample) for _ in range(5)}) == 1


class TestMessageEstimates:

    def test_tool_call_uses_serialized_length(self):
        # len("read") + len("{}") = 6, 6 * 0.4 = 2.4 -> 3
        assert estimate_tool_call("read", {}) == 3
        assert estimate_tool_call("read", "{}") == 3

    def test_message_includes_tool_calls(self):
        msg = Message.assistant_tool_calls([ToolCallRequest("read", {})])
        assert estimate_message(msg) == 3

    def test_message_tokens_are_cached(self):
        msg = Message.user("hello world")
        assert msg.tokens == 2
        assert msg.estimated_tokens == 2

    def test_history_and_total_context(self):
        history = [Message.user("hello world"), Message.assistant("one two three four")]
        assert estimate_history(history) == 5
        assert estimate_total_context(history, "be brief") == 5 + 2 + RESPONSE_OVERHEAD
        assert estimate_total_context([], None) == RESPONSE_OVERHEAD
