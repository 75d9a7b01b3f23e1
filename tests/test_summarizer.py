"""Tests for the model-backed history summarizer."""

import pytest

from agent.errors import ModelTransportError, SummarizationError
from agent.messages import Message, ToolCallRequest
from agent.summarizer import MAX_CONTENT_CHARS, LLMSummarizer, build_summary_prompt

from .conftest import FakeModel


def test_prompt_format():
    prompt = build_summary_prompt([
        Message.user("x" * 2000),
        Message.assistant_tool_calls([ToolCallRequest("grep"), ToolCallRequest("read_file")]),
    ])
    assert "[USER]\n" + "x" * MAX_CONTENT_CHARS + "\n" in prompt
    assert "x" * (MAX_CONTENT_CHARS + 1) not in prompt
    assert "[ASSISTANT]\nCalled: grep, read_file" in prompt


def test_summarize_uses_generate():
    model = FakeModel(summary="  Read two files.  ")
    summarizer = LLMSummarizer(model, model="small-model")
    assert summarizer([Message.user("hi")]) == "Read two files."
    assert len(model.generate_calls) == 1
    assert summarizer.summarize([]) == ""
    assert len(model.generate_calls) == 1


def test_empty_answer_is_an_error():
    with pytest.raises(SummarizationError):
        LLMSummarizer(FakeModel(summary="   ")).summarize([Message.user("hi")])


def test_transport_error_is_wrapped():
    class Failing(FakeModel):
        def generate(self, contents, **kwargs):
            raise ModelTransportError("offline")

    with pytest.raises(SummarizationError) as exc_info:
        LLMSummarizer(Failing()).summarize([Message.user("hi")])
    assert isinstance(exc_info.value.cause, ModelTransportError)
