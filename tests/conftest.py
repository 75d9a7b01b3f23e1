"""Shared fakes and fixtures for the agent core tests."""

from collections import deque

import pytest

import config
from agent.llm.base import LLMResponse, ModelClient, ToolCall


class FakeModel(ModelClient):
    """Scripted model: each ``send`` pops the next response (or raises it)."""

    model = "fake-model"

    def __init__(self, *responses, summary: str = "Summary of earlier work."):
        self._responses = deque(responses)
        self.summary = summary
        self.calls: list[dict] = []
        self.generate_calls: list[str] = []

    def send(self, system_prompt, history, tools=None):
        self.calls.append({
            "system_prompt": system_prompt,
            "history": list(history),
            "tools": list(tools or []),
        })
        if not self._responses:
            raise AssertionError("FakeModel ran out of scripted responses")
        nxt = self._responses.popleft()
        if callable(nxt) and not isinstance(nxt, LLMResponse):
            nxt = nxt()
        if isinstance(nxt, Exception):
            raise nxt
        return nxt

    def generate(self, contents, *, system_prompt=None, model=None, temperature=None,
                 max_output_tokens=None):
        self.generate_calls.append(contents)
        return LLMResponse(text=self.summary)


def text(content: str) -> LLMResponse:
    return LLMResponse(text=content)


def calls(*specs) -> LLMResponse:
    """``calls(("read_file", {"path": "a"}), ...)`` -> tool-call response."""
    return LLMResponse(tool_calls=[ToolCall(name, args) for name, args in specs])


class FakeClock:
    """Millisecond clock advanced by hand."""

    def __init__(self, now: int = 0):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def data_dir(tmp_path, monkeypatch):
    """Point the data directory (sessions, logs) at a temp dir."""
    monkeypatch.setenv("REACTOR_DIR", str(tmp_path / "reactor"))
    config._reset_data_dir()
    yield tmp_path / "reactor"
    config._reset_data_dir()
