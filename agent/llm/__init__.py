"""LLM abstraction layer — provider-agnostic interface for model calls.

Re-exports the public API so consumers can write:
    from agent.llm import ModelClient, OpenAIAdapter, LLMResponse, ...
"""

from .base import FunctionSchema, LLMResponse, ModelClient, ToolCall, UsageMetadata
from .openai_adapter import OpenAIAdapter
