"""Model runtime implementations."""

from drivesense.core.llm.runtimes.anthropic import AnthropicRuntime
from drivesense.core.llm.runtimes.llama_cpp import LlamaCppRuntime
from drivesense.core.llm.runtimes.mock import MockRuntime
from drivesense.core.llm.runtimes.openai import OpenAIRuntime

__all__ = ["AnthropicRuntime", "LlamaCppRuntime", "MockRuntime", "OpenAIRuntime"]
