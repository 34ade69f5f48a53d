"""Model runtime protocol — abstract interface for text-generation backends."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable


@dataclass
class ModelHandle:
    """A loaded model plus the generation settings of the tier that loaded it."""

    model: Any            # runtime-specific object, or a remote model identifier
    name: str
    max_tokens: int = 512
    top_k: int = 40
    temperature: float = 0.3

    @classmethod
    def from_config(cls, model: Any, name: str, config: dict[str, Any]) -> ModelHandle:
        return cls(
            model=model,
            name=name,
            max_tokens=int(config.get("max_tokens", 512)),
            top_k=int(config.get("top_k", 40)),
            temperature=float(config.get("temperature", 0.3)),
        )


class ModelRuntimeError(Exception):
    """Base exception for model runtime failures."""


class ModelAssetError(ModelRuntimeError):
    """The model asset is missing or could not be copied into the cache."""


class ModelFormatError(ModelRuntimeError):
    """The model asset exists but the runtime cannot load its format."""


class ModelLoadError(ModelRuntimeError):
    """The runtime failed to bring the model online."""


@runtime_checkable
class ModelRuntime(Protocol):
    """Capability interface for an on-device (or remote) text generator.

    Both methods are blocking; callers run them off the event loop.
    """

    def load(self, path: str, config: dict[str, Any]) -> Any:
        """Load the model at ``path`` (or named ``path``) and return a handle."""
        ...

    def generate(self, handle: Any, prompt: str) -> str:
        """Generate a completion for ``prompt`` using ``handle``."""
        ...


def create_runtime(
    runtime_name: str,
    api_key: str = "",
    response_content: str | None = None,
) -> ModelRuntime:
    """Factory function to create a model runtime by name.

    Args:
        runtime_name: "llama_cpp", "anthropic", "openai", or "mock"
        api_key: API key for the remote runtimes.
        response_content: Canned response for the mock runtime.

    Returns:
        A ModelRuntime instance.
    """
    if runtime_name == "llama_cpp":
        from drivesense.core.llm.runtimes.llama_cpp import LlamaCppRuntime

        return LlamaCppRuntime()
    elif runtime_name == "anthropic":
        from drivesense.core.llm.runtimes.anthropic import AnthropicRuntime

        return AnthropicRuntime(api_key=api_key)
    elif runtime_name == "openai":
        from drivesense.core.llm.runtimes.openai import OpenAIRuntime

        return OpenAIRuntime(api_key=api_key)
    elif runtime_name == "mock":
        from drivesense.core.llm.runtimes.mock import MockRuntime

        if response_content is None:
            return MockRuntime()
        return MockRuntime(response_content=response_content)
    else:
        raise ValueError(f"Unknown model runtime: {runtime_name}")
