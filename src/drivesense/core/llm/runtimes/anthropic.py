"""Anthropic Claude runtime for networked companion tiers."""

from __future__ import annotations

import logging
import time
from typing import Any

from drivesense.core.llm.runtime import ModelHandle, ModelLoadError

logger = logging.getLogger(__name__)


class AnthropicRuntime:
    """Claude runtime using the Anthropic SDK. ``path`` is the model identifier."""

    def __init__(self, api_key: str) -> None:
        self.api_key = api_key
        self.client: Any = None

    def load(self, path: str, config: dict[str, Any]) -> ModelHandle:
        if not self.api_key:
            raise ModelLoadError("No Anthropic API key configured")
        if self.client is None:
            import anthropic

            self.client = anthropic.Anthropic(api_key=self.api_key)
        return ModelHandle.from_config(path, path, config)

    def generate(self, handle: ModelHandle, prompt: str) -> str:
        start = time.monotonic()
        response = self.client.messages.create(
            model=handle.model,
            max_tokens=handle.max_tokens,
            temperature=handle.temperature,
            messages=[{"role": "user", "content": prompt}],
        )
        elapsed_ms = (time.monotonic() - start) * 1000
        logger.info(
            "Anthropic generation: model=%s, tokens=%d+%d, latency=%.0fms",
            handle.model,
            response.usage.input_tokens,
            response.usage.output_tokens,
            elapsed_ms,
        )
        return response.content[0].text if response.content else ""
