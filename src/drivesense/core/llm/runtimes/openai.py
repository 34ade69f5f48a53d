"""OpenAI GPT runtime for networked companion tiers."""

from __future__ import annotations

import logging
import time
from typing import Any

from drivesense.core.llm.runtime import ModelHandle, ModelLoadError

logger = logging.getLogger(__name__)


class OpenAIRuntime:
    """OpenAI runtime using the OpenAI SDK. ``path`` is the model identifier."""

    def __init__(self, api_key: str) -> None:
        self.api_key = api_key
        self.client: Any = None

    def load(self, path: str, config: dict[str, Any]) -> ModelHandle:
        if not self.api_key:
            raise ModelLoadError("No OpenAI API key configured")
        if self.client is None:
            import openai

            self.client = openai.OpenAI(api_key=self.api_key)
        return ModelHandle.from_config(path, path, config)

    def generate(self, handle: ModelHandle, prompt: str) -> str:
        start = time.monotonic()
        response = self.client.chat.completions.create(
            model=handle.model,
            max_tokens=handle.max_tokens,
            temperature=handle.temperature,
            messages=[{"role": "user", "content": prompt}],
        )
        elapsed_ms = (time.monotonic() - start) * 1000
        logger.info(
            "OpenAI generation: model=%s, latency=%.0fms", handle.model, elapsed_ms
        )

        choice = response.choices[0] if response.choices else None
        return choice.message.content or "" if choice else ""
