"""On-device GGUF runtime backed by llama-cpp-python."""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any

from drivesense.core.llm.runtime import ModelFormatError, ModelHandle, ModelLoadError

logger = logging.getLogger(__name__)

SUPPORTED_SUFFIXES = (".gguf",)


class LlamaCppRuntime:
    """Runs quantized models locally through llama.cpp.

    Config keys: ``n_ctx`` (context window), ``max_tokens``, ``top_k``,
    ``n_gpu_layers`` (-1 offloads everything, 0 forces CPU).
    """

    def load(self, path: str, config: dict[str, Any]) -> ModelHandle:
        if Path(path).suffix.lower() not in SUPPORTED_SUFFIXES:
            raise ModelFormatError(
                f"{Path(path).name} is not a GGUF model; llama.cpp cannot load it"
            )
        try:
            from llama_cpp import Llama
        except ImportError as exc:
            raise ModelLoadError(
                "llama-cpp-python is not installed (pip install drivesense[llama])"
            ) from exc

        try:
            llm = Llama(
                model_path=path,
                n_ctx=int(config.get("n_ctx", 2048)),
                n_gpu_layers=int(config.get("n_gpu_layers", -1)),
                verbose=False,
            )
        except ValueError as exc:
            raise ModelLoadError(f"llama.cpp failed to load {path}: {exc}") from exc
        return ModelHandle.from_config(llm, Path(path).name, config)

    def generate(self, handle: ModelHandle, prompt: str) -> str:
        start = time.monotonic()
        output = handle.model(
            prompt,
            max_tokens=handle.max_tokens,
            top_k=handle.top_k,
            temperature=handle.temperature,
        )
        elapsed_ms = (time.monotonic() - start) * 1000
        logger.info(
            "llama.cpp generation: model=%s, latency=%.0fms", handle.name, elapsed_ms
        )
        return output["choices"][0]["text"]
