"""Mock model runtime for testing."""

from __future__ import annotations

import threading
from typing import Any

from drivesense.core.llm.runtime import ModelHandle, ModelLoadError

DEFAULT_RESPONSE = """\
## Driving Risk Assessment

Risk Level: LOW

Risk Factors:
None identified.

Recommendations:
1. Continue driving safely and monitor your condition
2. Take regular breaks every 2 hours
3. Stay hydrated and ensure proper ventilation
"""


class MockRuntime:
    """Mock runtime — returns a canned response.

    ``fail_paths`` makes ``load`` fail for matching asset names.
    ``gate`` (a threading.Event) blocks ``generate`` until set, which lets
    tests hold an inference in flight.
    ``load_gate`` does the same for ``load``, holding the loader in Loading.
    """

    def __init__(
        self,
        response_content: str = DEFAULT_RESPONSE,
        *,
        fail_paths: set[str] | None = None,
        gate: threading.Event | None = None,
        error: Exception | None = None,
        load_gate: threading.Event | None = None,
    ) -> None:
        self.response_content = response_content
        self.fail_paths = fail_paths or set()
        self.gate = gate
        self.error = error
        self.load_gate = load_gate
        self.loaded_paths: list[str] = []
        self.last_prompt: str = ""
        self.call_count: int = 0
        self._lock = threading.Lock()

    def load(self, path: str, config: dict[str, Any]) -> ModelHandle:
        if self.load_gate is not None:
            self.load_gate.wait(timeout=10)
        self.loaded_paths.append(path)
        if any(path.endswith(name) for name in self.fail_paths):
            raise ModelLoadError(f"mock load failure for {path}")
        return ModelHandle.from_config("mock", path, config)

    def generate(self, handle: ModelHandle, prompt: str) -> str:
        with self._lock:
            self.call_count += 1
            self.last_prompt = prompt
        if self.gate is not None:
            self.gate.wait(timeout=10)
        if self.error is not None:
            raise self.error
        return self.response_content
