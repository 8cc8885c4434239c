from __future__ import annotations

from typing import Iterable


class FakeTextGenerator:
    def __init__(self, response: str = "This is a fake response.") -> None:
        # Deterministic response keeps tests stable without external calls.
        self._response = response
        self.calls = 0

    def stream(self, messages: list[dict], *, model: str | None = None) -> Iterable[str]:
        # Ignore messages to avoid variability; yield word deltas like a streaming provider.
        _ = messages, model
        self.calls += 1
        for token in self._response.split():
            yield f"{token} "
