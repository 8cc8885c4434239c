from __future__ import annotations

from typing import Iterable, Protocol


class TextGenerator(Protocol):
    def stream(self, messages: list[dict], *, model: str | None = None) -> Iterable[str]:
        ...
