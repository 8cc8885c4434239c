from __future__ import annotations

from tollgate.core.config import get_settings
from tollgate.providers.llm.base import TextGenerator
from tollgate.providers.llm.fake import FakeTextGenerator


def get_text_generator() -> TextGenerator:
    settings = get_settings()
    provider = (settings.llm_provider or "fake").lower()

    if provider == "fake":
        return FakeTextGenerator()
    raise ValueError(f"unsupported_llm_provider:{provider}")
