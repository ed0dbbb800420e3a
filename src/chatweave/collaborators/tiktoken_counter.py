"""Token counter backed by tiktoken (optional extra)."""

from __future__ import annotations

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass
class TiktokenCounter:
    """Counts chat-message tokens the way OpenAI chat models are billed.

    Each message costs its encoded content plus a fixed per-message
    overhead; a `name` adds its own tokens plus one.
    """

    encoding: str = "cl100k_base"
    per_message: int = 3
    per_name: int = 1

    def __post_init__(self) -> None:
        try:
            import tiktoken

            self._enc = tiktoken.get_encoding(self.encoding)
        except ImportError:
            raise ImportError(
                "tiktoken package required. Install with: uv pip install 'chatweave[tiktoken]'"
            )

    def count_text(self, text: str) -> int:
        return len(self._enc.encode(text))

    def __call__(self, role: str, content: str, name: str | None = None) -> int:
        tokens = self.per_message + self.count_text(content)
        if name:
            tokens += self.per_name + self.count_text(name)
        return tokens
