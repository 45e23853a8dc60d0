"""Token estimation utility with CJK-aware heuristics."""

from __future__ import annotations

import math
import re

# CJK Unified, Korean Hangul, Hiragana, Katakana
_CJK_RANGES = ((0x4E00, 0x9FFF), (0xAC00, 0xD7AF), (0x3040, 0x309F), (0x30A0, 0x30FF))
_CJK_PATTERN = re.compile(
    "[" + "".join(f"{chr(lo)}-{chr(hi)}" for lo, hi in _CJK_RANGES) + "]"
)


class TokenCounter:
    """Estimates tokens for budget management.

    Character-based estimation: ``chars_per_token`` characters per token for
    Latin text, two characters per token for CJK. Budgets only need a stable,
    monotonic measure of size, not the exact tokenizer count.
    """

    def __init__(self, chars_per_token: int = 4):
        if chars_per_token <= 0:
            raise ValueError("chars_per_token must be positive")
        self.chars_per_token = chars_per_token

    def count(self, text: str) -> int:
        """Count tokens in a text string (0 for empty text)."""
        return self.estimate(text, self.chars_per_token)

    def count_entry(self, topic: str, content: str) -> int:
        """Token cost of a knowledge entry's topic and body."""
        return self.count(f"{topic} {content}")

    @staticmethod
    def estimate(text: str, chars_per_token: int = 4) -> int:
        """Estimate tokens using character-based heuristics.

        English: ~4 characters per token
        CJK (Korean, Japanese, Chinese): ~2 characters per token
        """
        if not text:
            return 0
        cjk_count = len(_CJK_PATTERN.findall(text))
        non_cjk = len(text) - cjk_count
        return math.ceil(non_cjk / chars_per_token) + math.ceil(cjk_count / 2)
