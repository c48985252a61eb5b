"""Bounded literal keyword counting."""
from __future__ import annotations

import re

KEYWORD_CAP = 3


def count_occurrences(text: str, keyword: str, cap: int = KEYWORD_CAP) -> int:
    """Case-insensitive, non-overlapping literal occurrences of *keyword* in
    *text*, never more than *cap*. Blank keywords never match."""
    kw = (keyword or "").strip()
    if not kw or not text or cap <= 0:
        return 0
    count = 0
    for _ in re.finditer(re.escape(kw), text, re.IGNORECASE):
        count += 1
        if count >= cap:
            break
    return count


def contains(text: str, keyword: str) -> bool:
    return count_occurrences(text, keyword, cap=1) > 0
