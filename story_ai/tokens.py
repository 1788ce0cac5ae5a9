"""Cheap token estimate used for memory budgeting."""

from __future__ import annotations

import re

_WESTERN_WORD = re.compile(r"[a-zA-Z0-9À-ÿ]+")
_WHITESPACE = re.compile(r"\s+")


def estimate_token_count(text: str) -> int:
    """Estimate tokens without a tokenizer.

    Each run of Latin letters/digits counts as one token; every other
    non-whitespace character (CJK, punctuation, symbols) counts as one.

    >>> estimate_token_count("hi 你好")
    3
    """
    if not text:
        return 0
    words = len(_WESTERN_WORD.findall(text))
    rest = _WHITESPACE.sub("", _WESTERN_WORD.sub("", text))
    return words + len(rest)
