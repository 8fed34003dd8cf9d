"""Cheap length-based token estimate used for context budgeting only."""

import math

_CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / _CHARS_PER_TOKEN)
