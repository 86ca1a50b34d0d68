"""
Rough token estimates for when an upstream does not report usage.

Used only for streams cut short by a client disconnect, where the
upstream never got to send its usage frame. ~4 characters per token.
"""

import math
from collections.abc import Iterable, Mapping

_CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    if not text:
        return 0
    return math.ceil(len(text) / _CHARS_PER_TOKEN)


def estimate_message_tokens(messages: Iterable[Mapping[str, str]]) -> int:
    return sum(estimate_tokens(m.get("content") or "") for m in messages)
