"""Cheap length-based token estimate."""

import math
from collections.abc import Iterable

from models import Message

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """Approximate the token count of text as ceil(len / 4)."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_message_tokens(messages: Iterable[Message]) -> int:
    """Sum the estimated tokens of every message's content."""
    return sum(estimate_tokens(msg.content) for msg in messages)
