"""Natural-looking local parts for generated addresses.

Prefixes combine two or three common word fragments with a few digits, e.g.
``emmariver42`` or ``mike-blue0317``, instead of opaque random strings.
"""

from __future__ import annotations

import random
import secrets
from typing import Optional

MIN_PREFIX_LENGTH = 8
MAX_PREFIX_LENGTH = 16

WORD_FRAGMENTS = (
    # first names
    "john", "jane", "mike", "sarah", "alex", "chris", "david", "emma",
    "james", "mary", "lucy", "tom", "anna", "leo", "nina", "sam",
    # everyday words
    "mail", "user", "info", "hello", "home", "work", "team", "club",
    "city", "river", "stone", "cloud", "light", "blue", "green", "red",
    "sun", "moon", "star", "sky", "day", "night", "spring", "winter",
    "north", "south", "east", "west", "book", "note", "cafe", "park",
)


def generate_email_prefix(rng: Optional[random.Random] = None) -> str:
    """Return a random prefix of 8 to 16 characters that starts with a letter.

    Args:
        rng: Random source; defaults to the OS CSPRNG.
    """
    rng = rng or secrets.SystemRandom()

    words = [rng.choice(WORD_FRAGMENTS) for _ in range(rng.choice((2, 3)))]
    separator = "-" if rng.random() < 0.3 else ""
    prefix = separator.join(words)

    digit_count = rng.randint(2, 4)
    digits = str(rng.randrange(10**digit_count)).zfill(digit_count)
    if rng.random() < 0.7:
        prefix += digits
    else:
        position = len(words[0]) + len(separator)
        prefix = prefix[:position] + digits + prefix[position:]

    if len(prefix) < MIN_PREFIX_LENGTH:
        prefix += str(rng.randrange(10, 100))
        prefix += "0" * (MIN_PREFIX_LENGTH - len(prefix))
    prefix = prefix[:MAX_PREFIX_LENGTH].rstrip("-")

    if prefix[0].isdigit():
        prefix = (rng.choice(WORD_FRAGMENTS) + prefix)[:MAX_PREFIX_LENGTH]
    return prefix


__all__ = ["generate_email_prefix"]
