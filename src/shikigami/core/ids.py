"""Short, prefix-addressable task identifiers."""

from __future__ import annotations

import secrets
import string
from collections.abc import Container

ID_PREFIX = "sk-"
MIN_LENGTH = 4
MAX_LENGTH = 6
ATTEMPTS_PER_LENGTH = 10
FALLBACK_ATTEMPTS = 1000

_ALPHABET = string.ascii_lowercase + string.digits


def generate_id(existing_ids: Container[str] | None = None) -> str:
    """Generate ``sk-`` plus 4-6 lowercase alphanumerics not present in ``existing_ids``.

    Starts at the shortest length and only grows after repeated collisions so ids
    stay easy to type and to abbreviate.
    """

    for length in range(MIN_LENGTH, MAX_LENGTH + 1):
        for _ in range(ATTEMPTS_PER_LENGTH):
            candidate = f"{ID_PREFIX}{_random_base(length)}"
            if existing_ids is None or candidate not in existing_ids:
                return candidate

    # Last resort: many more draws at full length before giving up.
    for _ in range(FALLBACK_ATTEMPTS):
        candidate = f"{ID_PREFIX}{_random_base(MAX_LENGTH)}"
        if existing_ids is None or candidate not in existing_ids:
            return candidate
    raise RuntimeError("Could not allocate a unique task id; id space is exhausted.")


def normalize_prefix(prefix: str) -> str:
    """Accept abbreviations typed with or without the ``sk-`` prefix."""

    value = prefix.strip().lower()
    if value.startswith(ID_PREFIX):
        return value
    return f"{ID_PREFIX}{value}"


def _random_base(length: int) -> str:
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))
