"""Name similarity and sanitising for matching ledger entities to accounting ones."""

import random
import re
from collections.abc import Callable, Sequence
from typing import TypeVar

T = TypeVar("T")

DEFAULT_MATCH_THRESHOLD = 0.8
MAX_ACCOUNT_NAME_LENGTH = 150
MAX_CONTACT_NAME_LENGTH = 255

_WHITESPACE = re.compile(r"\s+")
_ANGLE_BRACKETS = re.compile(r"[<>]")


def levenshtein(a: str, b: str) -> int:
    """Edit distance between two strings."""
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            current.append(
                min(
                    previous[j] + 1,
                    current[j - 1] + 1,
                    previous[j - 1] + (ca != cb),
                )
            )
        previous = current
    return previous[-1]


def similarity(a: str, b: str) -> float:
    """Case-insensitive similarity score in [0, 1].

    Identical names score 1. When one name contains the other the score is
    ``0.8 + 0.2 * len(shorter) / len(longer)``; otherwise it is one minus the
    normalized edit distance.

    Examples:
        >>> similarity("Office Supplies", "office supplies")
        1.0
        >>> similarity("Travel", "Office Supplies") < 0.8
        True
    """
    a = (a or "").strip().lower()
    b = (b or "").strip().lower()
    if a == b:
        return 1.0
    if not a or not b:
        return 0.0

    longer, shorter = (a, b) if len(a) >= len(b) else (b, a)
    if shorter in longer:
        return 0.8 + 0.2 * (len(shorter) / len(longer))

    return 1.0 - levenshtein(a, b) / len(longer)


def find_best_match(
    name: str,
    candidates: Sequence[T],
    key: Callable[[T], str],
    threshold: float = DEFAULT_MATCH_THRESHOLD,
) -> tuple[T, float] | None:
    """Highest scoring candidate at or above ``threshold``.

    Ties keep the earliest candidate, so the provider's ordering breaks them.

    Returns:
        tuple | None: ``(candidate, score)`` or None when nothing qualifies
    """
    if not name or not candidates:
        return None

    best: tuple[T, float] | None = None
    for candidate in candidates:
        score = similarity(name, key(candidate))
        if score >= threshold and (best is None or score > best[1]):
            best = (candidate, score)
    return best


def _sanitize(name: str | None, max_length: int, fallback: str) -> str:
    if not name:
        return fallback
    cleaned = _WHITESPACE.sub(" ", _ANGLE_BRACKETS.sub("", name)).strip()
    return cleaned[:max_length].strip() or fallback


def sanitize_account_name(name: str | None) -> str:
    """Account name acceptable to the accounting API."""
    return _sanitize(name, MAX_ACCOUNT_NAME_LENGTH, "Unnamed Account")


def sanitize_contact_name(name: str | None) -> str:
    """Contact name acceptable to the accounting API."""
    return _sanitize(name, MAX_CONTACT_NAME_LENGTH, "Unnamed Contact")


def generate_account_code(
    name: str, randint: Callable[[int, int], int] = random.randint
) -> str:
    """Short account code: up to three letters of the name plus three digits."""
    letters = re.sub(r"[^A-Za-z]", "", name or "").upper()[:3] or "ACC"
    return f"{letters}{randint(100, 999)}"
