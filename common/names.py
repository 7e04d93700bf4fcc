# common/names.py
"""
Name canonicalization and fuzzy matching
----------------------------------------
Functions:
  - normalize_name(name)      -> identity key used for customer uniqueness
  - levenshtein(a, b)         -> edit distance
  - similarity(a, b)          -> 0..1 score over normalized forms

All functions are pure and never raise on str/None input.
"""
from __future__ import annotations

import unicodedata
from typing import Optional

__all__ = ["normalize_name", "levenshtein", "similarity"]


def normalize_name(name: Optional[str]) -> str:
    """Lower-case, strip diacritics, trim and collapse whitespace."""
    if not name:
        return ""
    decomposed = unicodedata.normalize("NFD", str(name).lower())
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return " ".join(stripped.split())


def levenshtein(a: str, b: str) -> int:
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    # keep the shorter string in the inner loop
    if len(a) < len(b):
        a, b = b, a

    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            cost = 0 if ca == cb else 1
            current.append(min(
                previous[j] + 1,         # deletion
                current[j - 1] + 1,      # insertion
                previous[j - 1] + cost,  # substitution
            ))
        previous = current
    return previous[-1]


def similarity(a: Optional[str], b: Optional[str]) -> float:
    na, nb = normalize_name(a), normalize_name(b)
    if not na or not nb:
        return 0.0
    if na == nb:
        return 1.0
    longest = max(len(na), len(nb))
    return 1.0 - levenshtein(na, nb) / longest
