"""Fuzzy matching of supplier category names against internal categories.

Used by the mapping screen to suggest an internal category. It is advisory:
when nothing scores at least ``MATCH_THRESHOLD`` no suggestion is made.
"""
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Sequence

MATCH_THRESHOLD = 60
EXACT_SCORE = 100
CONTAINS_SCORE = 85

NAME_FIELDS = ("name", "name_ru", "name_uk")


@dataclass
class Match:
    category: Any
    score: int


def levenshtein_distance(a: str, b: str) -> int:
    """Classic edit distance, unit cost for insert, delete and substitute."""
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        current = [i]
        for j, cb in enumerate(b, 1):
            if ca == cb:
                current.append(previous[j - 1])
            else:
                current.append(1 + min(previous[j - 1], previous[j], current[j - 1]))
        previous = current
    return previous[-1]


def calculate_similarity(a: str, b: str) -> int:
    s1 = a.casefold().strip()
    s2 = b.casefold().strip()

    if s1 == s2:
        return EXACT_SCORE
    if s1 in s2 or s2 in s1:
        return CONTAINS_SCORE

    max_len = max(len(s1), len(s2))
    distance = levenshtein_distance(s1, s2)
    return round(100 * (max_len - distance) / max_len)


def category_names(category: Any) -> List[str]:
    """Non-empty localized names of a category row or mapping."""
    names = []
    for field in NAME_FIELDS:
        if isinstance(category, dict):
            value = category.get(field)
        else:
            value = getattr(category, field, None)
        if value and value.strip():
            names.append(value)
    return names


def find_best_match(candidate_names: Iterable[str], pool: Sequence[Any],
                    threshold: int = MATCH_THRESHOLD) -> Optional[Match]:
    """Best-scoring pool entry over every pair of names, or None below threshold."""
    names = [n for n in candidate_names if n and n.strip()]
    if not names or not pool:
        return None

    best, best_score = None, 0
    for entry in pool:
        for entry_name in category_names(entry):
            for name in names:
                score = calculate_similarity(name, entry_name)
                if score > best_score:
                    best, best_score = entry, score

    if best is not None and best_score >= threshold:
        return Match(category=best, score=best_score)
    return None
