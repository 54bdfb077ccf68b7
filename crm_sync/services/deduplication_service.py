"""Fuzzy duplicate detection between contact records.

Works on any object exposing ``first_name``, ``last_name``, ``email``,
``company`` and optionally ``phone`` (ORM contacts, import candidates).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable

from crm_sync.utils.normalization import normalize_email, normalize_phone_digits

EXACT_MATCH_THRESHOLD = 1.0
FUZZY_MATCH_THRESHOLD = 0.85
POTENTIAL_MATCH_THRESHOLD = 0.70

COMPARED_FIELDS = ("email", "phone", "first_name", "last_name", "company")
MERGE_FIELDS = ("first_name", "last_name", "email", "phone", "company")


class MatchType(str, Enum):
    EXACT = "EXACT"
    FUZZY = "FUZZY"
    POTENTIAL = "POTENTIAL"


@dataclass
class DuplicateMatch:
    imported: Any
    existing: Any
    similarity: float
    match_type: MatchType
    matched_fields: list[str] = field(default_factory=list)


def levenshtein(a: str, b: str) -> int:
    """Classic edit distance (insert, delete, substitute all cost 1)."""
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            current.append(
                min(
                    previous[j] + 1,
                    current[j - 1] + 1,
                    previous[j - 1] + (char_a != char_b),
                )
            )
        previous = current
    return previous[-1]


def similarity(a: str | None, b: str | None) -> float:
    """Normalized edit-distance similarity in [0, 1]."""
    if a == b:
        return 1.0
    if not a or not b:
        return 0.0
    return 1 - levenshtein(a, b) / max(len(a), len(b))


def _field_value(record: Any, name: str) -> str | None:
    value = record.get(name) if isinstance(record, dict) else getattr(record, name, None)
    if not value:
        return None
    if name == "email":
        return normalize_email(value)
    if name == "phone":
        return normalize_phone_digits(value)
    return " ".join(str(value).split()).lower() or None


def classify(score: float) -> MatchType | None:
    if score >= EXACT_MATCH_THRESHOLD:
        return MatchType.EXACT
    if score >= FUZZY_MATCH_THRESHOLD:
        return MatchType.FUZZY
    if score >= POTENTIAL_MATCH_THRESHOLD:
        return MatchType.POTENTIAL
    return None


def compare_contacts(imported: Any, existing: Any) -> DuplicateMatch | None:
    """
    Score two records. An identical email short-circuits to EXACT; otherwise
    the score is the mean similarity over fields present on both sides.
    Returns None below the POTENTIAL threshold.
    """
    email_a = _field_value(imported, "email")
    email_b = _field_value(existing, "email")
    if email_a and email_a == email_b:
        return DuplicateMatch(
            imported=imported,
            existing=existing,
            similarity=1.0,
            match_type=MatchType.EXACT,
            matched_fields=["email"],
        )

    scores: list[float] = []
    matched_fields: list[str] = []
    for name in COMPARED_FIELDS:
        a = _field_value(imported, name)
        b = _field_value(existing, name)
        if not a or not b:
            continue
        score = similarity(a, b)
        scores.append(score)
        if score >= FUZZY_MATCH_THRESHOLD:
            matched_fields.append(name)

    if not scores:
        return None
    average = sum(scores) / len(scores)
    match_type = classify(average)
    if match_type is None:
        return None
    return DuplicateMatch(
        imported=imported,
        existing=existing,
        similarity=round(average, 4),
        match_type=match_type,
        matched_fields=matched_fields,
    )


def find_duplicates(imported: Iterable[Any], existing: Iterable[Any]) -> list[DuplicateMatch]:
    """Compare every imported record with every existing one."""
    existing = list(existing)
    matches: list[DuplicateMatch] = []
    for candidate in imported:
        for record in existing:
            match = compare_contacts(candidate, record)
            if match:
                matches.append(match)
    return matches


def best_match(candidate: Any, existing: Iterable[Any]) -> DuplicateMatch | None:
    best: DuplicateMatch | None = None
    for record in existing:
        match = compare_contacts(candidate, record)
        if match and (best is None or match.similarity > best.similarity):
            best = match
    return best


def merge_contacts(existing: dict[str, Any], imported: dict[str, Any]) -> dict[str, Any]:
    """Field-wise merge where non-empty imported values win."""
    merged = dict(existing)
    for name in MERGE_FIELDS:
        value = imported.get(name)
        if value:
            merged[name] = value
    return merged
