"""
match.py - Key-based record pairing across the two systems.

The two systems share no primary key, so records are paired on the match key
derived from their display names (normalize.normalize_match_key). Pairing is
one hash-index pass per side:

- each key keeps its records in encounter order; the first one is the primary
- keys with more than one record on a side form a duplicate group
- records whose name normalizes to '' never pair with anything

Unmatched records can be given fuzzy near-miss suggestions (RapidFuzz) so an
operator sees "acme" vs "acmee" instead of two unrelated orphans.
"""

from __future__ import annotations

from typing import Any, Callable, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr
from rapidfuzz import fuzz, process

from logging_config import get_logger
from normalize import DEFAULT_DELIMITER, normalize_match_key

logger = get_logger(__name__)

NEAR_MATCH_THRESHOLD = 80.0
MAX_NEAR_MATCHES = 3

KeyFunc = Callable[[Any], str]


class MatchPair(BaseModel):
    """Primary left record paired with the primary right record of one key."""

    model_config = ConfigDict(frozen=True)

    key: str
    left: Any
    right: Any


class MatchResult(BaseModel):
    matched: list[MatchPair] = Field(default_factory=list)
    only_left: list[Any] = Field(default_factory=list)
    only_right: list[Any] = Field(default_factory=list)
    left_duplicates: dict[str, list[Any]] = Field(default_factory=dict)
    right_duplicates: dict[str, list[Any]] = Field(default_factory=dict)

    _by_left: Optional[dict[str, Any]] = PrivateAttr(default=None)
    _by_right: Optional[dict[str, Any]] = PrivateAttr(default=None)

    @property
    def duplicates(self) -> dict[str, list[Any]]:
        """Every duplicate group keyed by match key (left members first)."""
        merged: dict[str, list[Any]] = {key: list(group) for key, group in self.left_duplicates.items()}
        for key, group in self.right_duplicates.items():
            merged.setdefault(key, []).extend(group)
        return merged

    def right_for(self, left_id: str) -> Optional[Any]:
        return self._pair_index()[0].get(left_id)

    def left_for(self, right_id: str) -> Optional[Any]:
        return self._pair_index()[1].get(right_id)

    def _pair_index(self) -> tuple[dict[str, Any], dict[str, Any]]:
        if self._by_left is None or self._by_right is None:
            by_left: dict[str, Any] = {}
            by_right: dict[str, Any] = {}
            for pair in self.matched:
                by_left.setdefault(pair.left.id, pair.right)
                by_right.setdefault(pair.right.id, pair.left)
            self._by_left, self._by_right = by_left, by_right
        return self._by_left, self._by_right


def record_key(record: Any, delimiter: str = DEFAULT_DELIMITER) -> str:
    """Match key of any record exposing `match_name`."""
    return normalize_match_key(getattr(record, "match_name", ""), delimiter)


def _index(records: Sequence[Any], key_func: KeyFunc) -> tuple[dict[str, list[Any]], list[Any]]:
    index: dict[str, list[Any]] = {}
    unkeyed: list[Any] = []
    for record in records:
        key = key_func(record)
        if not key:
            unkeyed.append(record)
            continue
        index.setdefault(key, []).append(record)
    return index, unkeyed


def match_records(
    left: Sequence[Any],
    right: Sequence[Any],
    delimiter: str = DEFAULT_DELIMITER,
    key_func: Optional[KeyFunc] = None,
) -> MatchResult:
    """Pair two record collections by match key in O(n + m)."""
    key_of = key_func or (lambda record: record_key(record, delimiter))

    left_index, left_unkeyed = _index(left, key_of)
    right_index, right_unkeyed = _index(right, key_of)

    matched: list[MatchPair] = []
    only_left: list[Any] = list(left_unkeyed)
    for key, group in left_index.items():
        candidates = right_index.get(key)
        if candidates:
            matched.append(MatchPair(key=key, left=group[0], right=candidates[0]))
        else:
            only_left.extend(group)

    only_right: list[Any] = list(right_unkeyed)
    for key, group in right_index.items():
        if key not in left_index:
            only_right.extend(group)

    result = MatchResult(
        matched=matched,
        only_left=only_left,
        only_right=only_right,
        left_duplicates={key: group for key, group in left_index.items() if len(group) > 1},
        right_duplicates={key: group for key, group in right_index.items() if len(group) > 1},
    )

    if left_unkeyed or right_unkeyed:
        logger.warning(
            "matching_unkeyed | left=%s | right=%s | reason='display name normalized to empty key'",
            len(left_unkeyed),
            len(right_unkeyed),
        )
    logger.info(
        "matching_complete | left=%s | right=%s | matched=%s | only_left=%s | only_right=%s | duplicate_groups=%s",
        len(left),
        len(right),
        len(result.matched),
        len(result.only_left),
        len(result.only_right),
        len(result.left_duplicates) + len(result.right_duplicates),
    )
    return result


def suggest_near_matches(
    record: Any,
    candidates: Sequence[Any],
    delimiter: str = DEFAULT_DELIMITER,
    threshold: float = NEAR_MATCH_THRESHOLD,
    limit: int = MAX_NEAR_MATCHES,
) -> list[dict[str, Any]]:
    """Fuzzy suggestions for a record that found no exact key partner.

    Returns [{"id", "key", "score"}] best first; exact key equality is not
    expected here since those records would already be matched.
    """
    key = record_key(record, delimiter)
    if not key or not candidates:
        return []

    choices = {candidate.id: record_key(candidate, delimiter) for candidate in candidates}
    choices = {candidate_id: value for candidate_id, value in choices.items() if value}
    if not choices:
        return []

    hits = process.extract(
        key,
        choices,
        scorer=fuzz.ratio,
        limit=limit,
        score_cutoff=threshold,
    )
    suggestions = [
        {"id": candidate_id, "key": choice, "score": round(float(score), 1)}
        for choice, score, candidate_id in hits
    ]
    logger.debug(
        "near_match | key=%r | suggestions=%s",
        key,
        [(item["id"], item["score"]) for item in suggestions],
    )
    return suggestions
