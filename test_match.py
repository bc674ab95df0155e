"""
test_match.py - Record pairing by match key.

End-to-end checks for:
- match_records (pairs, one-sided records, duplicate groups, empty keys)
- suggest_near_matches (RapidFuzz near-miss suggestions)

Usage:
    pytest test_match.py
"""

from __future__ import annotations

import os
import sys

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from match import match_records, record_key, suggest_near_matches
from models import Deal, Quote


def _deal(deal_id: str, title: str, value: float = 100.0) -> Deal:
    return Deal(id=deal_id, title=title, value=value)


def _quote(quote_id: str, reference: str, value: float = 100.0) -> Quote:
    return Quote(id=quote_id, reference=reference, value=value, status="ACCEPTED")


def test_record_key_uses_display_name_per_kind():
    assert record_key(_deal("D1", "Acme - Phase 1")) == "acme"
    assert record_key(_quote("Q1", "Acme")) == "acme"
    assert record_key(Quote(id="Q2", title="Beta - Refit")) == "beta"


def test_unique_keys_pair_everything():
    left = [_deal("D1", "Acme - Phase 1"), _deal("D2", "Beta - Refit"), _deal("D3", "Gamma")]
    right = [_quote("Q3", "gamma"), _quote("Q1", "Acme"), _quote("Q2", "Beta")]

    result = match_records(left, right)

    assert len(result.matched) == len(left)
    assert result.only_left == []
    assert result.only_right == []
    assert result.duplicates == {}
    assert result.right_for("D1").id == "Q1"
    assert result.left_for("Q3").id == "D3"


def test_one_sided_records():
    left = [_deal("D1", "Acme - Phase 1"), _deal("D2", "Delta - Survey")]
    right = [_quote("Q1", "Acme"), _quote("Q9", "Omega")]

    result = match_records(left, right)

    assert [pair.left.id for pair in result.matched] == ["D1"]
    assert [record.id for record in result.only_left] == ["D2"]
    assert [record.id for record in result.only_right] == ["Q9"]
    assert result.right_for("D2") is None


def test_duplicate_group_keeps_every_member():
    left = [_deal("D1", "Acme - Phase 1"), _deal("D2", "Acme - Phase 2")]
    right = [_quote("Q1", "Acme")]

    result = match_records(left, right)

    assert len(result.matched) == 1
    assert result.matched[0].left.id == "D1"
    assert [record.id for record in result.left_duplicates["acme"]] == ["D1", "D2"]
    assert len(result.duplicates["acme"]) == 2
    assert result.only_left == []
    assert result.right_duplicates == {}


def test_right_side_duplicates_merge_into_duplicates_view():
    left = [_deal("D1", "Acme - Phase 1")]
    right = [_quote("Q1", "Acme"), _quote("Q2", "ACME ")]

    result = match_records(left, right)

    assert result.matched[0].right.id == "Q1"
    assert [record.id for record in result.right_duplicates["acme"]] == ["Q1", "Q2"]
    assert [record.id for record in result.duplicates["acme"]] == ["Q1", "Q2"]


def test_empty_keys_never_pair():
    left = [_deal("D1", ""), _deal("D2", "   ")]
    right = [Quote(id="Q1"), _quote("Q2", "Acme")]

    result = match_records(left, right)

    assert result.matched == []
    assert {record.id for record in result.only_left} == {"D1", "D2"}
    assert {record.id for record in result.only_right} == {"Q1", "Q2"}
    assert result.duplicates == {}


def test_custom_key_function():
    left = [_deal("D1", "Acme - Phase 1")]
    right = [_quote("Q1", "Something else")]

    result = match_records(left, right, key_func=lambda record: "same")

    assert len(result.matched) == 1


def test_near_matches_rank_close_keys():
    quote = _quote("Q1", "Acmee")
    deals = [_deal("D1", "Acme - Phase 1"), _deal("D2", "Zephyr"), _deal("D3", "")]

    suggestions = suggest_near_matches(quote, deals)

    assert suggestions
    assert suggestions[0]["id"] == "D1"
    assert suggestions[0]["key"] == "acme"
    assert suggestions[0]["score"] >= 80
    assert all(item["id"] != "D2" for item in suggestions)


def test_near_matches_empty_inputs():
    assert suggest_near_matches(_quote("Q1", ""), [_deal("D1", "Acme")]) == []
    assert suggest_near_matches(_quote("Q1", "Acme"), []) == []


def test_pair_lookups_over_many_records():
    left = [_deal(f"D{n}", f"Site {n}") for n in range(500)]
    right = [_quote(f"Q{n}", f"site {n}") for n in reversed(range(500))]

    result = match_records(left, right)

    assert len(result.matched) == 500
    assert result.right_for("D0").id == "Q0"
    assert result.right_for("D499").id == "Q499"
    assert result.left_for("Q250").id == "D250"
    assert result.right_for("Q250") is None
    assert result.left_for("D250") is None
    assert result.right_for("D0") is result.right_for("D0")
