"""
test_models.py - Record model configuration and RecordSet lookups.

Usage:
    pytest test_models.py
"""

from __future__ import annotations

import os
import sys

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import pytest
from pydantic import ValidationError

from models import Deal, Invoice, Project, Quote, RecordSet


def test_deal_keeps_shared_record_config():
    assert Deal.model_config["frozen"] is True
    assert Deal.model_config["extra"] == "ignore"
    assert Deal.model_config["populate_by_name"] is True
    assert Deal.model_config["json_schema_extra"]["examples"][0]["kind"] == "deal"

    deal = Deal.model_validate({"id": "D1", "title": "ED1 - x", "unexpected": "dropped"})
    assert not hasattr(deal, "unexpected")
    with pytest.raises(ValidationError):
        deal.title = "changed"


def test_record_set_index_by_kind_and_id():
    records = RecordSet(
        deals=[Deal(id="X1", title="ED1 - deal")],
        quotes=[Quote(id="X1", quote_number="ED1-QU1-1"), Quote(id="X1", quote_number="ED1-QU1-2")],
        invoices=[Invoice(id="I1")],
        projects=[Project(id="P1", name="ED1 - project")],
    )

    lookup = records.index()

    assert lookup[("deal", "X1")].title == "ED1 - deal"
    assert lookup[("quote", "X1")].quote_number == "ED1-QU1-1"
    assert lookup[("invoice", "I1")].id == "I1"
    assert lookup[("project", "P1")].name == "ED1 - project"
    assert ("deal", "P1") not in lookup
    assert RecordSet().index() == {}
