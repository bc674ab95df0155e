"""
test_main.py - CLI checks: record file loading, validate and plan-fixes.

Usage:
    pytest test_main.py
"""

from __future__ import annotations

import json
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import pytest

from main import load_record_file, load_records, main
from models import ValidatorConfig

DEALS_CSV = (
    "id,title,value,quote_id,status,pipeline_id\n"
    "1001,ED1 - Acme,1000,Q1,won,2\n"
    "1002,ED2 - Beta,400,,won,2\n"
)

QUOTES_CSV = (
    "id,quote_number,reference,status,value\n"
    "Q1,ED1-QU1-1,ED1,ACCEPTED,1000\n"
    "Q2,ED2-QU2-1,ED2,ACCEPTED,400\n"
)


@pytest.fixture()
def record_files(tmp_path):
    deals = tmp_path / "deals.csv"
    quotes = tmp_path / "quotes.csv"
    deals.write_text(DEALS_CSV, encoding="utf-8")
    quotes.write_text(QUOTES_CSV, encoding="utf-8")
    return str(deals), str(quotes)


def test_load_record_file_csv_keeps_ids_as_text(record_files):
    deals, _ = record_files
    rows = load_record_file(deals)

    assert [row["id"] for row in rows] == ["1001", "1002"]
    assert rows[0]["quote_id"] == "Q1"
    assert rows[1]["quote_id"] is None


def test_load_record_file_json(tmp_path):
    path = tmp_path / "projects.json"
    path.write_text(
        json.dumps([{"id": "P1", "name": "ED1 - Acme", "status": "INPROGRESS", "estimate": 1000}]),
        encoding="utf-8",
    )

    rows = load_record_file(str(path))

    assert rows == [{"id": "P1", "name": "ED1 - Acme", "status": "INPROGRESS", "estimate": 1000}]


def test_load_record_file_errors(tmp_path):
    with pytest.raises(ValueError):
        load_record_file("")
    with pytest.raises(FileNotFoundError):
        load_record_file(str(tmp_path / "missing.csv"))


def test_load_records_builds_typed_set(record_files):
    deals, quotes = record_files
    records = load_records({"deals": deals, "quotes": quotes}, ValidatorConfig())

    assert [deal.id for deal in records.deals] == ["1001", "1002"]
    assert records.deals[1].quote_id is None
    assert [quote.quote_number for quote in records.quotes] == ["ED1-QU1-1", "ED2-QU2-1"]
    assert records.invoices == []


def test_validate_prints_summary(record_files, capsys):
    deals, quotes = record_files

    main(["validate", "--deals", deals, "--quotes", quotes])

    out = capsys.readouterr().out
    assert "COMPLETED" in out
    assert "deals=2" in out
    assert "MISSING_QUOTE_ID" in out


def test_validate_json_output(record_files, capsys):
    deals, quotes = record_files

    main(["validate", "--deals", deals, "--quotes", quotes, "--json"])

    session = json.loads(capsys.readouterr().out)
    assert session["status"] == "completed"
    assert any(issue["code"] == "MISSING_QUOTE_ID" for issue in session["issues"])


def test_fail_on_error_exit_code(record_files):
    deals, quotes = record_files

    with pytest.raises(SystemExit) as excinfo:
        main(["validate", "--deals", deals, "--quotes", quotes, "--fail-on-error"])

    assert excinfo.value.code == 2


def test_missing_file_exits_with_one(tmp_path, capsys):
    with pytest.raises(SystemExit) as excinfo:
        main(["validate", "--deals", str(tmp_path / "nope.csv")])

    assert excinfo.value.code == 1
    assert "Record file not found" in capsys.readouterr().out


def test_plan_fixes_json(record_files, capsys):
    deals, quotes = record_files

    main(["plan-fixes", "--deals", deals, "--quotes", quotes, "--json"])

    plans = json.loads(capsys.readouterr().out)
    link = next(plan for plan in plans if plan["issue"] == "MISSING_QUOTE_ID")
    assert link["request"]["operation"] == "update_deal"
    assert link["request"]["targetId"] == "1002"
    assert link["request"]["patch"] == {"quote_id": "Q2"}


def test_validate_prints_issue_categories(record_files, capsys):
    deals, quotes = record_files

    main(["validate", "--deals", deals, "--quotes", quotes])

    out = capsys.readouterr().out
    assert "Category" in out
    assert "Missing Quote Links" in out
