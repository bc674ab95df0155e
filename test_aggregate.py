"""
test_aggregate.py - Summary statistics over validation issues.

Usage:
    pytest test_aggregate.py
"""

from __future__ import annotations

import os
import sys

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from aggregate import OTHER_CATEGORY, ValidationAggregator, categorize_issues, category_for
from models import (
    Deal,
    Invoice,
    IssueCode,
    Project,
    Quote,
    RecordKind,
    RecordSet,
    Severity,
    ValidationIssue,
    ValidatorConfig,
)


def _issue(code, severity, subject_id, subject_type=RecordKind.DEAL, **extra) -> ValidationIssue:
    return ValidationIssue(
        code=code,
        severity=severity,
        message=f"{code} on {subject_id}",
        subject_id=subject_id,
        subject_type=subject_type,
        **extra,
    )


def _records() -> RecordSet:
    return RecordSet(
        deals=[
            Deal(id="D1", title="ED1 - a", value=1000, pipeline_id=3),
            Deal(id="D2", title="ED2 - b", value=500, pipeline_id=3),
            Deal(id="D3", title="ED3 - c", value=250, pipeline_id=4),
            Deal(id="D4", title="ED4 - d", value=999, status="open", pipeline_id=3),
        ],
        quotes=[
            Quote(id="Q1", value=1000, status="ACCEPTED"),
            Quote(id="Q2", value=300, status="INVOICED"),
            Quote(id="Q3", value=40, status="DRAFT"),
            Quote(id="Q4", value=60, status="DECLINED"),
        ],
        invoices=[Invoice(id="I1", value=1000, status="PAID")],
        projects=[
            Project(id="P1", name="ED1 - a", estimate=800),
            Project(id="P2", name="ED2 - b", estimate=50, status="CLOSED"),
        ],
    )


def test_unknown_codes_land_in_other_issues():
    assert category_for(IssueCode.QUOTE_ORPHANED) == "Orphaned Quotes"
    assert category_for("quote_orphaned") == "Orphaned Quotes"
    assert category_for("SOMETHING_NEW") == OTHER_CATEGORY
    assert category_for("") == OTHER_CATEGORY


def test_categorize_issues_splits_by_severity_and_fixability():
    issues = [
        _issue(IssueCode.MISSING_QUOTE_ID, Severity.ERROR, "D1", fixable=True, fix_action="link", expected_value="Q1"),
        _issue(IssueCode.DUPLICATE_QUOTE, Severity.WARNING, "D2"),
        _issue(IssueCode.TITLE_FORMAT_INVALID, Severity.INFO, "D3"),
        _issue("BRAND_NEW_CODE", Severity.WARNING, "D3"),
    ]

    buckets = categorize_issues(issues)

    assert len(buckets["errors"]) == 1
    assert len(buckets["warnings"]) == 2
    assert len(buckets["info"]) == 1
    assert [issue.subject_id for issue in buckets["fixable"]] == ["D1"]
    assert len(buckets["by_category"][OTHER_CATEGORY]) == 1


def test_aggregate_counts_and_totals():
    records = _records()
    issues = [
        _issue(IssueCode.MISSING_QUOTE_ID, Severity.ERROR, "D1", fixable=True, fix_action="link", expected_value="Q1"),
        _issue(IssueCode.TITLE_FORMAT_INVALID, Severity.INFO, "D2"),
        _issue(
            IssueCode.QUOTE_ORPHANED,
            Severity.ERROR,
            "Q2",
            RecordKind.QUOTE,
            metadata={"quoteTotal": 300.0},
        ),
        _issue(IssueCode.ACCEPTED_QUOTE_INVALID_FORMAT, Severity.WARNING, "Q2", RecordKind.QUOTE),
        _issue(
            IssueCode.INVOICE_STATUS_INVALID,
            Severity.WARNING,
            "I1",
            RecordKind.INVOICE,
            metadata={"dealId": "D3"},
        ),
    ]
    config = ValidatorConfig(pipeline_names={3: "WIP - Engine Recon"})

    summary = ValidationAggregator(config).aggregate(issues, records)

    assert summary.total_deals == 4
    assert summary.total_quotes == 4
    assert summary.total_invoices == 1
    assert summary.total_projects == 2
    assert summary.total_issues == 5
    assert (summary.error_count, summary.warning_count, summary.info_count) == (2, 2, 1)
    assert summary.fixable_count == 1
    # D2 only has an info issue; D3 is touched through metadata.
    assert summary.deals_with_issues == 2
    assert summary.fully_synced_deals == 2
    assert summary.issue_breakdown[IssueCode.QUOTE_ORPHANED.value] == 1
    assert summary.category_counts["Missing Quote Links"] == 1
    assert summary.quotes_by_status["ACCEPTED"] == 1
    assert summary.quotes_by_status["DELETED"] == 0
    assert summary.total_deal_value == 1750.0
    assert summary.total_accepted_quote_value == 1300.0
    assert summary.total_quote_in_progress_value == 1040.0
    assert summary.total_invoice_value == 1000.0
    assert summary.total_project_estimate_value == 800.0
    assert summary.orphaned_accepted_quotes == 1
    assert summary.orphaned_accepted_quotes_value == 300.0
    assert summary.accepted_quotes_with_invalid_format == 1

    pipelines = {row.pipeline_id: row for row in summary.pipeline_breakdown}
    assert pipelines[3].pipeline_name == "WIP - Engine Recon"
    assert pipelines[3].deal_count == 2
    assert pipelines[3].total_value == 1500.0
    assert pipelines[3].deals_with_issues == 1
    assert pipelines[4].pipeline_name == "Pipeline 4"


def test_aggregate_reruns_on_a_subset():
    records = _records()
    issues = [
        _issue(IssueCode.MISSING_QUOTE_ID, Severity.ERROR, "D1"),
        _issue(IssueCode.DEAL_VALUE_ZERO, Severity.WARNING, "D2"),
    ]
    aggregator = ValidationAggregator()

    full = aggregator.aggregate(issues, records)
    after_fix = aggregator.aggregate(issues[1:], records)

    assert full.deals_with_issues == 2
    assert after_fix.deals_with_issues == 1
    assert after_fix.total_issues == 1
    assert after_fix.total_deal_value == full.total_deal_value


def test_summary_serializes_camel_case():
    summary = ValidationAggregator().aggregate([], RecordSet())
    payload = summary.model_dump(by_alias=True)
    assert payload["totalIssues"] == 0
    assert "orphanedAcceptedQuotesValue" in payload
