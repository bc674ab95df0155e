"""
aggregate.py - Summary statistics over validation issues.

A pure reducer: (issues, records) -> ValidationSummary. It never reaches
back to the data sources, so after a partial fix the caller can pass the
remaining issues plus the records it already holds and get a fresh summary.
"""

from __future__ import annotations

from collections import Counter
from enum import Enum
from typing import Any, Iterable, Optional

from logging_config import get_logger
from models import (
    DealStatus,
    IssueCode,
    PipelineBreakdown,
    ProjectStatus,
    QuoteStatus,
    QuoteValueBreakdown,
    RecordKind,
    RecordSet,
    Severity,
    ValidationIssue,
    ValidationSummary,
    ValidatorConfig,
)
from normalize import money_sum

logger = get_logger(__name__)

OTHER_CATEGORY = "Other Issues"

ISSUE_CATEGORIES: dict[str, str] = {
    IssueCode.MISSING_QUOTE_ID.value: "Missing Quote Links",
    IssueCode.QUOTE_NOT_FOUND.value: "Missing Quote Links",
    IssueCode.XERO_QUOTE_NUMBER_NO_PROJECT.value: "Quote Number Format",
    IssueCode.ACCEPTED_QUOTE_INVALID_FORMAT.value: "Quote Number Format",
    IssueCode.XERO_QUOTE_NOT_ACCEPTED.value: "Quote Status",
    IssueCode.CURRENCY_MISMATCH.value: "Currency",
    IssueCode.INVOICE_CURRENCY_MISMATCH.value: "Currency",
    IssueCode.DEAL_VALUE_ZERO.value: "Deal Data",
    IssueCode.TITLE_FORMAT_INVALID.value: "Deal Data",
    IssueCode.MISSING_INVOICE_ID.value: "Missing Invoice Links",
    IssueCode.INVOICE_NOT_FOUND.value: "Missing Invoice Links",
    IssueCode.INVOICE_STATUS_INVALID.value: "Invoice Status",
    IssueCode.INVOICE_VALUE_MISMATCH.value: "Value Mismatches",
    IssueCode.QUOTE_VALUE_MISMATCH.value: "Value Mismatches",
    IssueCode.ESTIMATE_MISMATCH.value: "Value Mismatches",
    IssueCode.QUOTE_ORPHANED.value: "Orphaned Quotes",
    IssueCode.QUOTE_REFERENCES_MISSING_DEAL.value: "Orphaned Quotes",
    IssueCode.DUPLICATE_QUOTE.value: "Duplicates",
    IssueCode.DUPLICATE_PROJECT_CODE.value: "Duplicates",
    IssueCode.PROJECT_NO_QUOTES.value: "Project Links",
    IssueCode.INVALID_PIPELINE.value: "Pipeline Placement",
}

ORPHAN_CODES = {IssueCode.QUOTE_ORPHANED.value, IssueCode.QUOTE_REFERENCES_MISSING_DEAL.value}


def category_for(code: str) -> str:
    """Display category for an issue code; unknown codes fall into Other Issues."""
    if isinstance(code, Enum):
        code = code.value
    return ISSUE_CATEGORIES.get(str(code or "").upper(), OTHER_CATEGORY)


def categorize_issues(issues: Iterable[ValidationIssue]) -> dict[str, Any]:
    """Split issues by severity, fixability and display category."""
    result: dict[str, Any] = {
        "errors": [],
        "warnings": [],
        "info": [],
        "fixable": [],
        "by_category": {},
    }
    for issue in issues:
        if issue.severity == Severity.ERROR:
            result["errors"].append(issue)
        elif issue.severity == Severity.WARNING:
            result["warnings"].append(issue)
        else:
            result["info"].append(issue)
        if issue.fixable:
            result["fixable"].append(issue)
        result["by_category"].setdefault(category_for(issue.code), []).append(issue)
    return result


def _touched_deal_ids(issue: ValidationIssue) -> set[str]:
    touched: set[str] = set()
    if issue.subject_type == RecordKind.DEAL:
        touched.add(issue.subject_id)
    deal_id = issue.metadata.get("dealId")
    if deal_id:
        touched.add(str(deal_id))
    return touched


class ValidationAggregator:
    """Reduces per-phase issue lists into one ValidationSummary."""

    def __init__(self, config: Optional[ValidatorConfig] = None) -> None:
        self.config = config or ValidatorConfig()

    def aggregate(
        self,
        issues: Iterable[ValidationIssue],
        records: RecordSet,
        quote_breakdown: Optional[QuoteValueBreakdown] = None,
    ) -> ValidationSummary:
        issue_list = list(issues)
        severity_counts = Counter(issue.severity for issue in issue_list)
        by_code = Counter(issue.code for issue in issue_list)
        by_category = Counter(category_for(issue.code) for issue in issue_list)

        deal_ids = {deal.id for deal in records.deals}
        flagged: set[str] = set()
        for issue in issue_list:
            if issue.severity in (Severity.ERROR, Severity.WARNING):
                flagged |= _touched_deal_ids(issue) & deal_ids

        quotes_by_status = {status.value: 0 for status in QuoteStatus}
        for quote in records.quotes:
            quotes_by_status[quote.status.value] += 1

        quotes_by_id = {quote.id: quote for quote in records.quotes}
        orphan_issues = [
            issue
            for issue in issue_list
            if issue.code in ORPHAN_CODES and issue.subject_type == RecordKind.QUOTE
        ]
        orphan_values = []
        for issue in orphan_issues:
            total = issue.metadata.get("quoteTotal")
            if total is None and issue.subject_id in quotes_by_id:
                total = quotes_by_id[issue.subject_id].value
            orphan_values.append(total or 0.0)

        won = [deal for deal in records.deals if deal.status == DealStatus.WON]
        in_progress = (QuoteStatus.DRAFT, QuoteStatus.SENT, QuoteStatus.ACCEPTED)

        summary = ValidationSummary(
            total_deals=len(records.deals),
            total_quotes=len(records.quotes),
            total_invoices=len(records.invoices),
            total_projects=len(records.projects),
            total_issues=len(issue_list),
            error_count=severity_counts.get(Severity.ERROR, 0),
            warning_count=severity_counts.get(Severity.WARNING, 0),
            info_count=severity_counts.get(Severity.INFO, 0),
            fixable_count=sum(1 for issue in issue_list if issue.fixable),
            deals_with_issues=len(flagged),
            fully_synced_deals=len(deal_ids - flagged),
            issue_breakdown=dict(sorted(by_code.items())),
            category_counts=dict(sorted(by_category.items())),
            quotes_by_status=quotes_by_status,
            total_deal_value=money_sum(deal.value for deal in won),
            total_accepted_quote_value=money_sum(
                quote.value for quote in records.quotes if quote.is_accepted
            ),
            total_quote_in_progress_value=money_sum(
                quote.value for quote in records.quotes if quote.status in in_progress
            ),
            total_invoice_value=money_sum(invoice.value for invoice in records.invoices),
            total_project_estimate_value=money_sum(
                project.estimate or 0.0
                for project in records.projects
                if project.status == ProjectStatus.INPROGRESS
            ),
            orphaned_accepted_quotes=len(orphan_issues),
            orphaned_accepted_quotes_value=money_sum(orphan_values),
            accepted_quotes_with_invalid_format=by_code.get(IssueCode.ACCEPTED_QUOTE_INVALID_FORMAT.value, 0),
            pipeline_breakdown=self._pipelines(won, flagged),
            quote_breakdown=quote_breakdown,
        )

        logger.info(
            "aggregate_complete | issues=%s | errors=%s | warnings=%s | info=%s | fixable=%s | deals_with_issues=%s",
            summary.total_issues,
            summary.error_count,
            summary.warning_count,
            summary.info_count,
            summary.fixable_count,
            summary.deals_with_issues,
        )
        return summary

    def _pipelines(self, deals: list, flagged: set[str]) -> list[PipelineBreakdown]:
        groups: dict[Optional[int], list] = {}
        for deal in deals:
            groups.setdefault(deal.pipeline_id, []).append(deal)

        ordered = sorted(groups, key=lambda pid: (pid is None, pid or 0))
        return [
            PipelineBreakdown(
                pipeline_id=pipeline_id,
                pipeline_name=self.config.pipeline_name(pipeline_id),
                deal_count=len(groups[pipeline_id]),
                total_value=money_sum(deal.value for deal in groups[pipeline_id]),
                deals_with_issues=sum(1 for deal in groups[pipeline_id] if deal.id in flagged),
            )
            for pipeline_id in ordered
        ]
