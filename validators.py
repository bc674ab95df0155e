"""
validators.py - The four reconciliation phases.

Every phase has the same contract, validate(context) -> list[ValidationIssue]:

    DealQuoteValidator  deal -> quote links, quote-number project prefix
    InvoiceValidator    deal -> invoice links and totals (phase-1 clean deals only)
    QuoteReconciler     accepted quotes -> owning deals, value breakdown
    ProjectValidator    in-progress projects -> quotes, estimates, pipelines

Findings are data. Nothing here raises on a business-rule violation; a
malformed record simply produces an issue (or an empty match key) and the
phase carries on. Money is always compared with the config epsilon.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

from logging_config import get_logger
from match import match_records, record_key, suggest_near_matches
from models import (
    Deal,
    DealStatus,
    Invoice,
    InvoiceStatus,
    IssueCode,
    Project,
    ProjectStatus,
    Quote,
    QuoteStatus,
    QuoteValueBreakdown,
    RecordKind,
    RecordSet,
    Severity,
    ValidationIssue,
    ValidatorConfig,
    quote_status_path,
)
from normalize import (
    amounts_equal,
    expected_quote_number,
    extract_deal_reference,
    extract_project_code,
    is_bare_quote_number,
    money_diff,
    money_sum,
    parse_quote_number,
)

logger = get_logger(__name__)

VALID_INVOICE_STATUSES = {InvoiceStatus.AUTHORISED, InvoiceStatus.PAID}
AUTO_ACCEPT_FROM = {QuoteStatus.DRAFT, QuoteStatus.SENT}
QUOTE_NUMBER_FORMAT = "PROJECTCODE-QUNUMBER-VERSION"


class ValidationContext(BaseModel):
    """Inputs for one phase: the fetched records, tenant config, and what
    earlier phases already reported."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    records: RecordSet = Field(default_factory=RecordSet)
    config: ValidatorConfig = Field(default_factory=ValidatorConfig)
    prior_issues: list[ValidationIssue] = Field(default_factory=list)

    _reported_keys: Optional[set[tuple[str, str]]] = PrivateAttr(default=None)

    def reported(self, code: IssueCode, subject_id: str) -> bool:
        if self._reported_keys is None:
            self._reported_keys = {(issue.code, issue.subject_id) for issue in self.prior_issues}
        return (code.value, subject_id) in self._reported_keys

    def deals_with_errors(self) -> set[str]:
        """Deal ids that an earlier phase flagged with an error, directly or via metadata."""
        flagged: set[str] = set()
        for issue in self.prior_issues:
            if issue.severity != Severity.ERROR:
                continue
            if issue.subject_type == RecordKind.DEAL:
                flagged.add(issue.subject_id)
            deal_id = issue.metadata.get("dealId")
            if deal_id:
                flagged.add(str(deal_id))
        return flagged


def _won(deals: list[Deal]) -> list[Deal]:
    return [deal for deal in deals if deal.status == DealStatus.WON]


def quote_scope(context: ValidationContext) -> list[Deal]:
    """Won deals that are expected to carry an accepted quote."""
    pipelines = context.config.quote_pipeline_ids
    deals = _won(context.records.deals)
    if pipelines is None:
        return deals
    return [deal for deal in deals if deal.pipeline_id in pipelines]


def invoice_scope(context: ValidationContext) -> list[Deal]:
    config = context.config
    deals = _won(context.records.deals)
    if config.invoice_pipeline_ids is None and config.invoice_stage_id is None:
        return deals
    return [
        deal
        for deal in deals
        if (config.invoice_pipeline_ids is not None and deal.pipeline_id in config.invoice_pipeline_ids)
        or (config.invoice_stage_id is not None and deal.stage_id == config.invoice_stage_id)
    ]


class PhaseValidator:
    """Shared plumbing: issue construction and phase logging."""

    step_id = "validate"
    name = "Validate"

    def validate(self, context: ValidationContext) -> list[ValidationIssue]:
        raise NotImplementedError

    def _issue(
        self,
        code: IssueCode,
        severity: Severity,
        message: str,
        subject: Any,
        fix_action: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        current_value: Any = None,
        expected_value: Any = None,
    ) -> ValidationIssue:
        issue = ValidationIssue(
            code=code,
            severity=severity,
            message=message,
            subject_id=subject.id,
            subject_type=RecordKind(subject.kind),
            fixable=fix_action is not None,
            fix_action=fix_action,
            metadata=metadata or {},
            current_value=current_value,
            expected_value=expected_value,
        )
        logger.debug(
            "issue | phase=%s | code=%s | severity=%s | subject=%s:%s | fixable=%s",
            self.step_id,
            issue.code,
            issue.severity.value,
            issue.subject_type.value,
            issue.subject_id,
            issue.fixable,
        )
        return issue

    def _log_complete(self, issues: list[ValidationIssue], scanned: int) -> None:
        errors = sum(1 for issue in issues if issue.severity == Severity.ERROR)
        logger.info(
            "phase_complete | phase=%s | scanned=%s | issues=%s | errors=%s | fixable=%s",
            self.step_id,
            scanned,
            len(issues),
            errors,
            sum(1 for issue in issues if issue.fixable),
        )


class DealQuoteValidator(PhaseValidator):
    """Phase 1: every won deal in the quote pipelines points at a real quote
    whose number carries the deal's project code."""

    step_id = "validate_deal_quotes"
    name = "Deal / quote links"

    def validate(self, context: ValidationContext) -> list[ValidationIssue]:
        deals = quote_scope(context)
        quotes = context.records.quotes
        quotes_by_id = {quote.id: quote for quote in quotes}
        linked_quote_ids = {deal.quote_id for deal in context.records.deals if deal.quote_id}
        pairing = match_records(deals, quotes, delimiter=context.config.match_delimiter)

        issues: list[ValidationIssue] = []
        for deal in deals:
            project_code = extract_project_code(deal.title)

            if not project_code:
                issues.append(
                    self._issue(
                        IssueCode.TITLE_FORMAT_INVALID,
                        Severity.INFO,
                        f"Deal title '{deal.title}' does not start with a project code",
                        deal,
                        metadata={"title": deal.title, "expectedFormat": "PROJECTCODE - Description"},
                        current_value=deal.title,
                    )
                )

            if deal.value <= 0:
                issues.append(
                    self._issue(
                        IssueCode.DEAL_VALUE_ZERO,
                        Severity.WARNING,
                        f"Deal '{deal.title}' has no value",
                        deal,
                        current_value=deal.value,
                    )
                )

            if not deal.quote_id:
                issues.append(self._missing_quote_issue(deal, pairing, linked_quote_ids, context.config))
                continue

            quote = quotes_by_id.get(deal.quote_id)
            if quote is None:
                issues.append(
                    self._issue(
                        IssueCode.QUOTE_NOT_FOUND,
                        Severity.ERROR,
                        f"Deal '{deal.title}' references quote {deal.quote_id} which does not exist",
                        deal,
                        metadata={"quoteId": deal.quote_id, "referencedDealId": deal.id},
                        current_value=deal.quote_id,
                    )
                )
                continue

            issues.extend(self._check_linked_quote(deal, quote, project_code, context.config))

        self._log_complete(issues, len(deals))
        return issues

    def _missing_quote_issue(
        self,
        deal: Deal,
        pairing,
        linked_quote_ids: set[str],
        config: ValidatorConfig,
    ) -> ValidationIssue:
        candidate = pairing.right_for(deal.id)
        key = record_key(deal, config.match_delimiter)
        unambiguous = (
            candidate is not None
            and key not in pairing.left_duplicates
            and key not in pairing.right_duplicates
            and candidate.id not in linked_quote_ids
        )
        if unambiguous:
            return self._issue(
                IssueCode.MISSING_QUOTE_ID,
                Severity.ERROR,
                f"Deal '{deal.title}' has no quote id; quote {candidate.quote_number or candidate.id} matches by name",
                deal,
                fix_action="Link deal to matching quote",
                metadata={"matchKey": key, "candidateQuoteId": candidate.id, "candidateQuoteNumber": candidate.quote_number},
                current_value=None,
                expected_value=candidate.id,
            )
        return self._issue(
            IssueCode.MISSING_QUOTE_ID,
            Severity.ERROR,
            f"Deal '{deal.title}' has no quote id",
            deal,
            metadata={"matchKey": key},
        )

    def _check_linked_quote(
        self,
        deal: Deal,
        quote: Quote,
        project_code: str,
        config: ValidatorConfig,
    ) -> list[ValidationIssue]:
        issues: list[ValidationIssue] = []

        if is_bare_quote_number(quote.quote_number):
            metadata = {
                "dealId": deal.id,
                "quoteNumber": quote.quote_number,
                "projectCode": project_code,
            }
            if project_code:
                expected = expected_quote_number(project_code, quote.quote_number)
                issues.append(
                    self._issue(
                        IssueCode.XERO_QUOTE_NUMBER_NO_PROJECT,
                        Severity.ERROR,
                        f"Quote number {quote.quote_number} is missing project code {project_code}",
                        quote,
                        fix_action="Update quote number to include project code",
                        metadata=metadata,
                        current_value=quote.quote_number,
                        expected_value=expected,
                    )
                )
            else:
                issues.append(
                    self._issue(
                        IssueCode.XERO_QUOTE_NUMBER_NO_PROJECT,
                        Severity.ERROR,
                        f"Quote number {quote.quote_number} has no project code and deal '{deal.title}' has none to offer",
                        quote,
                        metadata=metadata,
                        current_value=quote.quote_number,
                    )
                )

        if not quote.is_accepted:
            metadata = {"dealId": deal.id, "quoteNumber": quote.quote_number, "quoteStatus": quote.status.value}
            if quote.status in AUTO_ACCEPT_FROM:
                path = quote_status_path(quote.status, QuoteStatus.ACCEPTED)
                metadata["transitionPath"] = [status.value for status in path]
                issues.append(
                    self._issue(
                        IssueCode.XERO_QUOTE_NOT_ACCEPTED,
                        Severity.WARNING,
                        f"Deal '{deal.title}' is won but quote {quote.quote_number or quote.id} is {quote.status.value}",
                        quote,
                        fix_action="Mark quote as accepted",
                        metadata=metadata,
                        current_value=quote.status.value,
                        expected_value=QuoteStatus.ACCEPTED.value,
                    )
                )
            else:
                issues.append(
                    self._issue(
                        IssueCode.XERO_QUOTE_NOT_ACCEPTED,
                        Severity.WARNING,
                        f"Deal '{deal.title}' is won but quote {quote.quote_number or quote.id} is {quote.status.value}",
                        quote,
                        metadata=metadata,
                        current_value=quote.status.value,
                    )
                )

        if deal.currency and quote.currency and deal.currency != quote.currency:
            issues.append(
                self._issue(
                    IssueCode.CURRENCY_MISMATCH,
                    Severity.WARNING,
                    f"Deal currency {deal.currency} differs from quote currency {quote.currency}",
                    deal,
                    metadata={"quoteId": quote.id, "dealCurrency": deal.currency, "quoteCurrency": quote.currency},
                    current_value=quote.currency,
                    expected_value=deal.currency,
                )
            )

        return issues


class InvoiceValidator(PhaseValidator):
    """Phase 2: deals in the invoicing stage point at a real invoice whose
    total matches the deal value. Deals phase 1 flagged with errors wait."""

    step_id = "validate_invoices"
    name = "Deal / invoice links"

    def validate(self, context: ValidationContext) -> list[ValidationIssue]:
        config = context.config
        blocked = context.deals_with_errors()
        scope = invoice_scope(context)
        deals = [deal for deal in scope if deal.id not in blocked]
        if len(deals) < len(scope):
            logger.info(
                "invoice_scope | in_scope=%s | waiting_on_phase1=%s",
                len(scope),
                len(scope) - len(deals),
            )

        invoices = context.records.invoices
        invoices_by_id = {invoice.id: invoice for invoice in invoices}
        linked_invoice_ids = {deal.invoice_id for deal in context.records.deals if deal.invoice_id}
        claimed_by_deal: dict[str, list[Invoice]] = {}
        for invoice in invoices:
            if invoice.deal_id:
                claimed_by_deal.setdefault(invoice.deal_id, []).append(invoice)
        pairing = match_records(deals, invoices, delimiter=config.match_delimiter)

        issues: list[ValidationIssue] = []
        for deal in deals:
            if not deal.invoice_id:
                issues.append(self._missing_invoice_issue(deal, pairing, claimed_by_deal, linked_invoice_ids, config))
                continue

            invoice = invoices_by_id.get(deal.invoice_id)
            if invoice is None:
                issues.append(
                    self._issue(
                        IssueCode.INVOICE_NOT_FOUND,
                        Severity.ERROR,
                        f"Deal '{deal.title}' references invoice {deal.invoice_id} which does not exist",
                        deal,
                        metadata={"invoiceId": deal.invoice_id},
                        current_value=deal.invoice_id,
                    )
                )
                continue

            if not amounts_equal(deal.value, invoice.value, config.epsilon):
                issues.append(
                    self._issue(
                        IssueCode.INVOICE_VALUE_MISMATCH,
                        Severity.ERROR,
                        f"Deal value {deal.value:.2f} does not match invoice {invoice.invoice_number or invoice.id} total {invoice.value:.2f}",
                        deal,
                        metadata={
                            "invoiceId": invoice.id,
                            "invoiceNumber": invoice.invoice_number,
                            "dealValue": deal.value,
                            "invoiceTotal": invoice.value,
                            "difference": money_diff(deal.value, invoice.value),
                        },
                        current_value=invoice.value,
                        expected_value=deal.value,
                    )
                )

            if invoice.status not in VALID_INVOICE_STATUSES:
                issues.append(
                    self._issue(
                        IssueCode.INVOICE_STATUS_INVALID,
                        Severity.WARNING,
                        f"Invoice {invoice.invoice_number or invoice.id} is {invoice.status.value}, expected AUTHORISED or PAID",
                        invoice,
                        metadata={"dealId": deal.id, "invoiceStatus": invoice.status.value},
                        current_value=invoice.status.value,
                    )
                )

            if deal.currency and invoice.currency and deal.currency != invoice.currency:
                issues.append(
                    self._issue(
                        IssueCode.INVOICE_CURRENCY_MISMATCH,
                        Severity.WARNING,
                        f"Deal currency {deal.currency} differs from invoice currency {invoice.currency}",
                        deal,
                        metadata={"invoiceId": invoice.id, "dealCurrency": deal.currency, "invoiceCurrency": invoice.currency},
                        current_value=invoice.currency,
                        expected_value=deal.currency,
                    )
                )

        self._log_complete(issues, len(deals))
        return issues

    def _missing_invoice_issue(
        self,
        deal: Deal,
        pairing,
        claimed_by_deal: dict[str, list[Invoice]],
        linked_invoice_ids: set[str],
        config: ValidatorConfig,
    ) -> ValidationIssue:
        claimed = claimed_by_deal.get(deal.id, [])
        candidate: Optional[Invoice] = None
        if len(claimed) == 1:
            candidate = claimed[0]
        elif not claimed:
            key = record_key(deal, config.match_delimiter)
            paired = pairing.right_for(deal.id)
            if paired is not None and key not in pairing.left_duplicates and key not in pairing.right_duplicates:
                candidate = paired

        if candidate is not None and candidate.id not in linked_invoice_ids:
            return self._issue(
                IssueCode.MISSING_INVOICE_ID,
                Severity.ERROR,
                f"Deal '{deal.title}' has no invoice id; invoice {candidate.invoice_number or candidate.id} belongs to it",
                deal,
                fix_action="Link deal to matching invoice",
                metadata={"candidateInvoiceId": candidate.id, "candidateInvoiceNumber": candidate.invoice_number},
                expected_value=candidate.id,
            )
        return self._issue(
            IssueCode.MISSING_INVOICE_ID,
            Severity.ERROR,
            f"Deal '{deal.title}' has no invoice id",
            deal,
            metadata={"claimingInvoices": [invoice.id for invoice in claimed]},
        )


class ReconciliationResult(BaseModel):
    issues: list[ValidationIssue] = Field(default_factory=list)
    breakdown: QuoteValueBreakdown = Field(default_factory=QuoteValueBreakdown)
    owners: dict[str, str] = Field(default_factory=dict, description="quote id -> owning deal id")


def _dec(value: float) -> Decimal:
    return Decimal(str(value))


class QuoteReconciler(PhaseValidator):
    """Phase 3: every accepted quote belongs to exactly one in-scope deal.

    Owner resolution, first hit wins:
      1. deal id written in the quote reference ("Pipedrive Deal ID: 1042")
         or carried on the quote itself
      2. a deal whose quote_id is this quote
      3. match-key pairing of quote reference against deal title

    Each accepted quote lands in exactly one bucket: orphaned (no owner),
    duplicate (owner already has an earlier quote), or matched (the owner's
    first quote). The three bucket totals therefore add up to the accepted
    total, and the deal side is split the same way so the gap between the
    two totals is fully attributed.
    """

    step_id = "reconcile_quotes"
    name = "Quote reconciliation"

    def validate(self, context: ValidationContext) -> list[ValidationIssue]:
        return self.reconcile(context).issues

    def reconcile(self, context: ValidationContext) -> ReconciliationResult:
        config = context.config
        deals = quote_scope(context)
        deals_by_id = {deal.id: deal for deal in deals}
        all_deal_ids = {deal.id for deal in context.records.deals}
        quote_ids = {quote.id for quote in context.records.quotes}
        accepted = [quote for quote in context.records.quotes if quote.is_accepted]

        by_linked_quote: dict[str, Deal] = {}
        for deal in deals:
            if deal.quote_id and deal.quote_id not in by_linked_quote:
                by_linked_quote[deal.quote_id] = deal

        pairing = match_records(accepted, deals, delimiter=config.match_delimiter)
        owner_by_key = {pair.key: pair.right for pair in pairing.matched}

        issues: list[ValidationIssue] = []
        owned: dict[str, list[Quote]] = {}
        orphans: list[Quote] = []

        for quote in accepted:
            if not parse_quote_number(quote.quote_number) and not context.reported(
                IssueCode.XERO_QUOTE_NUMBER_NO_PROJECT, quote.id
            ):
                issues.append(
                    self._issue(
                        IssueCode.ACCEPTED_QUOTE_INVALID_FORMAT,
                        Severity.WARNING,
                        f"Accepted quote number '{quote.quote_number}' does not follow {QUOTE_NUMBER_FORMAT}",
                        quote,
                        metadata={
                            "currentFormat": quote.quote_number,
                            "expectedFormat": QUOTE_NUMBER_FORMAT,
                            "quoteNumber": quote.quote_number,
                            "contactName": quote.contact_name,
                            "quoteTotal": quote.value,
                        },
                        current_value=quote.quote_number,
                    )
                )

            owner = self._resolve_owner(quote, deals_by_id, by_linked_quote, owner_by_key, config)
            if isinstance(owner, Deal):
                owned.setdefault(owner.id, []).append(quote)
                continue

            orphans.append(quote)
            referenced = owner
            if referenced:
                issues.append(
                    self._issue(
                        IssueCode.QUOTE_REFERENCES_MISSING_DEAL,
                        Severity.ERROR,
                        f"Accepted quote {quote.quote_number or quote.id} references deal {referenced} which is not a won deal in scope",
                        quote,
                        metadata={
                            "referencedDealId": referenced,
                            "dealOutsideScope": referenced in all_deal_ids,
                            "quoteNumber": quote.quote_number,
                            "contactName": quote.contact_name,
                            "quoteTotal": quote.value,
                        },
                    )
                )
            else:
                issues.append(
                    self._issue(
                        IssueCode.QUOTE_ORPHANED,
                        Severity.ERROR,
                        f"Accepted quote {quote.quote_number or quote.id} has no owning deal",
                        quote,
                        metadata={
                            "quoteTotal": quote.value,
                            "quoteNumber": quote.quote_number,
                            "contactName": quote.contact_name,
                            "nearMatches": suggest_near_matches(quote, deals, delimiter=config.match_delimiter),
                        },
                    )
                )

        duplicates: list[Quote] = []
        primaries: dict[str, Quote] = {}
        for deal_id, group in owned.items():
            deal = deals_by_id[deal_id]
            primaries[deal_id] = group[0]
            if len(group) > 1:
                extra = group[1:]
                duplicates.extend(extra)
                issues.append(
                    self._issue(
                        IssueCode.DUPLICATE_QUOTE,
                        Severity.WARNING,
                        f"Deal '{deal.title}' owns {len(group)} accepted quotes",
                        deal,
                        metadata={
                            "primaryQuoteId": group[0].id,
                            "quoteIds": [quote.id for quote in group],
                            "quoteNumbers": [quote.quote_number for quote in group],
                            "duplicateValue": money_sum(quote.value for quote in extra),
                        },
                    )
                )

        mismatches: list[tuple[Deal, Quote]] = []
        for deal_id, quote in primaries.items():
            deal = deals_by_id[deal_id]
            if amounts_equal(deal.value, quote.value, config.epsilon):
                continue
            mismatches.append((deal, quote))
            issues.append(
                self._issue(
                    IssueCode.QUOTE_VALUE_MISMATCH,
                    Severity.ERROR,
                    f"Quote {quote.quote_number or quote.id} total {quote.value:.2f} does not match deal '{deal.title}' value {deal.value:.2f}",
                    quote,
                    metadata={
                        "dealId": deal.id,
                        "dealValue": deal.value,
                        "quoteTotal": quote.value,
                        "difference": money_diff(deal.value, quote.value),
                    },
                    current_value=quote.value,
                    expected_value=deal.value,
                )
            )

        for deal in deals:
            if not deal.quote_id or deal.quote_id in quote_ids:
                continue
            if context.reported(IssueCode.QUOTE_NOT_FOUND, deal.id):
                continue
            issues.append(
                self._issue(
                    IssueCode.QUOTE_REFERENCES_MISSING_DEAL,
                    Severity.ERROR,
                    f"Deal '{deal.title}' references quote {deal.quote_id} which does not exist",
                    deal,
                    metadata={"referencedDealId": deal.id, "referencedQuoteId": deal.quote_id},
                    current_value=deal.quote_id,
                )
            )

        breakdown = self._breakdown(deals, accepted, orphans, duplicates, primaries, mismatches)
        self._log_complete(issues, len(accepted))
        logger.info(
            "quote_breakdown | accepted=%.2f | orphaned=%.2f | duplicate=%.2f | matched=%.2f | deals=%.2f | unexplained=%.2f",
            breakdown.total_accepted_quotes_value,
            breakdown.orphaned_quotes_value,
            breakdown.duplicate_quotes_value,
            breakdown.matched_quotes_value,
            breakdown.total_deals_value,
            breakdown.unexplained_value,
        )
        return ReconciliationResult(
            issues=issues,
            breakdown=breakdown,
            owners={quote.id: deal_id for deal_id, group in owned.items() for quote in group},
        )

    @staticmethod
    def _resolve_owner(
        quote: Quote,
        deals_by_id: dict[str, Deal],
        by_linked_quote: dict[str, Deal],
        owner_by_key: dict[str, Deal],
        config: ValidatorConfig,
    ) -> Deal | str:
        """The owning deal, or the referenced-but-absent deal id, or ''."""
        referenced = extract_deal_reference(quote.reference) or (quote.deal_id or "")
        if referenced:
            return deals_by_id.get(referenced, referenced)
        if quote.id in by_linked_quote:
            return by_linked_quote[quote.id]
        return owner_by_key.get(record_key(quote, config.match_delimiter), "")

    @staticmethod
    def _breakdown(
        deals: list[Deal],
        accepted: list[Quote],
        orphans: list[Quote],
        duplicates: list[Quote],
        primaries: dict[str, Quote],
        mismatches: list[tuple[Deal, Quote]],
    ) -> QuoteValueBreakdown:
        owner_ids = set(primaries)
        total_accepted = money_sum(quote.value for quote in accepted)
        orphaned = money_sum(quote.value for quote in orphans)
        duplicate = money_sum(quote.value for quote in duplicates)
        matched = money_sum(quote.value for quote in primaries.values())
        total_deals = money_sum(deal.value for deal in deals)
        with_quotes = money_sum(deal.value for deal in deals if deal.id in owner_ids)
        without_quotes = money_sum(deal.value for deal in deals if deal.id not in owner_ids)
        difference = money_diff(total_deals, total_accepted)

        explained = (_dec(with_quotes) - _dec(matched)) + _dec(without_quotes) - _dec(orphaned) - _dec(duplicate)
        unexplained = _dec(difference) - explained

        return QuoteValueBreakdown(
            total_accepted_quotes_value=total_accepted,
            total_deals_value=total_deals,
            orphaned_quotes_value=orphaned,
            duplicate_quotes_value=duplicate,
            matched_quotes_value=matched,
            deals_with_quotes_value=with_quotes,
            deals_without_quotes_value=without_quotes,
            quotes_with_value_mismatch=len(mismatches),
            total_value_mismatch_amount=money_sum(abs(money_diff(deal.value, quote.value)) for deal, quote in mismatches),
            value_difference=difference,
            unexplained_value=float(unexplained),
        )


class ProjectValidator(PhaseValidator):
    """Phase 4: in-progress projects are backed by accepted quotes, carry the
    quoted estimate, have a unique code, and their deals sit in a WIP pipeline."""

    step_id = "validate_projects"
    name = "Projects"

    def validate(self, context: ValidationContext) -> list[ValidationIssue]:
        config = context.config
        projects = [project for project in context.records.projects if project.status == ProjectStatus.INPROGRESS]
        accepted = [quote for quote in context.records.quotes if quote.is_accepted]
        won = _won(context.records.deals)

        issues: list[ValidationIssue] = []
        issues.extend(self._duplicate_codes(projects, config))

        for project in projects:
            code = extract_project_code(project.match_name)
            key = record_key(project, config.match_delimiter)

            linked = [quote for quote in accepted if self._quote_links(quote, code, key, config)]
            if not linked:
                issues.append(
                    self._issue(
                        IssueCode.PROJECT_NO_QUOTES,
                        Severity.WARNING,
                        f"Project '{project.match_name}' has no accepted quote",
                        project,
                        metadata={"projectCode": code, "matchKey": key},
                    )
                )
            else:
                quoted = money_sum(quote.value for quote in linked)
                if project.estimate is None or not amounts_equal(project.estimate, quoted, config.epsilon):
                    issues.append(
                        self._issue(
                            IssueCode.ESTIMATE_MISMATCH,
                            Severity.WARNING,
                            f"Project '{project.match_name}' estimate {project.estimate} differs from accepted quotes {quoted:.2f}",
                            project,
                            fix_action="Set project estimate to accepted quote total",
                            metadata={
                                "projectCode": code,
                                "quoteIds": [quote.id for quote in linked],
                                "quoteTotal": quoted,
                                "estimate": project.estimate,
                            },
                            current_value=project.estimate,
                            expected_value=quoted,
                        )
                    )

            if config.project_pipeline_ids is None:
                continue
            for deal in won:
                if not self._deal_links(deal, project, code, key, config):
                    continue
                if deal.pipeline_id in config.project_pipeline_ids:
                    continue
                issues.append(
                    self._issue(
                        IssueCode.INVALID_PIPELINE,
                        Severity.WARNING,
                        f"Deal '{deal.title}' for project '{project.match_name}' sits in {config.pipeline_name(deal.pipeline_id)}",
                        deal,
                        metadata={
                            "projectId": project.id,
                            "pipelineId": deal.pipeline_id,
                            "pipelineName": config.pipeline_name(deal.pipeline_id),
                            "expectedPipelines": [config.pipeline_name(pid) for pid in config.project_pipeline_ids],
                        },
                        current_value=deal.pipeline_id,
                    )
                )

        self._log_complete(issues, len(projects))
        return issues

    @staticmethod
    def _quote_links(quote: Quote, code: str, key: str, config: ValidatorConfig) -> bool:
        parts = parse_quote_number(quote.quote_number)
        if code and parts is not None and parts.project_code == code.upper():
            return True
        return bool(key) and record_key(quote, config.match_delimiter) == key

    @staticmethod
    def _deal_links(deal: Deal, project: Project, code: str, key: str, config: ValidatorConfig) -> bool:
        if project.deal_id:
            return deal.id == project.deal_id
        if code:
            return extract_project_code(deal.title) == code
        return bool(key) and record_key(deal, config.match_delimiter) == key

    def _duplicate_codes(self, projects: list[Project], config: ValidatorConfig) -> list[ValidationIssue]:
        groups: dict[str, list[Project]] = {}
        for project in projects:
            code = extract_project_code(project.match_name) or record_key(project, config.match_delimiter)
            if code:
                groups.setdefault(code.upper(), []).append(project)

        issues = []
        for code, group in groups.items():
            if len(group) < 2:
                continue
            issues.append(
                self._issue(
                    IssueCode.DUPLICATE_PROJECT_CODE,
                    Severity.WARNING,
                    f"{len(group)} in-progress projects share code {code}",
                    group[0],
                    metadata={"projectCode": code, "projectIds": [project.id for project in group]},
                )
            )
        return issues


PHASES: tuple[PhaseValidator, ...] = (
    DealQuoteValidator(),
    InvoiceValidator(),
    QuoteReconciler(),
    ProjectValidator(),
)
