"""
models.py - Data models for the CRM <-> accounting reconciliation engine.

Every module communicates exclusively through these models:

    fetchers         ->  RecordSet (Deal | Quote | Invoice | Project)
    match.py         ->  MatchResult
    validators.py    ->  list[ValidationIssue]
    aggregate.py     ->  ValidationSummary
    orchestrator.py  ->  SyncSession + SyncEvent stream
    fixes.py         ->  FixRequest / FixOutcome

Design principles:
1. Records are immutable snapshots taken once per run (frozen models)
2. Each Record kind is its own tagged variant, discriminated by `kind`
3. Issues are data, not exceptions; they never change after creation
4. Wire-facing models serialize with camelCase aliases (subjectId, fixAction)
   so the progress stream matches what dashboards already consume

Schema relationships:
    RecordKind     --used by--> ValidationIssue.subject_type
    IssueCode      --used by--> ValidationIssue.code (stored as plain str)
    SyncStep       --used by--> SyncSession.steps
    ValidationSummary --used by--> SyncSession.summary
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from normalize import normalize_amount, normalize_currency, normalize_timestamp


class RecordKind(str, Enum):
    DEAL = "deal"
    QUOTE = "quote"
    INVOICE = "invoice"
    PROJECT = "project"


class Severity(str, Enum):
    """How loudly an issue should be surfaced.

    ERROR is reserved for broken billing links (missing quote/invoice ids,
    orphaned accepted quotes, value mismatches). WARNING covers everything an
    operator should look at but that does not block invoicing.
    """

    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class IssueCode(str, Enum):
    """Known issue codes. The wire contract is the string value.

    Consumers must accept codes outside this enum; see aggregate.categorize_issues.
    """

    # Deal -> quote links
    MISSING_QUOTE_ID = "MISSING_QUOTE_ID"
    QUOTE_NOT_FOUND = "QUOTE_NOT_FOUND"
    XERO_QUOTE_NUMBER_NO_PROJECT = "XERO_QUOTE_NUMBER_NO_PROJECT"
    XERO_QUOTE_NOT_ACCEPTED = "XERO_QUOTE_NOT_ACCEPTED"
    CURRENCY_MISMATCH = "CURRENCY_MISMATCH"
    DEAL_VALUE_ZERO = "DEAL_VALUE_ZERO"
    TITLE_FORMAT_INVALID = "TITLE_FORMAT_INVALID"

    # Deal -> invoice links
    MISSING_INVOICE_ID = "MISSING_INVOICE_ID"
    INVOICE_NOT_FOUND = "INVOICE_NOT_FOUND"
    INVOICE_VALUE_MISMATCH = "INVOICE_VALUE_MISMATCH"
    INVOICE_STATUS_INVALID = "INVOICE_STATUS_INVALID"
    INVOICE_CURRENCY_MISMATCH = "INVOICE_CURRENCY_MISMATCH"

    # Accepted quote reconciliation
    QUOTE_ORPHANED = "QUOTE_ORPHANED"
    QUOTE_REFERENCES_MISSING_DEAL = "QUOTE_REFERENCES_MISSING_DEAL"
    QUOTE_VALUE_MISMATCH = "QUOTE_VALUE_MISMATCH"
    ACCEPTED_QUOTE_INVALID_FORMAT = "ACCEPTED_QUOTE_INVALID_FORMAT"
    DUPLICATE_QUOTE = "DUPLICATE_QUOTE"

    # Projects
    PROJECT_NO_QUOTES = "PROJECT_NO_QUOTES"
    ESTIMATE_MISMATCH = "ESTIMATE_MISMATCH"
    DUPLICATE_PROJECT_CODE = "DUPLICATE_PROJECT_CODE"
    INVALID_PIPELINE = "INVALID_PIPELINE"


class DealStatus(str, Enum):
    OPEN = "open"
    WON = "won"
    LOST = "lost"
    DELETED = "deleted"


class QuoteStatus(str, Enum):
    DRAFT = "DRAFT"
    SENT = "SENT"
    ACCEPTED = "ACCEPTED"
    DECLINED = "DECLINED"
    DELETED = "DELETED"
    INVOICED = "INVOICED"


class InvoiceStatus(str, Enum):
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    AUTHORISED = "AUTHORISED"
    PAID = "PAID"
    VOIDED = "VOIDED"
    DELETED = "DELETED"


class ProjectStatus(str, Enum):
    INPROGRESS = "INPROGRESS"
    CLOSED = "CLOSED"


QUOTE_STATUS_TRANSITIONS: dict[QuoteStatus, tuple[QuoteStatus, ...]] = {
    QuoteStatus.DRAFT: (QuoteStatus.SENT, QuoteStatus.DELETED),
    QuoteStatus.SENT: (QuoteStatus.ACCEPTED, QuoteStatus.DECLINED, QuoteStatus.DELETED),
    QuoteStatus.DECLINED: (QuoteStatus.SENT, QuoteStatus.DELETED),
    QuoteStatus.ACCEPTED: (QuoteStatus.SENT, QuoteStatus.DELETED, QuoteStatus.INVOICED),
    QuoteStatus.INVOICED: (QuoteStatus.SENT, QuoteStatus.DELETED),
    QuoteStatus.DELETED: (),
}


def quote_status_path(current: QuoteStatus, target: QuoteStatus) -> list[QuoteStatus]:
    """Shortest legal sequence of status moves from current to target.

    Returns [] when already there and raises ValueError when unreachable
    (DELETED is terminal on the accounting side).
    """
    if current == target:
        return []
    frontier: list[tuple[QuoteStatus, list[QuoteStatus]]] = [(current, [])]
    seen = {current}
    while frontier:
        status, path = frontier.pop(0)
        for nxt in QUOTE_STATUS_TRANSITIONS.get(status, ()):
            if nxt in seen:
                continue
            if nxt == target:
                return path + [nxt]
            seen.add(nxt)
            frontier.append((nxt, path + [nxt]))
    raise ValueError(f"no legal quote status path from {current.value} to {target.value}")


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


def _enum_text(value: Any) -> str:
    if isinstance(value, Enum):
        value = value.value
    return str(value).strip()


class _RecordBase(BaseModel):
    """Fields shared by every record kind.

    Records arrive from two systems with different shapes; by the time they
    reach this model the fetch layer has mapped them onto these names. Money
    is normalized to non-negative 2dp floats and junk degrades to 0.0 rather
    than failing the whole run.
    """

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    id: str = Field(..., description="Identifier, unique inside its origin system.")
    title: str = Field(default="", description="Display name as typed by a human.")
    value: float = Field(default=0.0, ge=0, description="Monetary value, 2 decimals.")
    currency: str = Field(default="", description="ISO 4217 code, upper-case; '' when unknown.")
    reference: Optional[str] = Field(default=None, description="Free-text reference field.")

    @field_validator("id", mode="before")
    @classmethod
    def _id_required(cls, value: Any) -> str:
        text = "" if value is None else str(value).strip()
        if not text:
            raise ValueError("record id is required")
        return text

    @field_validator("title", mode="before")
    @classmethod
    def _title_text(cls, value: Any) -> str:
        return "" if value is None else str(value)

    @field_validator("value", mode="before")
    @classmethod
    def _money(cls, value: Any) -> float:
        return normalize_amount(value)

    @field_validator("currency", mode="before")
    @classmethod
    def _currency(cls, value: Any) -> str:
        return normalize_currency(value)

    @property
    def match_name(self) -> str:
        return self.title


class Deal(_RecordBase):
    """A won or in-pipeline CRM deal.

    The deal title usually starts with a project code ("ED25001 - MV Ocean
    Star") which is both the match key source and the prefix expected on the
    accounting quote number.
    """

    kind: Literal["deal"] = "deal"
    status: DealStatus = DealStatus.WON
    pipeline_id: Optional[int] = None
    stage_id: Optional[int] = None
    org_name: str = ""
    quote_id: Optional[str] = Field(
        default=None,
        description="Accounting quote id stored in the deal's custom field.",
    )
    invoice_id: Optional[str] = Field(
        default=None,
        description="Accounting invoice id stored in the deal's custom field.",
    )
    won_time: str = ""

    @field_validator("status", mode="before")
    @classmethod
    def _status_lower(cls, value: Any) -> Any:
        return _enum_text(value).lower() if value is not None else DealStatus.WON

    @field_validator("quote_id", "invoice_id", mode="before")
    @classmethod
    def _blank_link_is_none(cls, value: Any) -> Optional[str]:
        text = "" if value is None else str(value).strip()
        return text or None

    @field_validator("org_name", mode="before")
    @classmethod
    def _org_text(cls, value: Any) -> str:
        return "" if value is None else str(value).strip()

    @field_validator("won_time", mode="before")
    @classmethod
    def _won_time(cls, value: Any) -> str:
        return normalize_timestamp(value)

    model_config = ConfigDict(
        **_RecordBase.model_config,
        json_schema_extra={
            "examples": [
                {
                    "kind": "deal",
                    "id": "1042",
                    "title": "ED25001 - MV Ocean Star",
                    "value": 12500.0,
                    "currency": "SGD",
                    "pipeline_id": 2,
                    "stage_id": 6,
                    "quote_id": "6f1d3c0e-9a7b-4c1e-8f00-1d2e3f4a5b6c",
                }
            ]
        },
    )


class Quote(_RecordBase):
    """An accounting quote. `value` carries the quote total."""

    kind: Literal["quote"] = "quote"
    quote_number: str = ""
    status: QuoteStatus = QuoteStatus.DRAFT
    deal_id: Optional[str] = None
    contact_name: str = ""
    date: str = ""

    @field_validator("status", mode="before")
    @classmethod
    def _status_upper(cls, value: Any) -> Any:
        return _enum_text(value).upper() if value is not None else QuoteStatus.DRAFT

    @field_validator("quote_number", "contact_name", mode="before")
    @classmethod
    def _text(cls, value: Any) -> str:
        return "" if value is None else str(value).strip()

    @field_validator("deal_id", mode="before")
    @classmethod
    def _deal_link(cls, value: Any) -> Optional[str]:
        text = "" if value is None else str(value).strip()
        return text or None

    @field_validator("date", mode="before")
    @classmethod
    def _date(cls, value: Any) -> str:
        return normalize_timestamp(value)

    @property
    def match_name(self) -> str:
        return self.reference or self.title

    @property
    def is_accepted(self) -> bool:
        return self.status in (QuoteStatus.ACCEPTED, QuoteStatus.INVOICED)


class Invoice(_RecordBase):
    kind: Literal["invoice"] = "invoice"
    invoice_number: str = ""
    status: InvoiceStatus = InvoiceStatus.DRAFT
    deal_id: Optional[str] = None

    @field_validator("status", mode="before")
    @classmethod
    def _status_upper(cls, value: Any) -> Any:
        return _enum_text(value).upper() if value is not None else InvoiceStatus.DRAFT

    @field_validator("invoice_number", mode="before")
    @classmethod
    def _text(cls, value: Any) -> str:
        return "" if value is None else str(value).strip()

    @field_validator("deal_id", mode="before")
    @classmethod
    def _deal_link(cls, value: Any) -> Optional[str]:
        text = "" if value is None else str(value).strip()
        return text or None

    @property
    def match_name(self) -> str:
        return self.reference or self.title


class Project(_RecordBase):
    """An accounting project. `title` mirrors `name` when only one is given."""

    kind: Literal["project"] = "project"
    name: str = ""
    status: ProjectStatus = ProjectStatus.INPROGRESS
    estimate: Optional[float] = None
    deal_id: Optional[str] = None

    @field_validator("status", mode="before")
    @classmethod
    def _status_upper(cls, value: Any) -> Any:
        return _enum_text(value).upper() if value is not None else ProjectStatus.INPROGRESS

    @field_validator("estimate", mode="before")
    @classmethod
    def _estimate(cls, value: Any) -> Optional[float]:
        if value is None or (isinstance(value, str) and not value.strip()):
            return None
        return normalize_amount(value)

    @model_validator(mode="before")
    @classmethod
    def _name_and_title(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            if not data.get("name") and data.get("title"):
                data["name"] = data["title"]
            if not data.get("title") and data.get("name"):
                data["title"] = data["name"]
        return data

    @property
    def match_name(self) -> str:
        return self.name or self.title


Record = Annotated[Union[Deal, Quote, Invoice, Project], Field(discriminator="kind")]


class RecordSet(BaseModel):
    """The four record collections fetched for one run."""

    deals: list[Deal] = Field(default_factory=list)
    quotes: list[Quote] = Field(default_factory=list)
    invoices: list[Invoice] = Field(default_factory=list)
    projects: list[Project] = Field(default_factory=list)

    def by_kind(self, kind: RecordKind | str) -> list[Any]:
        kind_value = kind.value if isinstance(kind, RecordKind) else str(kind)
        return {
            RecordKind.DEAL.value: self.deals,
            RecordKind.QUOTE.value: self.quotes,
            RecordKind.INVOICE.value: self.invoices,
            RecordKind.PROJECT.value: self.projects,
        }.get(kind_value, [])

    def index(self) -> dict[tuple[str, str], Any]:
        """(kind, id) -> record over all four lists; the first record of an id wins."""
        lookup: dict[tuple[str, str], Any] = {}
        for kind in RecordKind:
            for record in self.by_kind(kind):
                lookup.setdefault((kind.value, record.id), record)
        return lookup

    @property
    def total_records(self) -> int:
        return len(self.deals) + len(self.quotes) + len(self.invoices) + len(self.projects)


# ---------------------------------------------------------------------------
# Issues and summaries
# ---------------------------------------------------------------------------


class ValidationIssue(BaseModel):
    """One reconciliation finding.

    Created by exactly one phase validator and never mutated afterwards; the
    aggregator and the fix executor only read it. `fixable` issues always
    carry `fix_action` and an `expected_value` the fix executor can write.

    metadata keys stay camelCase on purpose (quoteTotal, referencedDealId,
    currentFormat) because they are passed through untouched to the UI.
    """

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
        json_schema_extra={
            "examples": [
                {
                    "code": "QUOTE_ORPHANED",
                    "severity": "error",
                    "message": "Accepted quote ED25001-QU0042-1 has no owning deal",
                    "subjectId": "6f1d3c0e-9a7b-4c1e-8f00-1d2e3f4a5b6c",
                    "subjectType": "quote",
                    "fixable": False,
                    "metadata": {"quoteTotal": 500.0, "quoteNumber": "ED25001-QU0042-1"},
                }
            ]
        },
    )

    code: str = Field(..., description="Issue code; see IssueCode for the known set.")
    severity: Severity
    message: str
    subject_id: str
    subject_type: RecordKind
    fixable: bool = False
    fix_action: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    current_value: Any = None
    expected_value: Any = None

    @field_validator("code", mode="before")
    @classmethod
    def _code_text(cls, value: Any) -> str:
        if isinstance(value, Enum):
            value = value.value
        text = str(value or "").strip().upper()
        if not text:
            raise ValueError("issue code is required")
        return text

    @model_validator(mode="after")
    def _fixable_needs_action(self) -> "ValidationIssue":
        if self.fixable and not self.fix_action:
            raise ValueError(f"fixable issue {self.code} must describe its fix_action")
        return self

    @property
    def is_error(self) -> bool:
        return self.severity == Severity.ERROR


class QuoteValueBreakdown(BaseModel):
    """Decomposition of the deal total vs accepted-quote total gap.

    orphaned + duplicate + matched always equals total_accepted_quotes_value;
    unexplained_value is whatever the named causes fail to account for.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    total_accepted_quotes_value: float = 0.0
    total_deals_value: float = 0.0
    orphaned_quotes_value: float = 0.0
    duplicate_quotes_value: float = 0.0
    matched_quotes_value: float = 0.0
    deals_with_quotes_value: float = 0.0
    deals_without_quotes_value: float = 0.0
    quotes_with_value_mismatch: int = 0
    total_value_mismatch_amount: float = 0.0
    value_difference: float = 0.0
    unexplained_value: float = 0.0


class PipelineBreakdown(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    pipeline_id: Optional[int] = None
    pipeline_name: str = ""
    deal_count: int = 0
    total_value: float = 0.0
    deals_with_issues: int = 0


class ValidationSummary(BaseModel):
    """Aggregate counts and totals for one run (recomputed, never patched)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    total_deals: int = 0
    total_quotes: int = 0
    total_invoices: int = 0
    total_projects: int = 0
    total_issues: int = 0
    error_count: int = 0
    warning_count: int = 0
    info_count: int = 0
    fixable_count: int = 0
    deals_with_issues: int = 0
    fully_synced_deals: int = 0
    issue_breakdown: dict[str, int] = Field(default_factory=dict)
    category_counts: dict[str, int] = Field(default_factory=dict)
    quotes_by_status: dict[str, int] = Field(default_factory=dict)
    total_deal_value: float = 0.0
    total_accepted_quote_value: float = 0.0
    total_quote_in_progress_value: float = 0.0
    total_invoice_value: float = 0.0
    total_project_estimate_value: float = 0.0
    orphaned_accepted_quotes: int = 0
    orphaned_accepted_quotes_value: float = 0.0
    accepted_quotes_with_invalid_format: int = 0
    pipeline_breakdown: list[PipelineBreakdown] = Field(default_factory=list)
    quote_breakdown: Optional[QuoteValueBreakdown] = None


# ---------------------------------------------------------------------------
# Orchestration state
# ---------------------------------------------------------------------------


class SessionStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    SKIPPED = "skipped"


class SyncStep(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    name: str
    description: str = ""
    status: StepStatus = StepStatus.PENDING
    progress: Optional[int] = Field(default=None, ge=0, le=100)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    error: Optional[str] = None
    detail: Optional[str] = None


class SyncSession(BaseModel):
    """State of one orchestrated run. Owned by the orchestrator that made it."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    tenant_id: str
    status: SessionStatus = SessionStatus.IDLE
    steps: list[SyncStep] = Field(default_factory=list)
    summary: Optional[ValidationSummary] = None
    issues: list[ValidationIssue] = Field(default_factory=list)
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def step(self, step_id: str) -> SyncStep:
        for step in self.steps:
            if step.id == step_id:
                return step
        raise KeyError(step_id)

    @property
    def is_terminal(self) -> bool:
        return self.status in (
            SessionStatus.COMPLETED,
            SessionStatus.FAILED,
            SessionStatus.CANCELLED,
        )


class ProgressEvent(BaseModel):
    type: Literal["progress"] = "progress"
    step: str
    status: StepStatus
    detail: Optional[str] = None


class LogEvent(BaseModel):
    type: Literal["log"] = "log"
    message: str


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    message: str
    details: Optional[dict[str, Any]] = None


class CompleteEvent(BaseModel):
    type: Literal["complete"] = "complete"
    data: dict[str, Any] = Field(default_factory=dict)


SyncEvent = Annotated[
    Union[ProgressEvent, LogEvent, ErrorEvent, CompleteEvent],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Fixes
# ---------------------------------------------------------------------------


class FixStatus(str, Enum):
    FIXING = "fixing"
    SUCCESS = "success"
    ERROR = "error"


class FixRequest(BaseModel):
    """The exact mutation a fix sends to the remote system."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    operation: Literal["update_quote", "update_deal", "update_project"]
    target_id: str
    patch: dict[str, Any] = Field(default_factory=dict)
    idempotency_key: str
    issue_code: str
    subject_id: str


class FixOutcome(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    subject_id: str
    issue_code: str
    status: FixStatus
    message: Optional[str] = None
    idempotency_key: Optional[str] = None
    attempts: int = 0


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class ValidatorConfig(BaseModel):
    """Per-tenant settings resolved once at session start.

    Pipeline scopes left as None mean "every pipeline".
    """

    model_config = ConfigDict(extra="ignore")

    tenant_id: str = "default"
    tenant_name: str = ""
    crm_enabled: bool = True
    quote_pipeline_ids: Optional[list[int]] = None
    invoice_pipeline_ids: Optional[list[int]] = None
    invoice_stage_id: Optional[int] = None
    project_pipeline_ids: Optional[list[int]] = None
    pipeline_names: dict[int, str] = Field(default_factory=dict)
    custom_field_keys: dict[str, str] = Field(default_factory=dict)
    epsilon: float = Field(default=0.01, ge=0)
    match_delimiter: str = " - "
    halt_on_fetch_error: bool = False

    def pipeline_name(self, pipeline_id: Optional[int]) -> str:
        if pipeline_id is None:
            return "No pipeline"
        return self.pipeline_names.get(pipeline_id, f"Pipeline {pipeline_id}")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class ReconError(Exception):
    """Base class for faults (not findings) raised by the engine."""


class IntegrationDisabledError(ReconError):
    """A data source is switched off for this tenant; its step is skipped."""


class FetchError(ReconError):
    """A data source failed to deliver records."""


class FixError(ReconError):
    """A fix payload cannot be computed for an issue."""
