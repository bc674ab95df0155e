"""
fixes.py - Turns fixable issues into idempotent mutation calls.

Flow per issue:
    ValidationIssue + subject record
        -> build_request()      payload from expected_value / metadata only
        -> idempotency_key()    sha256 of [subjectId, issueCode, expectedValue]
        -> mutate(request)      injected; sync or async; retried with backoff
        -> FixOutcome           fixing -> success | error, pushed to on_outcome

apply_fixes() runs fixed-size batches: members of one batch run concurrently,
batches run strictly one after another with a delay in between. One failed
fix never aborts the batch or the run.
"""

from __future__ import annotations

import asyncio
import hashlib
import inspect
import json
import os
from enum import Enum
from typing import Any, Callable, Iterable, Optional

from pydantic import BaseModel, Field

from logging_config import get_logger
from models import (
    FixError,
    FixOutcome,
    FixRequest,
    FixStatus,
    IssueCode,
    QuoteStatus,
    RecordSet,
    ValidationIssue,
    quote_status_path,
)
from store import KeyValueStore

logger = get_logger(__name__)

KNOWN_CODES = {code.value for code in IssueCode}

MutationFunction = Callable[[FixRequest], Any]
OutcomeCallback = Callable[[FixOutcome], Any]


class FixSettings(BaseModel):
    batch_size: int = Field(default=5, ge=1)
    batch_delay: float = Field(default=1.0, ge=0)
    retry_attempts: int = Field(default=3, ge=1)
    retry_delay: float = Field(default=1.0, ge=0)
    dry_run: bool = False

    @classmethod
    def from_env(cls) -> "FixSettings":
        values: dict[str, Any] = {}
        env_map = {
            "FIX_BATCH_SIZE": "batch_size",
            "FIX_BATCH_DELAY": "batch_delay",
            "FIX_RETRY_ATTEMPTS": "retry_attempts",
            "FIX_RETRY_DELAY": "retry_delay",
        }
        for env_name, field_name in env_map.items():
            raw = os.getenv(env_name, "").strip()
            if raw:
                values[field_name] = raw
        dry_run = os.getenv("FIX_DRY_RUN", "").strip().lower()
        if dry_run:
            values["dry_run"] = dry_run in {"1", "true", "yes", "on"}
        return cls(**values)


def idempotency_key(issue: ValidationIssue) -> str:
    """Stable across processes: the same finding always hashes the same."""
    payload = json.dumps(
        [issue.subject_id, issue.code, issue.expected_value],
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Payload builders
# ---------------------------------------------------------------------------


def _require_expected(issue: ValidationIssue) -> Any:
    if issue.expected_value in (None, ""):
        raise FixError(f"{issue.code} for {issue.subject_id} has no expected value")
    return issue.expected_value


def _quote_number_fix(issue: ValidationIssue, subject: Any) -> tuple[str, dict[str, Any]]:
    return "update_quote", {"quote_number": str(_require_expected(issue))}


def _accept_quote_fix(issue: ValidationIssue, subject: Any) -> tuple[str, dict[str, Any]]:
    target = QuoteStatus(str(_require_expected(issue)).upper())
    path = issue.metadata.get("transitionPath")
    if not path:
        current = issue.current_value or getattr(subject, "status", None)
        if current is None:
            raise FixError(f"{issue.code} for {issue.subject_id} has no current status")
        try:
            start = QuoteStatus(current.value if isinstance(current, Enum) else str(current).upper())
            path = [status.value for status in quote_status_path(start, target)]
        except ValueError as exc:
            raise FixError(str(exc)) from exc
    return "update_quote", {"status": target.value, "transition_path": list(path)}


def _link_quote_fix(issue: ValidationIssue, subject: Any) -> tuple[str, dict[str, Any]]:
    return "update_deal", {"quote_id": str(_require_expected(issue))}


def _link_invoice_fix(issue: ValidationIssue, subject: Any) -> tuple[str, dict[str, Any]]:
    return "update_deal", {"invoice_id": str(_require_expected(issue))}


def _estimate_fix(issue: ValidationIssue, subject: Any) -> tuple[str, dict[str, Any]]:
    try:
        estimate = round(float(_require_expected(issue)), 2)
    except (TypeError, ValueError) as exc:
        raise FixError(f"{issue.code} for {issue.subject_id} has a non-numeric estimate") from exc
    return "update_project", {"estimate": estimate}


FIX_BUILDERS: dict[str, Callable[[ValidationIssue, Any], tuple[str, dict[str, Any]]]] = {
    IssueCode.XERO_QUOTE_NUMBER_NO_PROJECT.value: _quote_number_fix,
    IssueCode.XERO_QUOTE_NOT_ACCEPTED.value: _accept_quote_fix,
    IssueCode.MISSING_QUOTE_ID.value: _link_quote_fix,
    IssueCode.MISSING_INVOICE_ID.value: _link_invoice_fix,
    IssueCode.ESTIMATE_MISMATCH.value: _estimate_fix,
}


def build_request(issue: ValidationIssue, subject: Any = None) -> FixRequest:
    """Compute the exact mutation for one issue. Raises FixError if it can't."""
    if not issue.fixable:
        raise FixError(f"{issue.code} requires manual intervention")
    builder = FIX_BUILDERS.get(issue.code)
    if builder is None:
        raise FixError(f"no fix available for {issue.code}")
    operation, patch = builder(issue, subject)
    return FixRequest(
        operation=operation,
        target_id=issue.subject_id,
        patch=patch,
        idempotency_key=idempotency_key(issue),
        issue_code=issue.code,
        subject_id=issue.subject_id,
    )


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------


class FixExecutor:
    """Applies fixes through an injected mutation function."""

    def __init__(
        self,
        mutate: MutationFunction,
        store: Optional[KeyValueStore] = None,
        settings: Optional[FixSettings] = None,
        on_outcome: Optional[OutcomeCallback] = None,
    ) -> None:
        self.mutate = mutate
        self.store = store
        self.settings = settings or FixSettings()
        self.on_outcome = on_outcome
        self._cancel_requested = False

    def cancel(self) -> None:
        """Stop before the next batch; fixes already in flight finish."""
        self._cancel_requested = True

    async def _report(self, outcome: FixOutcome) -> FixOutcome:
        if self.on_outcome is not None:
            try:
                await _maybe_await(self.on_outcome(outcome.model_copy()))
            except Exception as exc:
                logger.warning(
                    "fix_outcome_callback_error | subject=%s | error_type=%s | error=%s",
                    outcome.subject_id,
                    type(exc).__name__,
                    exc,
                )
        return outcome

    def _outcome(self, issue: ValidationIssue, status: FixStatus, message: str, **extra: Any) -> FixOutcome:
        return FixOutcome(
            subject_id=issue.subject_id,
            issue_code=issue.code,
            status=status,
            message=message,
            **extra,
        )

    async def apply_fix(self, issue: ValidationIssue, subject: Any = None) -> FixOutcome:
        """Apply one fix. Never raises; every failure becomes an error outcome."""
        key = idempotency_key(issue)
        await self._report(self._outcome(issue, FixStatus.FIXING, "applying fix", idempotency_key=key))

        if subject is not None and getattr(subject, "id", None) != issue.subject_id:
            logger.warning(
                "fix_subject_mismatch | issue_subject=%s | record=%s",
                issue.subject_id,
                getattr(subject, "id", None),
            )
            return await self._report(
                self._outcome(
                    issue,
                    FixStatus.ERROR,
                    f"subject record {getattr(subject, 'id', None)} does not match issue subject {issue.subject_id}",
                    idempotency_key=key,
                )
            )

        if issue.code not in KNOWN_CODES:
            return await self._report(
                self._outcome(issue, FixStatus.ERROR, f"no fix available for {issue.code}", idempotency_key=key)
            )

        try:
            request = build_request(issue, subject)
        except FixError as exc:
            logger.info("fix_not_applicable | code=%s | subject=%s | reason=%s", issue.code, issue.subject_id, exc)
            return await self._report(self._outcome(issue, FixStatus.ERROR, str(exc), idempotency_key=key))

        if self.store is not None and self.store.get(f"fix:{key}") is not None:
            logger.info("fix_replayed | code=%s | subject=%s | key=%s", issue.code, issue.subject_id, key[:12])
            return await self._report(
                self._outcome(issue, FixStatus.SUCCESS, "already applied", idempotency_key=key)
            )

        if self.settings.dry_run:
            return await self._report(
                self._outcome(
                    issue,
                    FixStatus.SUCCESS,
                    f"dry run: {request.operation} {request.target_id} {json.dumps(request.patch, sort_keys=True)}",
                    idempotency_key=key,
                )
            )

        attempts = 0
        last_error: Optional[BaseException] = None
        while attempts < self.settings.retry_attempts:
            attempts += 1
            try:
                await _maybe_await(self.mutate(request))
                last_error = None
                break
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "fix_attempt_failed | code=%s | subject=%s | attempt=%s/%s | error_type=%s | error=%s",
                    issue.code,
                    issue.subject_id,
                    attempts,
                    self.settings.retry_attempts,
                    type(exc).__name__,
                    exc,
                )
                if attempts < self.settings.retry_attempts:
                    await asyncio.sleep(self.settings.retry_delay * (2 ** (attempts - 1)))

        if last_error is not None:
            logger.error(
                "fix_failed | code=%s | subject=%s | attempts=%s | error=%s",
                issue.code,
                issue.subject_id,
                attempts,
                last_error,
            )
            return await self._report(
                self._outcome(
                    issue,
                    FixStatus.ERROR,
                    f"{type(last_error).__name__}: {last_error}",
                    idempotency_key=key,
                    attempts=attempts,
                )
            )

        if self.store is not None:
            self.store.set(
                f"fix:{key}",
                {"operation": request.operation, "targetId": request.target_id, "patch": request.patch},
            )
        logger.info(
            "fix_applied | code=%s | subject=%s | operation=%s | attempts=%s",
            issue.code,
            issue.subject_id,
            request.operation,
            attempts,
        )
        return await self._report(
            self._outcome(
                issue,
                FixStatus.SUCCESS,
                f"{request.operation} applied",
                idempotency_key=key,
                attempts=attempts,
            )
        )

    async def apply_fixes(
        self,
        issues: Iterable[ValidationIssue],
        records: Optional[RecordSet] = None,
        batch_size: Optional[int] = None,
        delay: Optional[float] = None,
    ) -> list[FixOutcome]:
        """Apply many fixes in sequential batches; outcomes keep input order."""
        issue_list = list(issues)
        size = max(1, batch_size or self.settings.batch_size)
        pause = self.settings.batch_delay if delay is None else delay
        lookup = (records or RecordSet()).index()
        outcomes: list[FixOutcome] = []

        batches = [issue_list[i : i + size] for i in range(0, len(issue_list), size)]
        for index, batch in enumerate(batches, start=1):
            if self._cancel_requested:
                logger.info("fix_batches_cancelled | completed=%s | remaining=%s", index - 1, len(batches) - index + 1)
                break
            logger.info("fix_batch_start | batch=%s/%s | size=%s", index, len(batches), len(batch))
            results = await asyncio.gather(
                *(
                    self.apply_fix(issue, lookup.get((issue.subject_type.value, issue.subject_id)))
                    for issue in batch
                )
            )
            outcomes.extend(results)
            if index < len(batches) and pause > 0:
                await asyncio.sleep(pause)

        logger.info(
            "fix_batches_complete | attempted=%s | success=%s | error=%s",
            len(outcomes),
            sum(1 for outcome in outcomes if outcome.status == FixStatus.SUCCESS),
            sum(1 for outcome in outcomes if outcome.status == FixStatus.ERROR),
        )
        return outcomes


class RecordingSink:
    """In-process mutation function that applies each idempotency key once."""

    def __init__(self) -> None:
        self.applied: dict[str, FixRequest] = {}
        self.calls = 0

    def __call__(self, request: FixRequest) -> dict[str, Any]:
        self.calls += 1
        if request.idempotency_key not in self.applied:
            self.applied[request.idempotency_key] = request
        return {"idempotencyKey": request.idempotency_key, "applied": True}

    @property
    def requests(self) -> list[FixRequest]:
        return list(self.applied.values())
