"""
orchestrator.py - Runs the reconciliation phases as one tracked session.

Session lifecycle:  idle -> running -> completed | failed | cancelled

Steps, strictly one after another:
    fetch_deals           CRM deals (skipped when the integration is disabled)
    fetch_accounting      quotes, invoices, projects
    validate_deal_quotes  phase 1
    validate_invoices     phase 2 (reads phase 1 issues)
    reconcile_quotes      phase 3 (reads phase 1 issues, yields value breakdown)
    validate_projects     phase 4
    aggregate             summary over every issue

Each step moves pending -> running -> completed | error | skipped. Every
move is pushed to the progress callback and as a `progress` event; a run
ends with exactly one `complete` or `error` event. cancel() is cooperative:
the flag is read before each step and work already done is kept.
"""

from __future__ import annotations

import asyncio
import inspect
import secrets
import time
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Protocol, Sequence

from pydantic import TypeAdapter, ValidationError

from aggregate import ValidationAggregator
from logging_config import get_logger
from models import (
    CompleteEvent,
    Deal,
    ErrorEvent,
    FetchError,
    IntegrationDisabledError,
    Invoice,
    LogEvent,
    ProgressEvent,
    Project,
    Quote,
    QuoteValueBreakdown,
    RecordSet,
    SessionStatus,
    StepStatus,
    SyncSession,
    SyncStep,
    ValidationIssue,
    ValidatorConfig,
)
from store import KeyValueStore
from validators import (
    DealQuoteValidator,
    InvoiceValidator,
    PhaseValidator,
    ProjectValidator,
    QuoteReconciler,
    ValidationContext,
)

logger = get_logger(__name__)

DISABLED_MARKERS = ("INTEGRATION_DISABLED", "PIPEDRIVE_DISABLED")

STEP_PLAN: tuple[tuple[str, str, str], ...] = (
    ("fetch_deals", "Fetch deals", "Load won deals from the CRM"),
    ("fetch_accounting", "Fetch accounting records", "Load quotes, invoices and projects"),
    ("validate_deal_quotes", "Deal / quote links", "Check deals reference valid quotes"),
    ("validate_invoices", "Deal / invoice links", "Check invoiced deals against invoices"),
    ("reconcile_quotes", "Quote reconciliation", "Match accepted quotes to owning deals"),
    ("validate_projects", "Projects", "Check in-progress projects against quotes"),
    ("aggregate", "Summary", "Aggregate issues and totals"),
)

ProgressCallback = Callable[[SyncStep], Any]
EventCallback = Callable[[Any], Any]


class DataSource(Protocol):
    """Read side of both external systems. Implementations own their timeouts."""

    async def fetch_deals(self) -> Sequence[Any]: ...

    async def fetch_quotes(self) -> Sequence[Any]: ...

    async def fetch_invoices(self) -> Sequence[Any]: ...

    async def fetch_projects(self) -> Sequence[Any]: ...


class StaticDataSource:
    """DataSource over records already in hand (request bodies, files, tests).

    crm_enabled=False makes fetch_deals raise IntegrationDisabledError;
    `failures` maps a fetch name ("quotes", ...) to the error it should raise.
    """

    def __init__(
        self,
        records: Optional[RecordSet] = None,
        crm_enabled: bool = True,
        failures: Optional[dict[str, Exception]] = None,
    ) -> None:
        self.records = records or RecordSet()
        self.crm_enabled = crm_enabled
        self.failures = dict(failures or {})

    def _check(self, name: str) -> None:
        if name in self.failures:
            raise self.failures[name]

    async def fetch_deals(self) -> list[Deal]:
        if not self.crm_enabled:
            raise IntegrationDisabledError("PIPEDRIVE_DISABLED: CRM integration disabled for tenant")
        self._check("deals")
        return list(self.records.deals)

    async def fetch_quotes(self) -> list[Quote]:
        self._check("quotes")
        return list(self.records.quotes)

    async def fetch_invoices(self) -> list[Invoice]:
        self._check("invoices")
        return list(self.records.invoices)

    async def fetch_projects(self) -> list[Project]:
        self._check("projects")
        return list(self.records.projects)


_DEALS = TypeAdapter(list[Deal])
_QUOTES = TypeAdapter(list[Quote])
_INVOICES = TypeAdapter(list[Invoice])
_PROJECTS = TypeAdapter(list[Project])


class _HaltRun(Exception):
    def __init__(self, step_id: str, message: str) -> None:
        super().__init__(message)
        self.step_id = step_id


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _is_disabled(exc: BaseException) -> bool:
    if isinstance(exc, IntegrationDisabledError):
        return True
    text = str(exc).upper()
    return any(marker in text for marker in DISABLED_MARKERS)


def generate_session_id() -> str:
    return f"sync_{int(time.time() * 1000)}_{secrets.token_hex(2)}"


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class SyncOrchestrator:
    """Single-use state machine for one reconciliation run."""

    def __init__(
        self,
        source: DataSource,
        config: Optional[ValidatorConfig] = None,
        on_progress: Optional[ProgressCallback] = None,
        on_event: Optional[EventCallback] = None,
        store: Optional[KeyValueStore] = None,
        session_id: Optional[str] = None,
    ) -> None:
        self.source = source
        self.config = config or ValidatorConfig()
        self.on_progress = on_progress
        self.on_event = on_event
        self.store = store
        self.session_id = session_id or generate_session_id()
        self.session: Optional[SyncSession] = None

        self.records = RecordSet()
        self.issues: list[ValidationIssue] = []
        self.quote_breakdown: Optional[QuoteValueBreakdown] = None
        self._cancel_requested = False
        self._terminal_emitted = False
        self._aggregator = ValidationAggregator(self.config)
        self._validators: dict[str, PhaseValidator] = {
            validator.step_id: validator
            for validator in (
                DealQuoteValidator(),
                InvoiceValidator(),
                QuoteReconciler(),
                ProjectValidator(),
            )
        }

    @property
    def status(self) -> SessionStatus:
        return self.session.status if self.session else SessionStatus.IDLE

    def cancel(self) -> bool:
        """Ask the running session to stop at its next checkpoint.

        Returns False when there is nothing running to cancel.
        """
        if self.session is None or self.session.status != SessionStatus.RUNNING:
            return False
        self._cancel_requested = True
        logger.info("sync_cancel_requested | session=%s", self.session.id)
        return True

    async def start(self) -> SyncSession:
        """Run every step and return the finished session."""
        if self.session is not None:
            raise RuntimeError(f"session {self.session.id} already started")

        self.session = SyncSession(
            id=self.session_id,
            tenant_id=self.config.tenant_id,
            status=SessionStatus.RUNNING,
            steps=[SyncStep(id=sid, name=name, description=desc) for sid, name, desc in STEP_PLAN],
            started_at=_now(),
        )
        logger.info(
            "sync_started | session=%s | tenant=%s | crm_enabled=%s",
            self.session.id,
            self.config.tenant_id,
            self.config.crm_enabled,
        )

        handlers = {
            "fetch_deals": self._fetch_deals,
            "fetch_accounting": self._fetch_accounting,
            "aggregate": self._aggregate,
        }

        step: Optional[SyncStep] = None
        try:
            for step_id, _, _ in STEP_PLAN:
                if self._cancel_requested:
                    await self._finish(SessionStatus.CANCELLED)
                    break
                step = self.session.step(step_id)
                handler = handlers.get(step_id, self._validate)
                await handler(step)
            else:
                await self._finish(SessionStatus.COMPLETED)
        except _HaltRun as exc:
            await self._finish(SessionStatus.FAILED, error=str(exc), failed_step=exc.step_id)
        except Exception as exc:
            message = f"{type(exc).__name__}: {exc}"
            logger.error(
                "sync_unexpected_error | session=%s | step=%s | error=%s",
                self.session.id,
                step.id if step else None,
                message,
                exc_info=True,
            )
            if self._terminal_emitted:
                raise
            if step is not None and step.status == StepStatus.RUNNING:
                await self._update(step, status=StepStatus.ERROR, error=message, end_time=_now())
            await self._finish(SessionStatus.FAILED, error=message, failed_step=step.id if step else None)

        return self.session

    async def stream(self) -> AsyncIterator[dict[str, Any]]:
        """Run the session and yield wire events until the terminal one."""
        queue: asyncio.Queue = asyncio.Queue()
        downstream = self.on_event

        async def forward(event: Any) -> None:
            await queue.put(event)
            if downstream is not None:
                await _maybe_await(downstream(event))

        self.on_event = forward
        runner = asyncio.create_task(self.start())
        try:
            while True:
                getter = asyncio.ensure_future(queue.get())
                done, _ = await asyncio.wait({getter, runner}, return_when=asyncio.FIRST_COMPLETED)
                if getter in done:
                    event = getter.result()
                else:
                    getter.cancel()
                    if queue.empty():
                        # runner ended without a terminal event; surface its exception if any
                        await runner
                        return
                    event = queue.get_nowait()
                yield event.model_dump(mode="json", by_alias=True)
                if event.type in ("complete", "error"):
                    break
            await runner
        finally:
            if not runner.done():
                self.cancel()
                await asyncio.gather(runner, return_exceptions=True)
            self.on_event = downstream

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _fetch_deals(self, step: SyncStep) -> None:
        if not self.config.crm_enabled:
            await self._skip(step, "integration disabled")
            return
        results = await self._fetch(step, [("deals", self.source.fetch_deals, _DEALS)])
        if results is None:
            return
        self.records.deals = results["deals"]
        if step.status == StepStatus.RUNNING:
            await self._complete(step, f"Found {len(self.records.deals)} deals")

    async def _fetch_accounting(self, step: SyncStep) -> None:
        results = await self._fetch(
            step,
            [
                ("quotes", self.source.fetch_quotes, _QUOTES),
                ("invoices", self.source.fetch_invoices, _INVOICES),
                ("projects", self.source.fetch_projects, _PROJECTS),
            ],
        )
        if results is None:
            return
        self.records.quotes = results["quotes"]
        self.records.invoices = results["invoices"]
        self.records.projects = results["projects"]
        if step.status == StepStatus.RUNNING:
            await self._complete(
                step,
                f"Found {len(self.records.quotes)} quotes, {len(self.records.invoices)} invoices, "
                f"{len(self.records.projects)} projects",
            )

    async def _fetch(
        self,
        step: SyncStep,
        calls: list[tuple[str, Callable[[], Awaitable[Sequence[Any]]], TypeAdapter]],
    ) -> Optional[dict[str, list[Any]]]:
        """Run one fetch step, one source per call.

        Sources that fail come back as empty lists while the others keep
        their records. None means every source was disabled and the step
        ended skipped.
        """
        await self._update(step, status=StepStatus.RUNNING, progress=0, start_time=_now())
        raw = await asyncio.gather(*(fetch() for _, fetch, _ in calls), return_exceptions=True)

        results: dict[str, list[Any]] = {}
        failures: dict[str, Exception] = {}
        for (name, _, adapter), rows in zip(calls, raw):
            if isinstance(rows, BaseException):
                if not isinstance(rows, Exception):
                    raise rows
                failures[name] = rows
                results[name] = []
                continue
            try:
                results[name] = adapter.validate_python(list(rows or []))
            except ValidationError as exc:
                failures[name] = exc
                results[name] = []

        if not failures:
            return results

        disabled = [name for name, exc in failures.items() if _is_disabled(exc)]
        if disabled:
            logger.info("sync_source_skipped | step=%s | sources=%s", step.id, ",".join(disabled))
        errors = {name: exc for name, exc in failures.items() if name not in disabled}
        if not errors:
            if len(disabled) == len(calls):
                await self._skip(step, "integration disabled")
                return None
            return results

        message = "; ".join(f"{name}: {type(exc).__name__}: {exc}" for name, exc in errors.items())
        logger.error(
            "sync_step_error | session=%s | step=%s | sources=%s | error=%s",
            self.session.id,
            step.id,
            ",".join(errors),
            message,
            exc_info=next(
                ((type(exc), exc, exc.__traceback__) for exc in errors.values() if not isinstance(exc, FetchError)),
                False,
            ),
        )
        await self._update(step, status=StepStatus.ERROR, error=message, end_time=_now())
        if self.config.halt_on_fetch_error:
            raise _HaltRun(step.id, f"{step.name} failed: {message}") from next(iter(errors.values()))
        await self._emit(
            LogEvent(message=f"{step.name} failed ({message}); continuing with no {', '.join(errors)}")
        )
        return results

    async def _validate(self, step: SyncStep) -> None:
        validator = self._validators[step.id]
        await self._update(step, status=StepStatus.RUNNING, progress=0, start_time=_now())
        context = ValidationContext(records=self.records, config=self.config, prior_issues=list(self.issues))
        try:
            if isinstance(validator, QuoteReconciler):
                result = validator.reconcile(context)
                self.quote_breakdown = result.breakdown
                found = result.issues
            else:
                found = validator.validate(context)
        except Exception as exc:
            message = f"{type(exc).__name__}: {exc}"
            logger.error(
                "sync_step_error | session=%s | step=%s | error=%s",
                self.session.id,
                step.id,
                message,
                exc_info=True,
            )
            await self._update(step, status=StepStatus.ERROR, error=message, end_time=_now())
            raise _HaltRun(step.id, f"{step.name} failed: {message}") from exc

        self.issues.extend(found)
        await self._complete(step, f"{len(found)} issues")

    async def _aggregate(self, step: SyncStep) -> None:
        await self._update(step, status=StepStatus.RUNNING, progress=0, start_time=_now())
        self.session.summary = self._aggregator.aggregate(self.issues, self.records, self.quote_breakdown)
        await self._complete(step, f"{self.session.summary.total_issues} issues in total")

    # ------------------------------------------------------------------
    # State changes
    # ------------------------------------------------------------------

    async def _skip(self, step: SyncStep, reason: str) -> None:
        now = _now()
        await self._update(
            step,
            status=StepStatus.SKIPPED,
            error=reason,
            start_time=step.start_time or now,
            end_time=now,
        )

    async def _complete(self, step: SyncStep, detail: str) -> None:
        await self._update(step, status=StepStatus.COMPLETED, progress=100, detail=detail, end_time=_now())

    async def _update(self, step: SyncStep, **changes: Any) -> None:
        for field, value in changes.items():
            setattr(step, field, value)
        logger.debug("sync_step | session=%s | step=%s | status=%s", self.session.id, step.id, step.status.value)

        if self.on_progress is not None:
            try:
                await _maybe_await(self.on_progress(step.model_copy()))
            except Exception as exc:
                logger.warning(
                    "progress_callback_error | step=%s | error_type=%s | error=%s",
                    step.id,
                    type(exc).__name__,
                    exc,
                )

        detail = step.error if step.status in (StepStatus.ERROR, StepStatus.SKIPPED) else step.detail
        await self._emit(ProgressEvent(step=step.id, status=step.status, detail=detail))

    async def _emit(self, event: Any) -> None:
        if self.on_event is None:
            return
        try:
            await _maybe_await(self.on_event(event))
        except Exception as exc:
            logger.warning(
                "event_callback_error | type=%s | error_type=%s | error=%s",
                event.type,
                type(exc).__name__,
                exc,
            )

    async def _finish(
        self,
        status: SessionStatus,
        error: Optional[str] = None,
        failed_step: Optional[str] = None,
    ) -> None:
        session = self.session
        session.status = status
        session.error = error
        session.issues = list(self.issues)
        session.finished_at = _now()
        if session.summary is None and status != SessionStatus.FAILED:
            session.summary = self._aggregator.aggregate(self.issues, self.records, self.quote_breakdown)

        logger.info(
            "sync_finished | session=%s | status=%s | issues=%s | error=%s",
            session.id,
            status.value,
            len(session.issues),
            error,
        )

        if self.store is not None:
            try:
                self.store.set(
                    f"sync:{session.tenant_id}:last",
                    session.model_dump(mode="json", by_alias=True),
                )
            except Exception as exc:
                logger.warning(
                    "sync_store_error | session=%s | error_type=%s | error=%s",
                    session.id,
                    type(exc).__name__,
                    exc,
                )

        self._terminal_emitted = True
        if status == SessionStatus.FAILED:
            await self._emit(
                ErrorEvent(
                    message=error or "sync failed",
                    details={"sessionId": session.id, "step": failed_step},
                )
            )
            return

        await self._emit(
            CompleteEvent(
                data={
                    "sessionId": session.id,
                    "status": status.value,
                    "summary": session.summary.model_dump(mode="json", by_alias=True),
                    "issues": [issue.model_dump(mode="json", by_alias=True) for issue in session.issues],
                }
            )
        )


async def run_sync(
    records: RecordSet,
    config: Optional[ValidatorConfig] = None,
    **kwargs: Any,
) -> SyncSession:
    """Convenience wrapper: validate records already in memory."""
    cfg = config or ValidatorConfig()
    orchestrator = SyncOrchestrator(StaticDataSource(records, crm_enabled=cfg.crm_enabled), cfg, **kwargs)
    return await orchestrator.start()
