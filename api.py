"""
api.py - FastAPI HTTP layer for the reconciliation engine.

Endpoints:
  - GET  /health
  - POST /validate                  run every phase, return session + issues
  - POST /validate/stream           same run as server-sent events
  - GET  /sessions/{session_id}     last known state of a session
  - GET  /sessions/{session_id}/categories   issues grouped by display category
  - POST /sessions/{session_id}/cancel
  - POST /fix                       apply fixable issues, return outcomes

Records travel inline in the request body; fetching from the CRM or the
accounting system is somebody else's job. No reconciliation logic lives here.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from collections import OrderedDict
from typing import Any, AsyncIterator, Optional

import uvicorn
from fastapi import Body, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from aggregate import categorize_issues
from fixes import FixExecutor, FixSettings, RecordingSink
from logging_config import get_logger, setup_logging
from models import Deal, FixStatus, Invoice, Project, Quote, RecordSet, ValidationIssue
from orchestrator import SyncOrchestrator, StaticDataSource
from store import InMemoryStore, store_from_env
from tenant_config import resolve_validator_config

logger = get_logger("recon-api")

MAX_TRACKED_SESSIONS = 200

app = FastAPI(
    title="CRM / Accounting Reconciliation API",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


class _Body(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class RecordsBody(_Body):
    deals: list[Deal] = Field(default_factory=list)
    quotes: list[Quote] = Field(default_factory=list)
    invoices: list[Invoice] = Field(default_factory=list)
    projects: list[Project] = Field(default_factory=list)

    def record_set(self) -> RecordSet:
        return RecordSet(deals=self.deals, quotes=self.quotes, invoices=self.invoices, projects=self.projects)


class ValidateBody(RecordsBody):
    tenant_id: Optional[str] = None
    crm_enabled: Optional[bool] = None
    halt_on_fetch_error: Optional[bool] = None


class FixBody(RecordsBody):
    issues: list[ValidationIssue] = Field(default_factory=list)
    dry_run: Optional[bool] = None
    batch_size: Optional[int] = Field(default=None, ge=1)
    batch_delay: Optional[float] = Field(default=None, ge=0)


class SessionRegistry:
    """Orchestrators by session id, oldest evicted first (resets on restart)."""

    def __init__(self, limit: int = MAX_TRACKED_SESSIONS) -> None:
        self._items: "OrderedDict[str, SyncOrchestrator]" = OrderedDict()
        self._limit = limit
        self._lock = threading.Lock()

    def add(self, orchestrator: SyncOrchestrator) -> None:
        with self._lock:
            self._items[orchestrator.session_id] = orchestrator
            while len(self._items) > self._limit:
                evicted, _ = self._items.popitem(last=False)
                logger.debug("session_evicted | session=%s", evicted)

    def get(self, session_id: str) -> Optional[SyncOrchestrator]:
        with self._lock:
            return self._items.get(session_id)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()


sessions = SessionRegistry()


def _parse(model: type[BaseModel], payload: dict[str, Any]) -> Any:
    try:
        return model.model_validate(payload)
    except (ValueError, ValidationError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _build_orchestrator(body: ValidateBody) -> SyncOrchestrator:
    config = resolve_validator_config(body.tenant_id, check_credentials=False)
    overrides: dict[str, Any] = {}
    if body.crm_enabled is not None:
        overrides["crm_enabled"] = body.crm_enabled
    if body.halt_on_fetch_error is not None:
        overrides["halt_on_fetch_error"] = body.halt_on_fetch_error
    if overrides:
        config = config.model_copy(update=overrides)

    source = StaticDataSource(body.record_set(), crm_enabled=config.crm_enabled)
    orchestrator = SyncOrchestrator(source, config, store=store_from_env())
    sessions.add(orchestrator)
    return orchestrator


def _session_view(orchestrator: SyncOrchestrator) -> dict[str, Any]:
    if orchestrator.session is None:
        return {"id": orchestrator.session_id, "status": orchestrator.status.value}
    return orchestrator.session.model_dump(mode="json", by_alias=True)


@app.get("/health")
def health() -> dict[str, str]:
    """Service health check."""
    return {"status": "ok"}


@app.post("/validate")
async def validate(payload: dict[str, Any] = Body(...)) -> dict[str, Any]:
    """Run a full reconciliation over the posted records."""
    body: ValidateBody = _parse(ValidateBody, payload)
    orchestrator = _build_orchestrator(body)
    try:
        session = await orchestrator.start()
    except Exception as exc:
        logger.error(
            "api_validate_error | session=%s | error_type=%s | error=%s",
            orchestrator.session_id,
            type(exc).__name__,
            exc,
            exc_info=True,
        )
        raise HTTPException(status_code=500, detail="Unexpected server error while validating.") from exc
    return session.model_dump(mode="json", by_alias=True)


@app.post("/validate/stream")
async def validate_stream(payload: dict[str, Any] = Body(...)) -> StreamingResponse:
    """Run a reconciliation and stream progress as server-sent events."""
    body: ValidateBody = _parse(ValidateBody, payload)
    orchestrator = _build_orchestrator(body)

    async def events() -> AsyncIterator[str]:
        try:
            async for event in orchestrator.stream():
                yield f"data: {json.dumps(event, ensure_ascii=False)}\n\n"
        except Exception as exc:
            logger.error(
                "api_stream_error | session=%s | error_type=%s | error=%s",
                orchestrator.session_id,
                type(exc).__name__,
                exc,
                exc_info=True,
            )
            failure = {"type": "error", "message": "stream failed", "details": {"sessionId": orchestrator.session_id}}
            yield f"data: {json.dumps(failure)}\n\n"

    return StreamingResponse(
        events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Session-Id": orchestrator.session_id},
    )


@app.get("/sessions/{session_id}")
def get_session(session_id: str) -> dict[str, Any]:
    orchestrator = sessions.get(session_id)
    if orchestrator is None:
        raise HTTPException(status_code=404, detail=f"Unknown session: {session_id}")
    return _session_view(orchestrator)


@app.get("/sessions/{session_id}/categories")
def get_session_categories(session_id: str) -> dict[str, Any]:
    """Issues of a finished session grouped by display category."""
    orchestrator = sessions.get(session_id)
    if orchestrator is None or orchestrator.session is None:
        raise HTTPException(status_code=404, detail=f"Unknown session: {session_id}")
    buckets = categorize_issues(orchestrator.session.issues)

    def dump(issues: list[ValidationIssue]) -> list[dict[str, Any]]:
        return [issue.model_dump(mode="json", by_alias=True) for issue in issues]

    return {
        "sessionId": session_id,
        "counts": {name: len(buckets[name]) for name in ("errors", "warnings", "info", "fixable")},
        "byCategory": {category: dump(issues) for category, issues in buckets["by_category"].items()},
    }


@app.post("/sessions/{session_id}/cancel")
def cancel_session(session_id: str) -> dict[str, Any]:
    orchestrator = sessions.get(session_id)
    if orchestrator is None:
        raise HTTPException(status_code=404, detail=f"Unknown session: {session_id}")
    cancelled = orchestrator.cancel()
    return {"sessionId": session_id, "cancelled": cancelled, "status": orchestrator.status.value}


@app.post("/fix")
async def fix(payload: dict[str, Any] = Body(...)) -> dict[str, Any]:
    """Apply the posted fixable issues through the recording sink."""
    body: FixBody = _parse(FixBody, payload)
    settings = FixSettings.from_env()
    updates = {
        name: value
        for name, value in (
            ("dry_run", body.dry_run),
            ("batch_size", body.batch_size),
            ("batch_delay", body.batch_delay),
        )
        if value is not None
    }
    if updates:
        settings = settings.model_copy(update=updates)

    # Receipts stay request-local: the recording sink never reaches a remote system.
    sink = RecordingSink()
    executor = FixExecutor(sink, store=InMemoryStore(), settings=settings)
    try:
        outcomes = await executor.apply_fixes(body.issues, body.record_set())
    except Exception as exc:
        logger.error(
            "api_fix_error | issues=%s | error_type=%s | error=%s",
            len(body.issues),
            type(exc).__name__,
            exc,
            exc_info=True,
        )
        raise HTTPException(status_code=500, detail="Unexpected server error while applying fixes.") from exc

    return {
        "outcomes": [outcome.model_dump(mode="json", by_alias=True) for outcome in outcomes],
        "requests": [request.model_dump(mode="json", by_alias=True) for request in sink.requests],
        "succeeded": sum(1 for outcome in outcomes if outcome.status == FixStatus.SUCCESS),
        "failed": sum(1 for outcome in outcomes if outcome.status == FixStatus.ERROR),
    }


if __name__ == "__main__":
    setup_logging(level=logging.DEBUG if os.getenv("DEBUG", "").strip().lower() in {"1", "true", "yes"} else None)
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run("api:app", host="0.0.0.0", port=port, reload=False)
