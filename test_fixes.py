"""
test_fixes.py - Fix payloads, idempotency keys, retries and batching.

Usage:
    pytest test_fixes.py
"""

from __future__ import annotations

import asyncio
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import pytest

from fixes import FixExecutor, FixSettings, RecordingSink, build_request, idempotency_key
from models import (
    Deal,
    FixError,
    FixStatus,
    IssueCode,
    Project,
    Quote,
    RecordKind,
    RecordSet,
    Severity,
    ValidationIssue,
)
from store import InMemoryStore

FAST = FixSettings(batch_delay=0, retry_delay=0)


def _link_issue(deal_id: str = "D1", quote_id: str = "Q1") -> ValidationIssue:
    return ValidationIssue(
        code=IssueCode.MISSING_QUOTE_ID,
        severity=Severity.ERROR,
        message=f"Deal {deal_id} has no quote id",
        subject_id=deal_id,
        subject_type=RecordKind.DEAL,
        fixable=True,
        fix_action="Link deal to matching quote",
        expected_value=quote_id,
    )


def test_idempotency_key_is_stable():
    issue = _link_issue()
    assert idempotency_key(issue) == idempotency_key(_link_issue())
    assert len(idempotency_key(issue)) == 64
    assert idempotency_key(issue) != idempotency_key(_link_issue(quote_id="Q2"))
    assert idempotency_key(issue) != idempotency_key(_link_issue(deal_id="D2"))


def test_build_request_payloads():
    link = build_request(_link_issue())
    assert link.operation == "update_deal"
    assert link.target_id == "D1"
    assert link.patch == {"quote_id": "Q1"}
    assert link.idempotency_key == idempotency_key(_link_issue())

    number = ValidationIssue(
        code=IssueCode.XERO_QUOTE_NUMBER_NO_PROJECT,
        severity=Severity.ERROR,
        message="missing project code",
        subject_id="Q1",
        subject_type=RecordKind.QUOTE,
        fixable=True,
        fix_action="Update quote number to include project code",
        current_value="QU0042",
        expected_value="ED25001-QU0042-1",
    )
    assert build_request(number).patch == {"quote_number": "ED25001-QU0042-1"}

    accept = ValidationIssue(
        code=IssueCode.XERO_QUOTE_NOT_ACCEPTED,
        severity=Severity.WARNING,
        message="draft quote",
        subject_id="Q1",
        subject_type=RecordKind.QUOTE,
        fixable=True,
        fix_action="Mark quote as accepted",
        current_value="DRAFT",
        expected_value="ACCEPTED",
    )
    request = build_request(accept)
    assert request.operation == "update_quote"
    assert request.patch == {"status": "ACCEPTED", "transition_path": ["SENT", "ACCEPTED"]}

    estimate = ValidationIssue(
        code=IssueCode.ESTIMATE_MISMATCH,
        severity=Severity.WARNING,
        message="estimate differs",
        subject_id="P1",
        subject_type=RecordKind.PROJECT,
        fixable=True,
        fix_action="Set project estimate to accepted quote total",
        expected_value=1000.004,
    )
    assert build_request(estimate).patch == {"estimate": 1000.0}
    assert build_request(estimate).operation == "update_project"


def test_build_request_rejects_unfixable_input():
    manual = ValidationIssue(
        code=IssueCode.QUOTE_ORPHANED,
        severity=Severity.ERROR,
        message="orphan",
        subject_id="Q1",
        subject_type=RecordKind.QUOTE,
    )
    with pytest.raises(FixError):
        build_request(manual)

    no_expected = _link_issue(quote_id="")
    with pytest.raises(FixError):
        build_request(no_expected)


def test_apply_fix_twice_reaches_same_end_state():
    sink = RecordingSink()
    executor = FixExecutor(sink, settings=FAST)
    issue = _link_issue()
    subject = Deal(id="D1", title="ED1 - x")

    first = asyncio.run(executor.apply_fix(issue, subject))
    second = asyncio.run(executor.apply_fix(issue, subject))

    assert first.status == FixStatus.SUCCESS
    assert second.status == FixStatus.SUCCESS
    assert first.idempotency_key == second.idempotency_key
    assert sink.calls == 2
    assert len(sink.applied) == 1


def test_store_makes_replays_local_no_ops():
    sink = RecordingSink()
    store = InMemoryStore()
    executor = FixExecutor(sink, store=store, settings=FAST)
    issue = _link_issue()

    asyncio.run(executor.apply_fix(issue))
    replay = asyncio.run(executor.apply_fix(issue))

    assert replay.status == FixStatus.SUCCESS
    assert replay.message == "already applied"
    assert sink.calls == 1
    saved = store.get(f"fix:{idempotency_key(issue)}")
    assert saved["operation"] == "update_deal"
    assert saved["patch"] == {"quote_id": "Q1"}


def test_outcome_callback_sees_fixing_then_result():
    seen = []
    executor = FixExecutor(RecordingSink(), settings=FAST, on_outcome=lambda outcome: seen.append(outcome.status))

    asyncio.run(executor.apply_fix(_link_issue()))

    assert seen == [FixStatus.FIXING, FixStatus.SUCCESS]


def test_transient_failures_are_retried():
    calls = {"count": 0}

    async def flaky(request):
        calls["count"] += 1
        if calls["count"] < 3:
            raise ConnectionError("rate limited")
        return {"ok": True}

    outcome = asyncio.run(FixExecutor(flaky, settings=FAST).apply_fix(_link_issue()))

    assert outcome.status == FixStatus.SUCCESS
    assert outcome.attempts == 3


def test_persistent_failure_becomes_error_outcome():
    def broken(request):
        raise TimeoutError("accounting API down")

    store = InMemoryStore()
    outcome = asyncio.run(FixExecutor(broken, store=store, settings=FAST).apply_fix(_link_issue()))

    assert outcome.status == FixStatus.ERROR
    assert outcome.attempts == 3
    assert "accounting API down" in outcome.message
    assert len(store) == 0


def test_manual_unknown_and_mismatched_fixes_never_call_mutate():
    sink = RecordingSink()
    executor = FixExecutor(sink, settings=FAST)
    manual = ValidationIssue(
        code=IssueCode.CURRENCY_MISMATCH,
        severity=Severity.WARNING,
        message="currency",
        subject_id="D1",
        subject_type=RecordKind.DEAL,
    )
    unknown = ValidationIssue(
        code="SOMETHING_NEW",
        severity=Severity.WARNING,
        message="new",
        subject_id="D1",
        subject_type=RecordKind.DEAL,
        fixable=True,
        fix_action="who knows",
        expected_value="x",
    )

    manual_outcome = asyncio.run(executor.apply_fix(manual))
    unknown_outcome = asyncio.run(executor.apply_fix(unknown))
    mismatch_outcome = asyncio.run(executor.apply_fix(_link_issue(), Deal(id="D2")))

    assert manual_outcome.status == FixStatus.ERROR
    assert "requires manual intervention" in manual_outcome.message
    assert unknown_outcome.status == FixStatus.ERROR
    assert "no fix available" in unknown_outcome.message
    assert mismatch_outcome.status == FixStatus.ERROR
    assert sink.calls == 0


def test_dry_run_reports_without_mutating():
    sink = RecordingSink()
    executor = FixExecutor(sink, settings=FixSettings(dry_run=True))

    outcome = asyncio.run(executor.apply_fix(_link_issue()))

    assert outcome.status == FixStatus.SUCCESS
    assert outcome.message.startswith("dry run: update_deal D1")
    assert sink.calls == 0


def test_twelve_fixes_run_in_three_ordered_batches():
    timeline = []
    in_flight = {"now": 0, "peak": 0}

    async def mutate(request):
        timeline.append(("start", request.subject_id))
        in_flight["now"] += 1
        in_flight["peak"] = max(in_flight["peak"], in_flight["now"])
        await asyncio.sleep(0)
        in_flight["now"] -= 1

    def on_outcome(outcome):
        if outcome.status != FixStatus.FIXING:
            timeline.append(("done", outcome.subject_id))

    issues = [_link_issue(f"D{i}", f"Q{i}") for i in range(12)]
    records = RecordSet(deals=[Deal(id=f"D{i}") for i in range(12)])
    executor = FixExecutor(mutate, settings=FAST, on_outcome=on_outcome)

    outcomes = asyncio.run(executor.apply_fixes(issues, records, batch_size=5, delay=0))

    assert [outcome.subject_id for outcome in outcomes] == [f"D{i}" for i in range(12)]
    assert all(outcome.status == FixStatus.SUCCESS for outcome in outcomes)
    assert in_flight["peak"] == 5

    position = {entry: index for index, entry in enumerate(timeline)}
    batches = [range(0, 5), range(5, 10), range(10, 12)]
    for earlier, later in zip(batches, batches[1:]):
        last_done = max(position[("done", f"D{i}")] for i in earlier)
        first_start = min(position[("start", f"D{i}")] for i in later)
        assert first_start > last_done


def test_one_failure_does_not_abort_the_batch():
    def mutate(request):
        if request.subject_id == "D2":
            raise ValueError("rejected")

    issues = [_link_issue(f"D{i}", f"Q{i}") for i in range(4)]
    outcomes = asyncio.run(FixExecutor(mutate, settings=FAST).apply_fixes(issues))

    statuses = {outcome.subject_id: outcome.status for outcome in outcomes}
    assert statuses["D2"] == FixStatus.ERROR
    assert [statuses[f"D{i}"] for i in (0, 1, 3)] == [FixStatus.SUCCESS] * 3


def test_cancel_stops_at_batch_boundary():
    executor = FixExecutor(RecordingSink(), settings=FAST)

    def on_outcome(outcome):
        if outcome.status == FixStatus.SUCCESS:
            executor.cancel()

    executor.on_outcome = on_outcome
    issues = [_link_issue(f"D{i}", f"Q{i}") for i in range(6)]

    outcomes = asyncio.run(executor.apply_fixes(issues, batch_size=2))

    assert len(outcomes) == 2


def test_apply_fixes_passes_subject_records():
    received = []

    def mutate(request):
        received.append(request)

    issue = ValidationIssue(
        code=IssueCode.XERO_QUOTE_NOT_ACCEPTED,
        severity=Severity.WARNING,
        message="sent quote",
        subject_id="Q1",
        subject_type=RecordKind.QUOTE,
        fixable=True,
        fix_action="Mark quote as accepted",
        expected_value="ACCEPTED",
    )
    records = RecordSet(
        quotes=[Quote(id="Q1", status="SENT")],
        projects=[Project(id="P1", name="ED1 - x")],
    )

    outcomes = asyncio.run(FixExecutor(mutate, settings=FAST).apply_fixes([issue], records))

    assert outcomes[0].status == FixStatus.SUCCESS
    assert received[0].patch["transition_path"] == ["ACCEPTED"]


def test_fix_settings_from_env(monkeypatch):
    monkeypatch.setenv("FIX_BATCH_SIZE", "10")
    monkeypatch.setenv("FIX_BATCH_DELAY", "0.5")
    monkeypatch.setenv("FIX_RETRY_ATTEMPTS", "5")
    monkeypatch.setenv("FIX_DRY_RUN", "true")
    monkeypatch.delenv("FIX_RETRY_DELAY", raising=False)

    settings = FixSettings.from_env()

    assert settings.batch_size == 10
    assert settings.batch_delay == 0.5
    assert settings.retry_attempts == 5
    assert settings.retry_delay == 1.0
    assert settings.dry_run is True


def test_apply_fixes_picks_subject_of_the_issue_kind():
    received = []

    def mutate(request):
        received.append(request)

    issue = ValidationIssue(
        code=IssueCode.XERO_QUOTE_NOT_ACCEPTED,
        severity=Severity.WARNING,
        message="sent quote",
        subject_id="X1",
        subject_type=RecordKind.QUOTE,
        fixable=True,
        fix_action="Mark quote as accepted",
        expected_value="ACCEPTED",
    )
    records = RecordSet(
        deals=[Deal(id="X1", title="ED1 - shares an id")],
        quotes=[Quote(id="X1", status="DECLINED")],
    )

    outcomes = asyncio.run(FixExecutor(mutate, settings=FAST).apply_fixes([issue], records))

    assert outcomes[0].status == FixStatus.SUCCESS
    assert received[0].patch["transition_path"] == ["SENT", "ACCEPTED"]
