"""
main.py - CLI for the reconciliation engine.

Commands:
    validate     load record files, run every phase, print a summary
    plan-fixes   same run, then print the mutations the fix executor would send

Record files are CSV or JSON (an array of objects), one file per kind.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import math
import os
import sys
from pathlib import Path
from typing import Any, Optional

import pandas as pd

from aggregate import categorize_issues
from fixes import build_request
from logging_config import get_logger, setup_logging
from models import (
    Deal,
    FixError,
    Invoice,
    Project,
    Quote,
    RecordSet,
    SessionStatus,
    SyncSession,
    ValidatorConfig,
)
from orchestrator import run_sync
from tenant_config import deal_from_crm, resolve_validator_config

logger = get_logger("recon-cli")

RECORD_TYPES = {"deals": Deal, "quotes": Quote, "invoices": Invoice, "projects": Project}
ID_COLUMNS = ("id", "deal_id", "quote_id", "invoice_id")


def _configure_output_symbols() -> str:
    """Configure stdout encoding and return a safe rule character."""
    try:
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
    except (AttributeError, ValueError):
        return "="

    try:
        "═".encode(sys.stdout.encoding or "utf-8")
        return "═"
    except UnicodeEncodeError:
        return "="


BOX_CHAR = _configure_output_symbols()


def _clean_value(column: str, value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, float):
        if math.isnan(value):
            return None
        if column in ID_COLUMNS and value.is_integer():
            return str(int(value))
    if isinstance(value, str) and not value.strip():
        return None
    return value


def load_record_file(path: str) -> list[dict[str, Any]]:
    """Load one CSV or JSON record file into a list of row dicts."""
    path = str(path or "").strip()
    if not path:
        raise ValueError("record file path cannot be empty")
    if not os.path.exists(path):
        raise FileNotFoundError(f"Record file not found: {path}")

    suffix = Path(path).suffix.lower()
    try:
        if suffix == ".json":
            df = pd.read_json(path, orient="records", dtype=False, convert_dates=False)
        else:
            df = pd.read_csv(
                path,
                encoding="utf-8-sig",
                dtype={column: str for column in ID_COLUMNS},
            )
    except UnicodeDecodeError:
        logger.warning(
            "record_file_encoding_warning | path=%s | reason='utf-8 decode failed' | fallback=latin-1",
            path,
        )
        df = pd.read_csv(path, encoding="latin-1", dtype={column: str for column in ID_COLUMNS})
    except ValueError as exc:
        raise ValueError(f"Failed to read record file '{path}': {exc}") from exc

    df.columns = [str(col).strip() for col in df.columns]
    df = df.dropna(how="all")
    rows = [
        {column: _clean_value(column, value) for column, value in row.items()}
        for row in df.to_dict(orient="records")
    ]
    logger.info("record_file_loaded | path=%s | rows=%s | columns=%s", path, len(rows), list(df.columns))
    return rows


def load_records(paths: dict[str, Optional[str]], config: ValidatorConfig) -> RecordSet:
    """Build a RecordSet from per-kind files; missing kinds stay empty."""
    records = RecordSet()
    for kind, model in RECORD_TYPES.items():
        path = paths.get(kind)
        if not path:
            continue
        rows = load_record_file(path)
        parsed = []
        for row in rows:
            if kind == "deals" and isinstance(row.get("custom_fields"), dict):
                parsed.append(deal_from_crm(row, config))
            else:
                parsed.append(model.model_validate(row))
        setattr(records, kind, parsed)
    return records


def _print_summary(session: SyncSession) -> None:
    summary = session.summary
    print(f"\n{BOX_CHAR * 64}")
    print(f"  RECONCILIATION {session.id} - {session.status.value.upper()}")
    print(f"{BOX_CHAR * 64}")

    for step in session.steps:
        note = step.error or step.detail or ""
        print(f"  {step.name:<28} {step.status.value:<10} {note[:22]}")

    if summary is None:
        print(f"\n  Error: {session.error or 'no summary produced'}")
        print(f"{BOX_CHAR * 64}")
        return

    print()
    print(
        f"  Records  deals={summary.total_deals}  quotes={summary.total_quotes}  "
        f"invoices={summary.total_invoices}  projects={summary.total_projects}"
    )
    print(
        f"  Issues   total={summary.total_issues}  errors={summary.error_count}  "
        f"warnings={summary.warning_count}  info={summary.info_count}  fixable={summary.fixable_count}"
    )
    print(
        f"  Deals    with issues={summary.deals_with_issues}  fully synced={summary.fully_synced_deals}"
    )
    print(
        f"  Value    won deals={summary.total_deal_value:,.2f}  "
        f"accepted quotes={summary.total_accepted_quote_value:,.2f}  "
        f"orphaned={summary.orphaned_accepted_quotes_value:,.2f}"
    )

    if summary.issue_breakdown:
        print()
        print(f"  {'Issue code':<36} {'Count':>5}")
        print(f"  {'─' * 36} {'─' * 5}")
        for code, count in summary.issue_breakdown.items():
            print(f"  {code:<36} {count:>5}")

        buckets = categorize_issues(session.issues)
        print()
        print(f"  {'Category':<28} {'Issues':>6} {'Fixable':>8}")
        print(f"  {'─' * 28} {'─' * 6} {'─' * 8}")
        for category, issues in sorted(buckets["by_category"].items()):
            fixable = sum(1 for issue in issues if issue.fixable)
            print(f"  {category:<28} {len(issues):>6} {fixable:>8}")

    print(f"{BOX_CHAR * 64}")


def run_validate(records: RecordSet, config: ValidatorConfig) -> SyncSession:
    return asyncio.run(run_sync(records, config))


def plan_fixes(session: SyncSession) -> list[dict[str, Any]]:
    """Fix requests for every fixable issue, plus the reason for any that fail."""
    plans: list[dict[str, Any]] = []
    for issue in session.issues:
        if not issue.fixable:
            continue
        try:
            request = build_request(issue)
            plans.append({"issue": issue.code, "request": request.model_dump(mode="json", by_alias=True)})
        except FixError as exc:
            plans.append({"issue": issue.code, "subjectId": issue.subject_id, "error": str(exc)})
    return plans


def main(argv: Optional[list[str]] = None) -> None:
    """CLI entry point for the reconciliation engine."""
    parser = argparse.ArgumentParser(
        prog="recon-sync",
        description=(
            "CRM / accounting reconciliation\n"
            "Finds where deals, quotes, invoices and projects disagree."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  %(prog)s validate --deals deals.csv --quotes quotes.csv\n"
            "  %(prog)s validate --deals deals.json --quotes quotes.json --json\n"
            "  %(prog)s plan-fixes --deals deals.csv --quotes quotes.csv --projects projects.csv\n"
        ),
    )
    parser.add_argument("command", choices=["validate", "plan-fixes"])
    parser.add_argument("--deals", type=str, help="CRM deals (CSV or JSON)")
    parser.add_argument("--quotes", type=str, help="Accounting quotes (CSV or JSON)")
    parser.add_argument("--invoices", type=str, help="Accounting invoices (CSV or JSON)")
    parser.add_argument("--projects", type=str, help="Accounting projects (CSV or JSON)")
    parser.add_argument("--tenant", "-t", type=str, default=None, help="Tenant id for pipeline scopes")
    parser.add_argument(
        "--fail-on-error",
        action="store_true",
        help="Exit with status 2 when any error-severity issue is found",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose (DEBUG-level) logging",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output results as JSON instead of formatted text",
    )
    parser.add_argument(
        "--log-json",
        action="store_true",
        help="Output logs as JSON lines (for production/log aggregation)",
    )

    args = parser.parse_args(argv)
    setup_logging(
        level=logging.DEBUG if args.verbose else logging.INFO,
        json_format=args.log_json,
    )

    paths = {kind: getattr(args, kind) for kind in RECORD_TYPES}
    if not any(paths.values()):
        parser.error("Provide at least one of --deals, --quotes, --invoices, --projects")

    try:
        config = resolve_validator_config(args.tenant, check_credentials=False)
        records = load_records(paths, config)
        logger.info(
            "cli_mode | command=%s | tenant=%s | records=%s",
            args.command,
            config.tenant_id,
            records.total_records,
        )
        session = run_validate(records, config)

        if args.command == "plan-fixes":
            plans = plan_fixes(session)
            if args.json:
                print(json.dumps(plans, indent=2))
            else:
                print(f"\n  {len(plans)} fix(es) planned")
                for plan in plans:
                    if "request" in plan:
                        request = plan["request"]
                        print(
                            f"  {plan['issue']:<30} {request['operation']:<15} "
                            f"{request['targetId']:<12} {json.dumps(request['patch'], sort_keys=True)}"
                        )
                    else:
                        print(f"  {plan['issue']:<30} skipped: {plan['error']}")
        elif args.json:
            print(json.dumps(session.model_dump(mode="json", by_alias=True), indent=2))
        else:
            _print_summary(session)
    except FileNotFoundError as exc:
        logger.error("cli_error | type=FileNotFoundError | error=%s", exc)
        print(f"\nError: {exc}")
        raise SystemExit(1) from exc
    except ValueError as exc:
        logger.error("cli_error | type=ValueError | error=%s", exc)
        print(f"\nError: {exc}")
        raise SystemExit(1) from exc
    except KeyboardInterrupt:
        print("\nInterrupted.")
        raise SystemExit(130)

    if session.status == SessionStatus.FAILED:
        raise SystemExit(1)
    if args.fail_on_error and session.summary is not None and session.summary.error_count:
        raise SystemExit(2)


if __name__ == "__main__":
    main()
