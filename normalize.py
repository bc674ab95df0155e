"""
normalize.py - Key and value normalization for cross-system matching.

Match-key normalizer:
    normalize_match_key(name)           -> "acme" for "Acme - Phase 1"

Structured quote-number grammar (PROJECTCODE-QUNUMBER-VERSION):
    parse_quote_number(number)          -> QuoteNumberParts | None
    is_valid_quote_number(number)       -> bool
    is_bare_quote_number(number)        -> bool ("QU0042")
    expected_quote_number(code, number) -> "ED25001-QU0042-1"

Reference helpers:
    extract_project_code(title)         -> "ED25001"
    extract_deal_reference(reference)   -> "1234" from "Pipedrive Deal ID: 1234"

Value normalizers:
    normalize_amount(value)             -> float rounded to 2 decimals
    amounts_equal(a, b, epsilon)        -> tolerance comparison
    money_sum(values)                   -> exact 2-decimal sum
    normalize_currency(code)            -> "SGD"
    normalize_timestamp(value)          -> ISO YYYY-MM-DD

Design principles:
    - SAME normalization on BOTH systems
    - Pure transformations, no external API calls
    - Invalid input degrades to neutral defaults, never raises
"""

from __future__ import annotations

import math
import re
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable, NamedTuple, Optional

from dateutil import parser as dateparser

from logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_DELIMITER = " - "
MONEY_EPSILON = 0.01
CENTS = Decimal("0.01")

QUOTE_NUMBER_PATTERN = re.compile(
    r"^(?P<code>[A-Z]+\d+)-(?P<number>QU\d+)-(?P<version>\d+)(?:-v(?P<revision>\d+))?$",
    re.IGNORECASE,
)
BARE_QUOTE_NUMBER_PATTERN = re.compile(r"^QU\d+$", re.IGNORECASE)
PROJECT_CODE_PATTERN = re.compile(r"^([A-Z]+\d+)")
DEAL_REFERENCE_PATTERN = re.compile(r"(?:Pipedrive\s+)?Deal\s+I[dD]:\s*(\d+)", re.IGNORECASE)

_NULL_TOKENS = {"n/a", "na", "none", "null", "nan", "unknown", "<na>"}


class QuoteNumberParts(NamedTuple):
    project_code: str
    quote_number: str
    version: int
    revision: Optional[int]


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, float) and not math.isfinite(value):
        return ""
    try:
        return str(value)
    except (TypeError, ValueError) as exc:
        logger.debug("as_text | unprintable | type=%s | error=%s", type(value).__name__, exc)
        return ""


def normalize_match_key(display_name: Any, delimiter: str = DEFAULT_DELIMITER) -> str:
    """Derive the cross-system match key from a display name.

    Keeps the text before the first delimiter (the whole string when the
    delimiter is absent), drops every whitespace character and lowercases.
    """
    text = _as_text(display_name)
    if not text:
        return ""

    prefix = text.split(delimiter, 1)[0] if delimiter else text
    key = "".join(prefix.split()).lower()
    logger.debug("normalize_match_key | raw=%r | key=%r", display_name, key)
    return key


def extract_project_code(title: Any) -> str:
    """Return the leading project code of a title ("ED25001 - Vessel" -> "ED25001")."""
    match = PROJECT_CODE_PATTERN.match(_as_text(title).strip())
    return match.group(1) if match else ""


def parse_quote_number(number: Any) -> Optional[QuoteNumberParts]:
    text = _as_text(number).strip()
    match = QUOTE_NUMBER_PATTERN.match(text)
    if not match:
        logger.debug("parse_quote_number | rejected | raw=%r", number)
        return None
    revision = match.group("revision")
    return QuoteNumberParts(
        project_code=match.group("code").upper(),
        quote_number=match.group("number").upper(),
        version=int(match.group("version")),
        revision=int(revision) if revision is not None else None,
    )


def is_valid_quote_number(number: Any) -> bool:
    return parse_quote_number(number) is not None


def is_bare_quote_number(number: Any) -> bool:
    """True for quote numbers issued without a project prefix ("QU0042")."""
    return bool(BARE_QUOTE_NUMBER_PATTERN.match(_as_text(number).strip()))


def expected_quote_number(project_code: str, quote_number: str, version: int = 1) -> str:
    return f"{project_code.strip().upper()}-{quote_number.strip().upper()}-{version}"


def extract_deal_reference(reference: Any) -> str:
    """Pull the CRM deal id out of a free-text quote reference, or ''."""
    match = DEAL_REFERENCE_PATTERN.search(_as_text(reference))
    return match.group(1) if match else ""


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, Decimal):
        return value if value.is_finite() else None

    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            return None
        return Decimal(str(value))

    cleaned = _as_text(value).strip()
    if not cleaned or cleaned.lower() in _NULL_TOKENS:
        return None

    negative = cleaned.startswith("-") or (cleaned.startswith("(") and cleaned.endswith(")"))
    cleaned = re.sub(r"[^\d.]", "", cleaned)
    if not cleaned:
        return None
    try:
        parsed = Decimal(cleaned)
    except InvalidOperation:
        return None
    return -parsed if negative else parsed


def normalize_amount(value: Any) -> float:
    """Normalize a money value into a non-negative 2-decimal float."""
    parsed = _to_decimal(value)
    if parsed is None:
        if value not in (None, ""):
            logger.warning("normalize_amount | parse_failed | raw=%r | fallback=0.0", value)
        return 0.0

    if parsed < 0:
        logger.warning("normalize_amount | negative=%r | fallback=0.0", value)
        return 0.0

    normalized = float(parsed.quantize(CENTS, rounding=ROUND_HALF_UP))
    logger.debug("normalize_amount | raw=%r | normalized=%s", value, normalized)
    return normalized


def amounts_equal(left: Any, right: Any, epsilon: float = MONEY_EPSILON) -> bool:
    """Compare two money values at 2dp; equal when the gap is within epsilon."""
    a = Decimal(str(normalize_amount(left)))
    b = Decimal(str(normalize_amount(right)))
    return abs(a - b) <= Decimal(str(epsilon))


def money_sum(values: Iterable[Any]) -> float:
    total = Decimal("0")
    for value in values:
        total += Decimal(str(normalize_amount(value)))
    return float(total.quantize(CENTS, rounding=ROUND_HALF_UP))


def money_diff(left: Any, right: Any) -> float:
    """Signed left - right at 2dp."""
    diff = Decimal(str(normalize_amount(left))) - Decimal(str(normalize_amount(right)))
    return float(diff.quantize(CENTS, rounding=ROUND_HALF_UP))


def normalize_currency(code: Any) -> str:
    text = _as_text(code).strip().upper()
    if text.lower() in _NULL_TOKENS:
        return ""
    return text if re.fullmatch(r"[A-Z]{3}", text) else ""


def normalize_timestamp(value: Any) -> str:
    """Normalize a record timestamp to ISO YYYY-MM-DD, '' when unusable."""
    text = _as_text(value).strip()
    if not text or text.lower() in _NULL_TOKENS:
        return ""
    if not any(char.isdigit() for char in text):
        return ""

    # Xero JSON dates arrive as "/Date(1700000000000+0000)/".
    epoch = re.fullmatch(r"/Date\((\d+)(?:[+-]\d{4})?\)/", text)
    if epoch:
        stamp = datetime.fromtimestamp(int(epoch.group(1)) / 1000, tz=timezone.utc)
        return stamp.strftime("%Y-%m-%d")

    try:
        parsed = dateparser.parse(text, dayfirst=False)
    except (ValueError, TypeError, OverflowError) as exc:
        logger.warning(
            "normalize_timestamp | parse_error=%s | raw=%r | fallback=''",
            type(exc).__name__,
            text,
        )
        return ""
    if parsed is None:
        return ""
    return parsed.strftime("%Y-%m-%d")
