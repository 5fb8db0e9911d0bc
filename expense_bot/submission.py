# expense_bot/submission.py
"""
Form submission parsing and validation.

Every required field is checked independently and all failures are reported together,
keyed by the modal block id so Slack can show each error under its input.
"""

import re
from datetime import date, datetime
from typing import Any, Dict, Mapping, Optional

from expense_bot.errors import SubmissionValidationError
from expense_bot.schemas import ParsedSubmission

TITLE_BLOCK = "expense_title_block"
TITLE_ACTION = "expense_title"
AMOUNT_BLOCK = "amount_block"
AMOUNT_ACTION = "amount"
USAGE_DATE_BLOCK = "usage_date_block"
USAGE_DATE_ACTION = "usage_date"
REMARKS_BLOCK = "remarks_block"
REMARKS_ACTION = "remarks"

MSG_TITLE = "Enter what the expense was for."
MSG_AMOUNT = "Enter the amount as a positive number."
MSG_USAGE_DATE = "Enter the date of use as YYYY-MM-DD."

_NON_AMOUNT_CHARS = re.compile(r"[^0-9.]")
_MINUS_SIGNS = ("-", "−", "－")
_ISO_DATE = re.compile(r"^[0-9]{4}-[0-9]{2}-[0-9]{2}$")


def parse_amount(raw: Optional[str]) -> float:
    """'¥1,000' -> 1000.0. Raises ValueError for empty, non-numeric, zero or negative input."""
    text = (raw or "").strip()
    if any(sign in text for sign in _MINUS_SIGNS):
        raise ValueError("amount must be positive")
    normalized = _NON_AMOUNT_CHARS.sub("", text)
    amount = float(normalized)
    if amount != amount or amount <= 0:  # NaN guard
        raise ValueError("amount must be positive")
    return amount


def parse_usage_date(raw: Optional[str]) -> date:
    """Strict YYYY-MM-DD calendar date ('2025-02-30' is rejected)."""
    text = (raw or "").strip()
    if not _ISO_DATE.match(text):
        raise ValueError("date must be YYYY-MM-DD")
    return datetime.strptime(text, "%Y-%m-%d").date()


def parse_fields(title: Optional[str], amount: Optional[str], usage_date: Optional[str],
                 remarks: Optional[str] = None) -> ParsedSubmission:
    errors: Dict[str, str] = {}

    clean_title = (title or "").strip()
    if not clean_title:
        errors[TITLE_BLOCK] = MSG_TITLE

    parsed_amount = 0.0
    try:
        parsed_amount = parse_amount(amount)
    except ValueError:
        errors[AMOUNT_BLOCK] = MSG_AMOUNT

    parsed_date: Optional[date] = None
    try:
        parsed_date = parse_usage_date(usage_date)
    except ValueError:
        errors[USAGE_DATE_BLOCK] = MSG_USAGE_DATE

    if errors or parsed_date is None:
        raise SubmissionValidationError(errors)

    return ParsedSubmission(
        title=clean_title,
        amount=parsed_amount,
        usage_date=parsed_date,
        remarks=(remarks or "").strip(),
    )


def _input_value(values: Mapping[str, Any], block_id: str, action_id: str) -> Optional[str]:
    block = values.get(block_id) or {}
    element = block.get(action_id) or {}
    return element.get("value")


def parse_view_state(values: Mapping[str, Any]) -> ParsedSubmission:
    """Parse `view.state.values` from a view_submission payload."""
    return parse_fields(
        title=_input_value(values, TITLE_BLOCK, TITLE_ACTION),
        amount=_input_value(values, AMOUNT_BLOCK, AMOUNT_ACTION),
        usage_date=_input_value(values, USAGE_DATE_BLOCK, USAGE_DATE_ACTION),
        remarks=_input_value(values, REMARKS_BLOCK, REMARKS_ACTION),
    )
