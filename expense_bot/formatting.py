# expense_bot/formatting.py
import secrets
import string
from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo

_ID_ALPHABET = string.digits + string.ascii_uppercase


def now_in_timezone(timezone: str, now: Optional[datetime] = None) -> str:
    """ISO-8601 timestamp with offset and seconds precision, e.g. 2025-09-12T10:30:00+09:00."""
    now = now or datetime.now(ZoneInfo(timezone))
    return now.astimezone(ZoneInfo(timezone)).isoformat(timespec="seconds")


def generate_request_id(prefix: str, timezone: str, now: Optional[datetime] = None) -> str:
    """<prefix>-<yyyyMMdd in timezone>-<4 random base-36 chars>."""
    now = now or datetime.now(ZoneInfo(timezone))
    date_part = now.astimezone(ZoneInfo(timezone)).strftime("%Y%m%d")
    random_part = "".join(secrets.choice(_ID_ALPHABET) for _ in range(4))
    return f"{prefix}-{date_part}-{random_part}"


def format_amount(amount: float) -> str:
    """Thousands separators, up to 3 fraction digits, no trailing zeros (3500 -> '3,500')."""
    if float(amount).is_integer():
        return f"{int(amount):,}"
    return f"{amount:,.3f}".rstrip("0").rstrip(".")


def plain_amount(amount: float) -> str:
    """Amount as written to the ledger cell: no separators, integral values without '.0'."""
    if float(amount).is_integer():
        return str(int(amount))
    return repr(float(amount))
